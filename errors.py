class ChatError(Exception):
    """Base class for failures the API reports back to the caller."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ChatError):
    status_code = 404


class ValidationError(ChatError):
    status_code = 400


class AuthError(ChatError):
    status_code = 401


class ConflictError(ChatError):
    status_code = 409


class InternalError(ChatError):
    status_code = 500
