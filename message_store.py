import logging
from datetime import datetime
from typing import List

from sqlalchemy.orm import Session

from errors import NotFoundError
from models import Chat, Message

logger = logging.getLogger(__name__)


class MessageStore:
    """Append-only access to chat messages.

    Messages are never edited or deleted through this class; their
    creation timestamp (with the id as tie-breaker) is the ordering key
    for everything that reads a chat.
    """

    def __init__(self, db: Session):
        self.db = db

    def append_message(self, chat_id: int, author_id: int, content: str, is_image: bool = False) -> Message:
        if self.db.get(Chat, chat_id) is None:
            raise NotFoundError("Chat not found")

        message = Message(
            chat_id=chat_id,
            user_id=author_id,
            message=content,
            is_image=is_image,
            created_at=datetime.utcnow()
        )
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)

        logger.info(f"Message {message.id} appended to chat {chat_id} by user {author_id}")
        return message

    def list_messages(self, chat_id: int) -> List[Message]:
        return (
            self.db.query(Message)
            .filter(Message.chat_id == chat_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
            .all()
        )
