import asyncio
import json
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends, File, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
import logging

from auth import get_current_user_id, resolve_viewer
from chats import ChatManager
from config import CORS_ORIGINS, LOG_LEVEL, UPLOAD_URL_PREFIX
from contacts import ContactAggregator
from database import get_db, get_session_factory, engine
from errors import AuthError, ChatError, ValidationError
from message_store import MessageStore
from models import Base, ChatUser
from redis_client import RedisClient
from schemas import (
    ActionResponse, AddMembersRequest, AvatarResponse, BioUpdate, Contact, DeleteAccountRequest,
    DescriptionUpdate, FavouriteRequest, GroupCreatedResponse, GroupProfile, LoginRequest,
    MessageCreate, MessageResponse, PasswordChange, RegisterRequest, SettingsProfile,
    StartChatRequest, StartChatResponse, StartGroupChatRequest, TitleUpdate, TokenResponse,
    TranscriptMessage, UserProfile, UsernameUpdate, UserSummary
)
from storage import FileStorage
from transcript import TranscriptReader
from users import UserService

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Chat API",
    description="Messaging backend with direct and group chats, read receipts and live presence",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

redis_client = RedisClient()
storage = FileStorage()

app.mount(UPLOAD_URL_PREFIX, StaticFiles(directory=storage.directory), name="uploads")


def get_storage() -> FileStorage:
    return storage


class ConnectionManager:
    """WebSocket connection manager; a user may hold several sockets at once"""

    def __init__(self):
        self.active_connections: dict[int, set[WebSocket]] = defaultdict(set)

    async def connect(self, websocket: WebSocket, user_id: int):
        await websocket.accept()
        self.active_connections[user_id].add(websocket)
        logger.info(f"User {user_id} connected via WebSocket ({len(self.active_connections[user_id])} open)")

    def disconnect(self, user_id: int, websocket: Optional[WebSocket] = None) -> bool:
        """Forget one socket, or all of them; True once the user has none left."""
        sockets = self.active_connections.get(user_id)
        if sockets is None:
            return True

        if websocket is None:
            sockets.clear()
        else:
            sockets.discard(websocket)

        if sockets:
            return False
        del self.active_connections[user_id]
        logger.info(f"User {user_id} disconnected")
        return True

    async def send_personal_message(self, message: dict, user_id: int) -> bool:
        delivered = False
        for websocket in list(self.active_connections.get(user_id, ())):
            try:
                await websocket.send_text(json.dumps(message, default=str))
                delivered = True
            except Exception as e:
                logger.warning(f"Dropping a connection of user {user_id}: {e}")
                self.disconnect(user_id, websocket)
        return delivered


manager = ConnectionManager()


async def notify(user_ids: Iterable[int], event: Dict[str, Any]):
    for user_id in user_ids:
        if redis_client.enabled:
            await redis_client.publish_event(user_id, event)
        else:
            await manager.send_personal_message(event, user_id)


@app.on_event("startup")
async def startup_event():
    Base.metadata.create_all(bind=engine)
    await redis_client.connect()
    logger.info("Application started")


@app.on_event("shutdown")
async def shutdown_event():
    await redis_client.close()
    logger.info("Application shutdown")


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0]["msg"] if errors else "Invalid request"
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal storage error"})


@app.get("/", tags=["Info"])
async def root():
    return {
        "message": "Chat Backend API",
        "version": "1.0.0",
        "endpoints": {
            "auth": "/auth/",
            "users": "/users/",
            "chats": "/chats/",
            "websocket": "/ws?token=<token>",
            "docs": "/docs"
        }
    }


# Authentication

@app.post("/auth/register", response_model=ActionResponse, status_code=201, tags=["Auth"])
async def register(body: RegisterRequest, db: Session = Depends(get_db)):
    # Password hashing runs in the threadpool, not on the event loop
    await run_in_threadpool(UserService(db).register, body.username, body.password)
    return ActionResponse(message="User registered successfully")


@app.post("/auth/login", response_model=TokenResponse, tags=["Auth"])
async def login(body: LoginRequest, db: Session = Depends(get_db)):
    token = await run_in_threadpool(UserService(db).login, body.username, body.password)
    return TokenResponse(message="Login successful", token=token)


@app.post("/auth/logout", response_model=ActionResponse, tags=["Auth"])
async def logout(viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    UserService(db).logout(viewer_id)
    return ActionResponse(message="Logged out")


# Users and settings

@app.get("/users/", response_model=List[UserSummary], tags=["Users"])
async def list_users(viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return UserService(db).list_users(viewer_id)


@app.get("/users/me", response_model=SettingsProfile, tags=["Settings"])
async def get_settings_profile(viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return UserService(db).settings_profile(viewer_id)


@app.get("/users/me/summary", response_model=UserSummary, tags=["Settings"])
async def get_username_avatar(viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return UserService(db).username_avatar(viewer_id)


@app.put("/users/me/bio", response_model=ActionResponse, tags=["Settings"])
async def update_bio(body: BioUpdate, viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    UserService(db).update_bio(viewer_id, body.bio)
    return ActionResponse(message="Bio updated successfully")


@app.put("/users/me/username", response_model=ActionResponse, tags=["Settings"])
async def update_username(
    body: UsernameUpdate,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    UserService(db).update_username(viewer_id, body.username)
    return ActionResponse(message="Username updated successfully")


@app.put("/users/me/password", response_model=ActionResponse, tags=["Settings"])
async def change_password(
    body: PasswordChange,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    await run_in_threadpool(UserService(db).change_password, viewer_id, body.current_password, body.new_password)
    return ActionResponse(message="Password updated successfully")


@app.post("/users/me/avatar", response_model=AvatarResponse, tags=["Settings"])
async def upload_photo(
    avatar: UploadFile = File(...),
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileStorage = Depends(get_storage)
):
    _require_image(avatar)
    path = files.save(avatar)
    try:
        previous = UserService(db).set_avatar(viewer_id, path)
    except (ChatError, SQLAlchemyError):
        files.delete(path)
        raise
    files.delete(previous)
    return AvatarResponse(message="Profile photo updated successfully", avatar=path)


@app.delete("/users/me/avatar", response_model=ActionResponse, tags=["Settings"])
async def delete_photo(
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileStorage = Depends(get_storage)
):
    files.delete(UserService(db).set_avatar(viewer_id, None))
    return ActionResponse(message="Profile photo deleted successfully")


@app.delete("/users/me", response_model=ActionResponse, tags=["Settings"])
async def delete_account(
    body: DeleteAccountRequest,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    await run_in_threadpool(UserService(db).delete_account, viewer_id, body.password)
    manager.disconnect(viewer_id)
    return ActionResponse(message="Account deleted successfully")


@app.get("/users/{user_id}", response_model=UserProfile, tags=["Users"])
async def get_user_profile(user_id: int, viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return UserService(db).user_profile(viewer_id, user_id)


# Chats

@app.get("/chats/", response_model=List[Contact], tags=["Chats"])
async def get_contact_list(viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return ContactAggregator(db).contact_list(viewer_id)


@app.post("/chats/direct", response_model=StartChatResponse, tags=["Chats"])
async def start_chat(
    body: StartChatRequest,
    response: Response,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    chat, created = ChatManager(db).start_direct_chat(viewer_id, body.user_id)
    response.status_code = 201 if created else 200
    return StartChatResponse(chat_id=chat.id, created=created)


@app.delete("/chats/direct/{user_id}", response_model=ActionResponse, tags=["Chats"])
async def remove_friend(user_id: int, viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    ChatManager(db).remove_friend(viewer_id, user_id)
    return ActionResponse(message="Friend and chat removed successfully")


@app.put("/chats/favourite", response_model=ActionResponse, tags=["Chats"])
async def favourite_chat(
    body: FavouriteRequest,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    ChatManager(db).favourite_chat(viewer_id, body.is_favourite, chat_id=body.chat_id, user_id=body.user_id)
    return ActionResponse(message="Favourite status updated successfully")


@app.post("/chats/group", response_model=GroupCreatedResponse, status_code=201, tags=["Groups"])
async def start_group_chat(
    body: StartGroupChatRequest,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    chat = ChatManager(db).start_group_chat(viewer_id, body.user_ids, body.title, body.description)
    return GroupCreatedResponse(message="Group chat created successfully", chat_id=chat.id)


@app.get("/chats/{chat_id}", response_model=Contact, tags=["Chats"])
async def get_chat_header(chat_id: int, viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return ContactAggregator(db).chat_header(viewer_id, chat_id)


@app.get("/chats/{chat_id}/messages", response_model=List[TranscriptMessage], tags=["Messages"])
async def get_messages(chat_id: int, viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return TranscriptReader(db).fetch(viewer_id, chat_id)


@app.post("/chats/{chat_id}/messages", response_model=MessageResponse, status_code=201, tags=["Messages"])
async def post_message(
    chat_id: int,
    body: MessageCreate,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return await _post(db, viewer_id, chat_id, body.content, is_image=False)


@app.post("/chats/{chat_id}/images", response_model=MessageResponse, status_code=201, tags=["Messages"])
async def post_image(
    chat_id: int,
    image: UploadFile = File(...),
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileStorage = Depends(get_storage)
):
    _require_image(image)
    ChatManager(db).require_member(chat_id, viewer_id)
    path = files.save(image)
    try:
        return await _post(db, viewer_id, chat_id, path, is_image=True)
    except (ChatError, SQLAlchemyError):
        files.delete(path)
        raise


async def _post(db: Session, viewer_id: int, chat_id: int, content: str, is_image: bool) -> MessageResponse:
    ChatManager(db).require_member(chat_id, viewer_id)
    message = MessageStore(db).append_message(chat_id, viewer_id, content, is_image=is_image)

    result = MessageResponse.model_validate(message)
    if is_image:
        result.image_url = content

    recipients = [
        row.user_id for row in
        db.query(ChatUser.user_id).filter(ChatUser.chat_id == chat_id, ChatUser.user_id != viewer_id)
    ]
    await notify(recipients, {"type": "message", **result.model_dump(mode="json")})
    logger.info(f"Message {message.id} posted to chat {chat_id}, notified {len(recipients)} member(s)")
    return result


def _require_image(upload: UploadFile):
    if not (upload.content_type or "").startswith("image/"):
        raise ValidationError("Only image uploads are accepted")


# Group settings

@app.get("/chats/{chat_id}/profile", response_model=GroupProfile, tags=["Groups"])
async def get_group_profile(chat_id: int, viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return ChatManager(db).group_profile(viewer_id, chat_id)


@app.put("/chats/{chat_id}/title", response_model=ActionResponse, tags=["Groups"])
async def update_title(
    chat_id: int,
    body: TitleUpdate,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    ChatManager(db).update_title(viewer_id, chat_id, body.title)
    return ActionResponse(message="Title updated successfully")


@app.put("/chats/{chat_id}/description", response_model=ActionResponse, tags=["Groups"])
async def update_description(
    chat_id: int,
    body: DescriptionUpdate,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    ChatManager(db).update_description(viewer_id, chat_id, body.description)
    return ActionResponse(message="Description updated successfully")


@app.post("/chats/{chat_id}/avatar", response_model=AvatarResponse, tags=["Groups"])
async def upload_group_photo(
    chat_id: int,
    avatar: UploadFile = File(...),
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileStorage = Depends(get_storage)
):
    _require_image(avatar)
    chats = ChatManager(db)
    chats.require_group(chat_id, viewer_id)
    path = files.save(avatar)
    try:
        previous = chats.set_group_avatar(viewer_id, chat_id, path)
    except (ChatError, SQLAlchemyError):
        files.delete(path)
        raise
    files.delete(previous)
    return AvatarResponse(message="Group photo updated successfully", avatar=path)


@app.delete("/chats/{chat_id}/avatar", response_model=ActionResponse, tags=["Groups"])
async def delete_group_photo(
    chat_id: int,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    files: FileStorage = Depends(get_storage)
):
    files.delete(ChatManager(db).set_group_avatar(viewer_id, chat_id, None))
    return ActionResponse(message="Group photo deleted successfully")


@app.post("/chats/{chat_id}/members", response_model=ActionResponse, tags=["Groups"])
async def add_members(
    chat_id: int,
    body: AddMembersRequest,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    ChatManager(db).add_members(viewer_id, chat_id, body.user_ids)
    return ActionResponse(message="New members added successfully")


@app.delete("/chats/{chat_id}/members/{user_id}", response_model=ActionResponse, tags=["Groups"])
async def remove_member(
    chat_id: int,
    user_id: int,
    viewer_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    ChatManager(db).remove_member(viewer_id, chat_id, user_id)
    return ActionResponse(message="User removed successfully")


@app.post("/chats/{chat_id}/leave", response_model=ActionResponse, tags=["Groups"])
async def leave_group(chat_id: int, viewer_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    ChatManager(db).leave_group(viewer_id, chat_id)
    return ActionResponse(message="Left group successfully")


# Presence and live events

def _identify(sessions: sessionmaker, token: str):
    with sessions() as db:
        user_id = resolve_viewer(db, token)
        return user_id, UserService(db).get_user(user_id).username


def _set_presence(sessions: sessionmaker, user_id: int, online: bool):
    with sessions() as db:
        UserService(db).set_online(user_id, online)


@app.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = "",
    sessions: sessionmaker = Depends(get_session_factory)
):
    # No session is held while the socket idles; each database action opens its own
    try:
        user_id, username = await run_in_threadpool(_identify, sessions, token)
    except AuthError as e:
        await websocket.close(code=4001, reason=e.message)
        return

    await manager.connect(websocket, user_id)
    pubsub_task = None

    try:
        await websocket.send_text(json.dumps({
            "type": "system",
            "message": f"Connected to chat as {username}",
            "timestamp": datetime.utcnow().isoformat()
        }))

        if redis_client.enabled:
            pubsub_task = asyncio.create_task(
                redis_client.subscribe_to_user_events(user_id, websocket)
            )

        while True:
            data = await websocket.receive_text()
            try:
                payload = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "message": "Invalid JSON"}))
                continue

            action = payload.get("action") or payload.get("type")
            if action == "ping":
                await websocket.send_text(json.dumps({
                    "type": "pong",
                    "timestamp": datetime.utcnow().isoformat()
                }))
            elif action in ("setOnline", "setOffline"):
                online = action == "setOnline"
                await run_in_threadpool(_set_presence, sessions, user_id, online)
                await websocket.send_text(json.dumps({"type": "presence", "is_online": online}))
            else:
                await websocket.send_text(json.dumps({"type": "error", "message": f"Unknown action: {action}"}))

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for user {user_id}")
    finally:
        if pubsub_task is not None:
            pubsub_task.cancel()
        if manager.disconnect(user_id, websocket):
            # Not awaited, so it still runs when the socket task is being cancelled
            _set_presence(sessions, user_id, False)


@app.get("/health", tags=["Health"])
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_status = "OK"
    except Exception as e:
        db_status = f"ERROR: {e}"

    if not redis_client.enabled:
        redis_status = "DISABLED"
    else:
        try:
            await redis_client.ping()
            redis_status = "OK"
        except Exception as e:
            redis_status = f"ERROR: {e}"

    return {
        "status": "OK" if db_status == "OK" and redis_status in ("OK", "DISABLED") else "ERROR",
        "database": db_status,
        "redis": redis_status,
        "timestamp": datetime.utcnow().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
