import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from auth import create_token, hash_password, verify_password
from chats import ChatManager
from config import DEFAULT_BIO
from errors import AuthError, InternalError, NotFoundError, ValidationError
from models import Chat, ChatUser, User
from schemas import SettingsProfile, SharedGroup, UserProfile, UserSummary

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _ensure_username_free(self, username: str):
        if self.db.query(User.id).filter(User.username == username).first() is not None:
            raise ValidationError("Username already exists")

    # Authentication

    def register(self, username: str, password: str) -> User:
        self._ensure_username_free(username)

        user = User(username=username, password=hash_password(password), bio=DEFAULT_BIO)
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("Username already exists")
        self.db.refresh(user)

        logger.info(f"Registered user: {user.username} (ID: {user.id})")
        return user

    def login(self, username: str, password: str) -> str:
        user = self.db.query(User).filter(User.username == username).first()
        if user is None:
            raise AuthError("Username not found")
        if not verify_password(password, user.password):
            raise AuthError("Invalid password")

        user.is_online = True
        self.db.commit()
        logger.info(f"User {user.id} logged in")
        return create_token(user.id, user.username)

    def set_online(self, user_id: int, online: bool):
        updated = (
            self.db.query(User)
            .filter(User.id == user_id)
            .update({User.is_online: online}, synchronize_session="fetch")
        )
        self.db.commit()
        if updated:
            logger.info(f"User {user_id} is now {'online' if online else 'offline'}")

    def logout(self, user_id: int):
        self.set_online(user_id, False)

    # Profiles

    def list_users(self, viewer_id: int) -> List[UserSummary]:
        users = self.db.query(User).filter(User.id != viewer_id).order_by(User.username).all()
        return [UserSummary(user_id=u.id, username=u.username, avatar=u.avatar) for u in users]

    def username_avatar(self, viewer_id: int) -> UserSummary:
        user = self.get_user(viewer_id)
        return UserSummary(user_id=user.id, username=user.username, avatar=user.avatar)

    def settings_profile(self, viewer_id: int) -> SettingsProfile:
        return SettingsProfile.model_validate(self.get_user(viewer_id))

    def user_profile(self, viewer_id: int, user_id: int) -> UserProfile:
        user = self.get_user(user_id)

        added_at = None
        is_favourite = False
        direct = ChatManager(self.db).find_direct_chat(viewer_id, user_id)
        if direct is not None:
            own = self.db.get(ChatUser, (direct.id, viewer_id))
            added_at, is_favourite = own.added_at, bool(own.is_favourite)

        theirs = aliased(ChatUser)
        mine = aliased(ChatUser)
        groups = (
            self.db.query(Chat)
            .join(theirs, (theirs.chat_id == Chat.id) & (theirs.user_id == user_id))
            .join(mine, (mine.chat_id == Chat.id) & (mine.user_id == viewer_id))
            .filter(Chat.is_group_chat.is_(True))
            .order_by(Chat.id)
            .all()
        )

        groups_in = []
        for group in groups:
            usernames = [
                row.username for row in
                self.db.query(User.username)
                .join(ChatUser, ChatUser.user_id == User.id)
                .filter(ChatUser.chat_id == group.id)
                .order_by(ChatUser.added_at, User.id)
            ]
            groups_in.append(SharedGroup(
                chat_id=group.id,
                title=group.title,
                group_avatar=group.group_avatar,
                members=usernames
            ))

        return UserProfile(
            user_id=user.id,
            username=user.username,
            avatar=user.avatar,
            bio=user.bio,
            is_online=bool(user.is_online),
            added_at=added_at,
            is_favourite=is_favourite,
            groups_in=groups_in
        )

    # Settings

    def update_bio(self, viewer_id: int, bio: str):
        user = self.get_user(viewer_id)
        user.bio = bio
        self.db.commit()

    def update_username(self, viewer_id: int, username: str):
        user = self.get_user(viewer_id)
        self._ensure_username_free(username)
        user.username = username
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("Username already exists")
        logger.info(f"User {viewer_id} renamed to {username}")

    def change_password(self, viewer_id: int, current_password: str, new_password: str):
        user = self.get_user(viewer_id)
        if not verify_password(current_password, user.password):
            raise ValidationError("Invalid current password")
        user.password = hash_password(new_password)
        self.db.commit()
        logger.info(f"User {viewer_id} changed password")

    def set_avatar(self, viewer_id: int, path: Optional[str]) -> Optional[str]:
        """Point the avatar at ``path`` (None clears it); returns the old path."""
        user = self.get_user(viewer_id)
        previous = user.avatar
        user.avatar = path
        self.db.commit()
        return previous

    def delete_account(self, viewer_id: int, password: str):
        """Delete the user together with their direct chats.

        Group chats survive without them; their member signatures are
        recomputed in the same transaction.
        """
        user = self.get_user(viewer_id)
        if not verify_password(password, user.password):
            raise ValidationError("Invalid current password")

        rows = (
            self.db.query(Chat.id, Chat.is_group_chat)
            .join(ChatUser, ChatUser.chat_id == Chat.id)
            .filter(ChatUser.user_id == viewer_id)
            .all()
        )
        group_ids = [chat_id for chat_id, is_group in rows if is_group]
        direct_ids = [chat_id for chat_id, is_group in rows if not is_group]

        try:
            for chat in self.db.query(Chat).filter(Chat.id.in_(direct_ids)):
                self.db.delete(chat)
            self.db.delete(user)
            self.db.flush()
            ChatManager(self.db).refresh_group_keys(group_ids)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Deleting account {viewer_id} failed: {e}")
            raise InternalError("Error deleting account")

        logger.info(f"Deleted account {viewer_id} with {len(direct_ids)} direct chat(s)")
