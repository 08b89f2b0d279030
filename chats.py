import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import DEFAULT_GROUP_DESCRIPTION
from errors import ConflictError, InternalError, NotFoundError, ValidationError
from models import Chat, ChatUser, User
from schemas import GroupMember, GroupProfile

logger = logging.getLogger(__name__)


def member_key(is_group: bool, user_ids: Iterable[int]) -> Optional[str]:
    """Order-independent signature of a chat's member set.

    Stored in the unique ``chats.member_key`` column so the database itself
    rejects a second direct chat for the same pair, or a second group with
    the same members.
    """
    ids = sorted(set(user_ids))
    if not ids:
        return None
    if is_group:
        return "group:" + ",".join(str(i) for i in ids)
    return "direct:" + ":".join(str(i) for i in ids)


class ChatManager:
    def __init__(self, db: Session):
        self.db = db

    # Lookups

    def require_member(self, chat_id: int, user_id: int) -> ChatUser:
        membership = self.db.get(ChatUser, (chat_id, user_id))
        if membership is None:
            raise NotFoundError("Chat not found")
        return membership

    def require_group(self, chat_id: int, viewer_id: int) -> Chat:
        self.require_member(chat_id, viewer_id)
        chat = self.db.get(Chat, chat_id)
        if not chat.is_group_chat:
            raise ValidationError("Chat is not a group chat")
        return chat

    def _require_users(self, user_ids: Iterable[int]) -> Dict[int, User]:
        ids = list(dict.fromkeys(user_ids))
        users = {u.id: u for u in self.db.query(User).filter(User.id.in_(ids)).all()}
        missing = [uid for uid in ids if uid not in users]
        if missing:
            raise NotFoundError(f"User {missing[0]} not found")
        return users

    def find_direct_chat(self, user_a: int, user_b: int) -> Optional[Chat]:
        return (
            self.db.query(Chat)
            .filter(Chat.member_key == member_key(False, [user_a, user_b]))
            .first()
        )

    def find_group_with_members(self, user_ids: Iterable[int], exclude_chat_id: Optional[int] = None) -> Optional[int]:
        """Id of a group chat whose member set equals ``user_ids`` exactly."""
        wanted = set(user_ids)
        if not wanted:
            return None

        # Any exact match must contain the lowest id, so only those groups are scanned
        candidates = (
            select(ChatUser.chat_id)
            .join(Chat, Chat.id == ChatUser.chat_id)
            .where(Chat.is_group_chat.is_(True), ChatUser.user_id == min(wanted))
        )
        if exclude_chat_id is not None:
            candidates = candidates.where(ChatUser.chat_id != exclude_chat_id)

        rows = (
            self.db.query(ChatUser.chat_id, ChatUser.user_id)
            .filter(ChatUser.chat_id.in_(candidates))
            .all()
        )
        signatures = defaultdict(set)
        for chat_id, user_id in rows:
            signatures[chat_id].add(user_id)

        for chat_id in sorted(signatures):
            if signatures[chat_id] == wanted:
                return chat_id
        return None

    def _refresh_member_key(self, chat: Chat, clear_on_collision: bool = True):
        self.db.flush()
        ids = [row.user_id for row in self.db.query(ChatUser.user_id).filter(ChatUser.chat_id == chat.id)]
        key = member_key(chat.is_group_chat, ids)
        taken = key is not None and (
            self.db.query(Chat.id)
            .filter(Chat.member_key == key, Chat.id != chat.id)
            .first()
        ) is not None
        if taken:
            if not clear_on_collision:
                raise ConflictError("Group chat with these members already exists")
            key = None
        chat.member_key = key

    def refresh_group_keys(self, chat_ids: Iterable[int]):
        for chat in self.db.query(Chat).filter(Chat.id.in_(list(chat_ids)), Chat.is_group_chat.is_(True)):
            self._refresh_member_key(chat)

    def _commit_membership_change(self, chat: Chat, clear_on_collision: bool = True):
        try:
            self._refresh_member_key(chat, clear_on_collision=clear_on_collision)
            self.db.commit()
        except ConflictError:
            self.db.rollback()
            raise
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Group chat with these members already exists")

    # Direct chats

    def start_direct_chat(self, viewer_id: int, user_id: int) -> Tuple[Chat, bool]:
        """Return the direct chat between the two users, creating it if needed."""
        if viewer_id == user_id:
            raise ValidationError("Cannot start a chat with yourself")
        self._require_users([user_id])

        existing = self.find_direct_chat(viewer_id, user_id)
        if existing is not None:
            return existing, False

        chat = Chat(
            is_group_chat=False,
            member_key=member_key(False, [viewer_id, user_id]),
            created_at=datetime.utcnow()
        )
        chat.members = [ChatUser(user_id=viewer_id), ChatUser(user_id=user_id)]
        self.db.add(chat)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent creator; theirs is the chat
            self.db.rollback()
            existing = self.find_direct_chat(viewer_id, user_id)
            if existing is None:
                raise InternalError("Could not start chat")
            return existing, False

        self.db.refresh(chat)
        logger.info(f"Direct chat {chat.id} created between users {viewer_id} and {user_id}")
        return chat, True

    def remove_friend(self, viewer_id: int, user_id: int):
        chat = self.find_direct_chat(viewer_id, user_id)
        if chat is None:
            raise NotFoundError("No one-to-one chat found with this user")
        self.db.delete(chat)
        self.db.commit()
        logger.info(f"Direct chat {chat.id} removed by user {viewer_id}")

    # Group chats

    def start_group_chat(
        self,
        creator_id: int,
        user_ids: List[int],
        title: Optional[str] = None,
        description: Optional[str] = None,
        avatar: Optional[str] = None
    ) -> Chat:
        member_ids = sorted(set(user_ids) | {creator_id})
        if len(member_ids) <= 1:
            raise ValidationError("Add more members")

        invited = [uid for uid in dict.fromkeys(user_ids) if uid != creator_id]
        users = self._require_users(invited)

        if self.find_group_with_members(member_ids) is not None:
            raise ConflictError("Group chat already exists")

        chat = Chat(
            is_group_chat=True,
            title=title or ", ".join(users[uid].username for uid in invited)[:100],
            description=description or DEFAULT_GROUP_DESCRIPTION,
            group_avatar=avatar,
            member_key=member_key(True, member_ids),
            created_at=datetime.utcnow()
        )
        chat.members = [ChatUser(user_id=uid) for uid in member_ids]
        self.db.add(chat)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Group chat already exists")

        self.db.refresh(chat)
        logger.info(f"Group chat {chat.id} created by user {creator_id} with {len(member_ids)} members")
        return chat

    def add_members(self, viewer_id: int, chat_id: int, user_ids: List[int]) -> List[int]:
        chat = self.require_group(chat_id, viewer_id)
        current = {row.user_id for row in self.db.query(ChatUser.user_id).filter(ChatUser.chat_id == chat_id)}

        new_ids = [uid for uid in dict.fromkeys(user_ids) if uid not in current]
        if not new_ids:
            raise ValidationError("No new members to add")
        self._require_users(new_ids)

        if self.find_group_with_members(current | set(new_ids), exclude_chat_id=chat_id) is not None:
            raise ConflictError("Group chat with these members already exists")

        for uid in new_ids:
            self.db.add(ChatUser(chat_id=chat_id, user_id=uid))
        self._commit_membership_change(chat, clear_on_collision=False)

        logger.info(f"User {viewer_id} added {new_ids} to group {chat_id}")
        return new_ids

    def remove_member(self, viewer_id: int, chat_id: int, user_id: int):
        chat = self.require_group(chat_id, viewer_id)
        membership = self.db.get(ChatUser, (chat_id, user_id))
        if membership is None:
            raise NotFoundError("User not found in the chat")

        self.db.delete(membership)
        self._commit_membership_change(chat)
        logger.info(f"User {user_id} removed from group {chat_id} by user {viewer_id}")

    def leave_group(self, viewer_id: int, chat_id: int):
        chat = self.require_group(chat_id, viewer_id)
        self.db.delete(self.db.get(ChatUser, (chat_id, viewer_id)))
        self._commit_membership_change(chat)
        logger.info(f"User {viewer_id} left group {chat_id}")

    # Settings

    def favourite_chat(self, viewer_id: int, is_favourite: bool, chat_id: Optional[int] = None, user_id: Optional[int] = None):
        if user_id is not None:
            chat = self.find_direct_chat(viewer_id, user_id)
            if chat is None:
                raise NotFoundError("No one-to-one chat found with the specified user")
            chat_id = chat.id
        elif chat_id is None:
            raise ValidationError("Either chat_id or user_id must be provided")

        membership = self.require_member(chat_id, viewer_id)
        membership.is_favourite = is_favourite
        self.db.commit()

    def update_title(self, viewer_id: int, chat_id: int, title: str):
        chat = self.require_group(chat_id, viewer_id)
        chat.title = title
        self.db.commit()

    def update_description(self, viewer_id: int, chat_id: int, description: str):
        chat = self.require_group(chat_id, viewer_id)
        chat.description = description
        self.db.commit()

    def set_group_avatar(self, viewer_id: int, chat_id: int, path: Optional[str]) -> Optional[str]:
        """Point the group avatar at ``path`` (None clears it); returns the old path."""
        chat = self.require_group(chat_id, viewer_id)
        previous = chat.group_avatar
        chat.group_avatar = path
        self.db.commit()
        return previous

    def group_profile(self, viewer_id: int, chat_id: int) -> GroupProfile:
        chat = self.require_group(chat_id, viewer_id)
        rows = (
            self.db.query(User, ChatUser)
            .join(ChatUser, ChatUser.user_id == User.id)
            .filter(ChatUser.chat_id == chat_id)
            .order_by(ChatUser.added_at.asc(), User.id.asc())
            .all()
        )

        own = next(membership for user, membership in rows if user.id == viewer_id)
        return GroupProfile(
            chat_id=chat.id,
            title=chat.title,
            description=chat.description,
            group_avatar=chat.group_avatar,
            created_at=chat.created_at,
            added_at=own.added_at,
            is_favourite=bool(own.is_favourite),
            members=[
                GroupMember(user_id=user.id, username=user.username, avatar=user.avatar, bio=user.bio)
                for user, _ in rows
            ]
        )
