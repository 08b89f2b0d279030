import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from errors import InternalError, NotFoundError
from models import Chat, ChatUser, Message, ReadReceipt, User
from receipts import ReadReceiptLedger
from schemas import Contact, DirectContact, GroupContact, LastMessage

logger = logging.getLogger(__name__)


class ContactAggregator:
    """Builds the per-chat summaries a viewer's chat list is rendered from.

    For each chat the viewer belongs to this resolves the display identity
    (the other member of a direct chat, or the group's title and members),
    the latest message with its sender, how many messages the viewer has no
    receipt for, whether the latest one has been read, and the viewer's
    favourite flag. Results are ordered by latest activity; chats without
    any messages come last, by id.
    """

    def __init__(self, db: Session):
        self.db = db
        self.ledger = ReadReceiptLedger(db)

    def contact_list(self, viewer_id: int) -> List[Contact]:
        return self._summarize(viewer_id)

    def chat_header(self, viewer_id: int, chat_id: int) -> Contact:
        contacts = self._summarize(viewer_id, chat_id=chat_id)
        if not contacts:
            raise NotFoundError("Chat not found")
        return contacts[0]

    def _summarize(self, viewer_id: int, chat_id: Optional[int] = None) -> List[Contact]:
        query = (
            self.db.query(Chat, ChatUser.is_favourite)
            .join(ChatUser, ChatUser.chat_id == Chat.id)
            .filter(ChatUser.user_id == viewer_id)
        )
        if chat_id is not None:
            query = query.filter(Chat.id == chat_id)

        memberships = query.all()
        if not memberships:
            return []

        chat_ids = [chat.id for chat, _ in memberships]
        latest = self._last_messages(viewer_id, chat_ids)
        unread = self.ledger.unread_counts(viewer_id, chat_ids)
        members = self._members(chat_ids)

        active: List[Contact] = []
        idle: List[Contact] = []
        for chat, is_favourite in memberships:
            last_message, read_last = latest.get(chat.id, (None, False))
            common = {
                "chat_id": chat.id,
                "last_message": last_message,
                "unread_count": unread.get(chat.id, 0),
                "read_last_message": read_last,
                "is_favourite": bool(is_favourite),
            }

            if chat.is_group_chat:
                contact = GroupContact(
                    title=chat.title,
                    group_avatar=chat.group_avatar,
                    members=[user.username for user in members.get(chat.id, [])],
                    **common
                )
            else:
                other = self._other_member(chat.id, viewer_id, members.get(chat.id, []))
                contact = DirectContact(
                    user_id=other.id,
                    username=other.username,
                    avatar=other.avatar,
                    is_online=bool(other.is_online),
                    **common
                )

            (active if last_message is not None else idle).append(contact)

        active.sort(key=lambda c: (c.last_message.created_at, c.last_message.message_id), reverse=True)
        idle.sort(key=lambda c: c.chat_id)
        return active + idle

    @staticmethod
    def _other_member(chat_id: int, viewer_id: int, members: List[User]) -> User:
        others = [user for user in members if user.id != viewer_id]
        if len(others) != 1:
            logger.error(f"Direct chat {chat_id} has {len(others)} member(s) besides user {viewer_id}")
            raise InternalError("Direct chat membership is inconsistent")
        return others[0]

    def _last_messages(self, viewer_id: int, chat_ids: Iterable[int]) -> Dict[int, Tuple[LastMessage, bool]]:
        ranked = (
            select(
                Message.id,
                Message.chat_id,
                Message.user_id,
                Message.message,
                Message.is_image,
                Message.created_at,
                func.row_number().over(
                    partition_by=Message.chat_id,
                    order_by=(Message.created_at.desc(), Message.id.desc())
                ).label("position")
            )
            .where(Message.chat_id.in_(list(chat_ids)))
            .subquery()
        )

        stmt = (
            select(
                ranked.c.id,
                ranked.c.chat_id,
                ranked.c.message,
                ranked.c.is_image,
                ranked.c.created_at,
                User.username,
                ReadReceipt.message_id.label("read_message_id")
            )
            .select_from(ranked)
            .outerjoin(User, User.id == ranked.c.user_id)
            .outerjoin(
                ReadReceipt,
                and_(ReadReceipt.message_id == ranked.c.id, ReadReceipt.user_id == viewer_id)
            )
            .where(ranked.c.position == 1)
        )

        latest = {}
        for row in self.db.execute(stmt):
            last_message = LastMessage(
                message_id=row.id,
                content=row.message,
                is_image=bool(row.is_image),
                created_at=row.created_at,
                sender_username=row.username
            )
            latest[row.chat_id] = (last_message, row.read_message_id is not None)
        return latest

    def _members(self, chat_ids: Iterable[int]) -> Dict[int, List[User]]:
        rows = (
            self.db.query(ChatUser.chat_id, User)
            .join(User, User.id == ChatUser.user_id)
            .filter(ChatUser.chat_id.in_(list(chat_ids)))
            .order_by(ChatUser.chat_id, ChatUser.added_at, User.id)
            .all()
        )
        members: Dict[int, List[User]] = defaultdict(list)
        for chat_id, user in rows:
            members[chat_id].append(user)
        return members
