import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List

from sqlalchemy import DateTime, Integer, and_, func, literal, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import InternalError
from models import Message, ReadReceipt, User
from schemas import ReceiptEntry

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class ReadReceiptLedger:
    """Records which user has seen which message.

    A receipt is keyed by (message_id, user_id) and is written once: the
    first read sets ``read_at`` and later reads leave it alone.
    """

    def __init__(self, db: Session):
        self.db = db

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _UPSERT_DIALECTS[dialect]
        except KeyError:
            raise InternalError(f"Read receipts are not supported on {dialect}")

    def record_read_through(self, chat_id: int, viewer_id: int) -> int:
        """Ensure ``viewer_id`` holds a receipt for every message in the chat.

        Runs as one INSERT ... SELECT ... ON CONFLICT DO NOTHING statement and
        commits it, so concurrent readers can never produce duplicates and
        existing receipts keep their original timestamp. Returns the number
        of receipts created.
        """
        now = datetime.utcnow()
        source = select(
            Message.id,
            literal(viewer_id, Integer),
            literal(now, DateTime)
        ).where(Message.chat_id == chat_id)

        stmt = (
            self._insert()(ReadReceipt)
            .from_select(["message_id", "user_id", "read_at"], source)
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )

        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Recording receipts for user {viewer_id} in chat {chat_id} failed: {e}")
            raise InternalError("Could not record read receipts")

        created = max(result.rowcount or 0, 0)
        if created:
            logger.info(f"User {viewer_id} read {created} new message(s) in chat {chat_id}")
        return created

    def list_receipts_for(self, message_ids: Iterable[int]) -> Dict[int, List[ReceiptEntry]]:
        ids = list(message_ids)
        if not ids:
            return {}

        rows = (
            self.db.query(ReadReceipt.message_id, User.username, ReadReceipt.read_at)
            .join(User, User.id == ReadReceipt.user_id)
            .filter(ReadReceipt.message_id.in_(ids))
            .order_by(ReadReceipt.read_at.asc(), User.username.asc())
            .all()
        )

        receipts: Dict[int, List[ReceiptEntry]] = defaultdict(list)
        for message_id, username, read_at in rows:
            receipts[message_id].append(ReceiptEntry(username=username, read_at=read_at))
        return dict(receipts)

    def unread_counts(self, viewer_id: int, chat_ids: Iterable[int]) -> Dict[int, int]:
        """Messages per chat that have no receipt for the viewer.

        Chats without unread messages are absent from the result.
        """
        ids = list(chat_ids)
        if not ids:
            return {}

        rows = (
            self.db.query(Message.chat_id, func.count(Message.id))
            .outerjoin(
                ReadReceipt,
                and_(ReadReceipt.message_id == Message.id, ReadReceipt.user_id == viewer_id)
            )
            .filter(Message.chat_id.in_(ids), ReadReceipt.message_id.is_(None))
            .group_by(Message.chat_id)
            .all()
        )
        return {chat_id: count for chat_id, count in rows}

    def unread_count(self, chat_id: int, viewer_id: int) -> int:
        return self.unread_counts(viewer_id, [chat_id]).get(chat_id, 0)

    def has_read(self, message_id: int, viewer_id: int) -> bool:
        receipt = self.db.get(ReadReceipt, (message_id, viewer_id))
        return receipt is not None
