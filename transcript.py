import logging
from typing import List

from sqlalchemy.orm import Session

from chats import ChatManager
from message_store import MessageStore
from models import User
from receipts import ReadReceiptLedger
from schemas import TranscriptMessage

logger = logging.getLogger(__name__)


class TranscriptReader:
    """Conversation view of a chat for one of its members.

    Fetching a transcript is what marks a chat as read: receipts for every
    message are recorded before the messages are listed, so the viewer's
    own name shows up in the ``read_by`` annotations it returns.
    """

    def __init__(self, db: Session):
        self.db = db
        self.chats = ChatManager(db)
        self.store = MessageStore(db)
        self.ledger = ReadReceiptLedger(db)

    def fetch(self, viewer_id: int, chat_id: int) -> List[TranscriptMessage]:
        self.chats.require_member(chat_id, viewer_id)
        self.ledger.record_read_through(chat_id, viewer_id)

        messages = self.store.list_messages(chat_id)
        if not messages:
            return []

        author_ids = {m.user_id for m in messages}
        authors = {u.id: u for u in self.db.query(User).filter(User.id.in_(author_ids))}
        receipts = self.ledger.list_receipts_for(m.id for m in messages)

        transcript = []
        for message in messages:
            author = authors[message.user_id]
            transcript.append(TranscriptMessage(
                id=message.id,
                user_id=message.user_id,
                username=author.username,
                avatar=author.avatar,
                message=message.message,
                is_image=message.is_image,
                created_at=message.created_at,
                direction="outgoing" if message.user_id == viewer_id else "incoming",
                read_by=receipts.get(message.id, [])
            ))
        return transcript
