from datetime import datetime

import pytest

from errors import NotFoundError
from message_store import MessageStore
from models import Message, ReadReceipt
from receipts import ReadReceiptLedger


@pytest.fixture
def pair(make_user, chats):
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = chats.start_direct_chat(alice.id, bob.id)
    return alice, bob, chat


class TestMessageStore:
    def test_append_then_list_ends_with_new_message(self, db, pair, post):
        alice, bob, chat = pair
        post(chat, alice, "first")
        post(chat, bob, "second")
        latest = post(chat, alice, "third")

        messages = MessageStore(db).list_messages(chat.id)
        assert [m.message for m in messages] == ["first", "second", "third"]
        assert messages[-1].id == latest.id
        assert latest.created_at is not None

    def test_append_to_missing_chat(self, db, pair):
        alice, _, _ = pair
        with pytest.raises(NotFoundError):
            MessageStore(db).append_message(9999, alice.id, "hello")

    def test_equal_timestamps_are_ordered_by_id(self, db, pair):
        alice, bob, chat = pair
        moment = datetime(2024, 1, 1, 12, 0, 0)
        for author, text in [(bob, "b"), (alice, "a"), (bob, "c")]:
            db.add(Message(chat_id=chat.id, user_id=author.id, message=text, created_at=moment))
        db.commit()

        messages = MessageStore(db).list_messages(chat.id)
        assert [m.message for m in messages] == ["b", "a", "c"]
        assert [m.id for m in messages] == sorted(m.id for m in messages)

    def test_image_messages_keep_their_path(self, db, pair):
        alice, _, chat = pair
        message = MessageStore(db).append_message(chat.id, alice.id, "/uploads/cat.png", is_image=True)
        assert message.is_image is True
        assert message.message == "/uploads/cat.png"


class TestReadReceiptLedger:
    def test_record_creates_one_receipt_per_message(self, db, pair, post):
        alice, bob, chat = pair
        for text in ("one", "two", "three"):
            post(chat, bob, text)

        created = ReadReceiptLedger(db).record_read_through(chat.id, alice.id)

        assert created == 3
        assert db.query(ReadReceipt).filter(ReadReceipt.user_id == alice.id).count() == 3

    def test_record_is_idempotent_and_keeps_read_at(self, db, pair, post):
        alice, bob, chat = pair
        post(chat, bob, "one")
        post(chat, bob, "two")
        ledger = ReadReceiptLedger(db)

        ledger.record_read_through(chat.id, alice.id)
        first = {r.message_id: r.read_at for r in db.query(ReadReceipt).filter(ReadReceipt.user_id == alice.id)}

        assert ledger.record_read_through(chat.id, alice.id) == 0
        db.expire_all()
        second = {r.message_id: r.read_at for r in db.query(ReadReceipt).filter(ReadReceipt.user_id == alice.id)}

        assert second == first

    def test_only_new_messages_get_receipts_on_reread(self, db, pair, post):
        alice, bob, chat = pair
        post(chat, bob, "old")
        ledger = ReadReceiptLedger(db)
        ledger.record_read_through(chat.id, alice.id)

        post(chat, bob, "new")
        assert ledger.record_read_through(chat.id, alice.id) == 1

    def test_receipts_are_per_viewer(self, db, pair, post):
        alice, bob, chat = pair
        message = post(chat, bob, "hi")
        ledger = ReadReceiptLedger(db)

        ledger.record_read_through(chat.id, alice.id)

        assert ledger.has_read(message.id, alice.id) is True
        assert ledger.has_read(message.id, bob.id) is False

    def test_unread_count_is_set_difference(self, db, pair, post):
        alice, bob, chat = pair
        ledger = ReadReceiptLedger(db)

        def receipts_for_alice():
            return (
                db.query(ReadReceipt)
                .join(Message, Message.id == ReadReceipt.message_id)
                .filter(Message.chat_id == chat.id, ReadReceipt.user_id == alice.id)
                .count()
            )

        post(chat, bob, "1")
        post(chat, alice, "2")
        assert ledger.unread_count(chat.id, alice.id) == 2

        ledger.record_read_through(chat.id, alice.id)
        post(chat, bob, "3")
        post(chat, bob, "4")
        ledger.record_read_through(chat.id, alice.id)
        post(chat, bob, "5")

        total = db.query(Message).filter(Message.chat_id == chat.id).count()
        assert ledger.unread_count(chat.id, alice.id) == total - receipts_for_alice() == 1

    def test_unread_counts_skip_fully_read_chats(self, db, pair, post, make_user, chats):
        alice, bob, chat = pair
        carol = make_user("carol")
        other, _ = chats.start_direct_chat(alice.id, carol.id)
        post(chat, bob, "read me")
        post(other, carol, "unread")
        ledger = ReadReceiptLedger(db)
        ledger.record_read_through(chat.id, alice.id)

        assert ledger.unread_counts(alice.id, [chat.id, other.id]) == {other.id: 1}
        assert ledger.unread_counts(alice.id, []) == {}

    def test_list_receipts_for_orders_by_read_time_then_name(self, db, pair, post, make_user):
        alice, bob, chat = pair
        carol = make_user("carol")
        first = post(chat, alice, "hello")
        second = post(chat, bob, "hey")
        db.add_all([
            ReadReceipt(message_id=first.id, user_id=bob.id, read_at=datetime(2024, 1, 1, 9, 0)),
            ReadReceipt(message_id=first.id, user_id=alice.id, read_at=datetime(2024, 1, 1, 10, 0)),
            ReadReceipt(message_id=first.id, user_id=carol.id, read_at=datetime(2024, 1, 1, 9, 0)),
            ReadReceipt(message_id=second.id, user_id=alice.id, read_at=datetime(2024, 1, 1, 10, 0)),
        ])
        db.commit()

        receipts = ReadReceiptLedger(db).list_receipts_for([first.id, second.id])

        assert [r.username for r in receipts[first.id]] == ["bob", "carol", "alice"]
        assert [r.username for r in receipts[second.id]] == ["alice"]
        assert receipts[second.id][0].read_at == datetime(2024, 1, 1, 10, 0)
        assert ReadReceiptLedger(db).list_receipts_for([]) == {}

    def test_messages_without_receipts_are_absent(self, db, pair, post):
        alice, bob, chat = pair
        message = post(chat, bob, "nobody read this")
        assert ReadReceiptLedger(db).list_receipts_for([message.id]) == {}
