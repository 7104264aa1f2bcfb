"""
Tests for the conversation store.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from Rapport.crud.chat import (
    create_chat_message,
    create_conversation,
    get_chat_history,
    get_conversation,
    get_next_sequence,
    list_conversations,
    touch_conversation,
)


class TestConversations:
    def test_defaults(self, db_session: Session):
        conv = create_conversation(db_session, "user-a")
        db_session.commit()

        stored = get_conversation(db_session, conv.id)
        assert stored.user_id == "user-a"
        assert stored.title == "New conversation"
        assert stored.mode == "relationship_coach"
        assert stored.created_at is not None

    def test_list_only_returns_own_newest_first(self, db_session: Session):
        older = create_conversation(db_session, "user-a", title="older")
        newer = create_conversation(db_session, "user-a", title="newer")
        create_conversation(db_session, "user-b", title="someone else")
        older.updated_at = datetime.now(timezone.utc) - timedelta(days=1)
        db_session.commit()

        titles = [c.title for c in list_conversations(db_session, "user-a")]
        assert titles == ["newer", "older"]

        touch_conversation(db_session, older.id)
        db_session.commit()
        titles = [c.title for c in list_conversations(db_session, "user-a")]
        assert titles == ["older", "newer"]
        assert newer.id in {c.id for c in list_conversations(db_session, "user-a")}


class TestMessages:
    def test_sequence_round_trip(self, db_session: Session):
        conv = create_conversation(db_session, "user-a")
        assert get_next_sequence(db_session, conv.id) == 0

        user = create_chat_message(db_session, conv.id, "user", "Any gift ideas?", get_next_sequence(db_session, conv.id))
        assistant = create_chat_message(
            db_session, conv.id, "assistant", "A handwritten card.", get_next_sequence(db_session, conv.id)
        )
        db_session.commit()

        assert (user.sequence, assistant.sequence) == (0, 1)
        assert get_next_sequence(db_session, conv.id) == 2

        history = get_chat_history(db_session, conv.id)
        assert [(m.role, m.content) for m in history] == [
            ("user", "Any gift ideas?"),
            ("assistant", "A handwritten card."),
        ]

    def test_history_replays_by_sequence(self, db_session: Session):
        conv = create_conversation(db_session, "user-a")
        for seq in (2, 0, 1):
            create_chat_message(db_session, conv.id, "user", f"turn {seq}", seq)
        db_session.commit()

        assert [m.sequence for m in get_chat_history(db_session, conv.id)] == [0, 1, 2]

    def test_block_content_is_stored_as_json(self, db_session: Session):
        conv = create_conversation(db_session, "user-a")
        blocks = [{"type": "text", "text": "look at this"}]
        create_chat_message(db_session, conv.id, "user", blocks, 0)
        db_session.commit()
        db_session.expire_all()

        assert get_chat_history(db_session, conv.id)[0].content == blocks

    def test_duplicate_sequence_rejected(self, db_session: Session):
        conv = create_conversation(db_session, "user-a")
        create_chat_message(db_session, conv.id, "user", "first", 0)
        with pytest.raises(IntegrityError):
            create_chat_message(db_session, conv.id, "assistant", "second", 0)
        db_session.rollback()
