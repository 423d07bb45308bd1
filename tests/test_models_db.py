from datetime import datetime

import pytest
from sqlalchemy import DateTime

import db
from services.models_db import Bookmark, Chat, ChatParticipant, Message, PhotoLike, pair_key, utcnow


@pytest.mark.parametrize("column", [
    Chat.__table__.c.created_at,
    Chat.__table__.c.updated_at,
    ChatParticipant.__table__.c.last_read_at,
    Message.__table__.c.created_at,
    PhotoLike.__table__.c.created_at,
    Bookmark.__table__.c.created_at,
], ids=lambda c: f"{c.table.name}.{c.name}")
def test_timestamps_are_stored_without_timezone(column):
    assert isinstance(column.type, DateTime)
    assert not column.type.timezone


def test_naive_timestamp_round_trips():
    stamp = datetime(2026, 3, 1, 9, 0, 0, 123456)
    with db.get_session() as session:
        chat = Chat(pair_key=pair_key("alice", "bob"), created_at=stamp, updated_at=stamp)
        session.add(chat)
        session.commit()
        chat_id = chat.id

    with db.get_session() as session:
        stored = session.get(Chat, chat_id)
        assert stored.created_at == stamp
        assert stored.created_at.tzinfo is None


def test_utcnow_is_naive():
    assert utcnow().tzinfo is None


def test_pair_key_ignores_order():
    assert pair_key("bob", "alice") == pair_key("alice", "bob") == "alice:bob"
