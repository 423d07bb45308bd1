import os
import tempfile

# A file database: poll queries run in worker threads with their own connections
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.mkdtemp(), "test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime  # noqa: E402
from typing import Optional  # noqa: E402
import pytest  # noqa: E402
from sqlmodel import SQLModel, select  # noqa: E402

import db  # noqa: E402
from services.models_db import Message, User  # noqa: E402

USERS = [
    User(id="alice", name="Alice", image="https://example.com/alice.png"),
    User(id="bob", name="Bob", image="https://example.com/bob.png"),
    User(id="carol", name="Carol", image=None),
]


@pytest.fixture(autouse=True)
def database():
    db.init_db()
    SQLModel.metadata.drop_all(db.engine)
    SQLModel.metadata.create_all(db.engine)
    with db.get_session() as session:
        session.add_all([User(id=u.id, name=u.name, image=u.image) for u in USERS])
        session.commit()
    yield db.engine


@pytest.fixture
def client(database):
    from fastapi.testclient import TestClient
    from app import app
    with TestClient(app) as c:
        yield c


@pytest.fixture
def insert_message():
    """Insert a message with an explicit timestamp, bypassing the service layer."""
    def _insert(chat_id: str, content: str, created_at: datetime,
                author_id: Optional[str] = None, is_system_message: bool = False) -> str:
        with db.get_session() as session:
            message = Message(chat_id=chat_id, content=content, created_at=created_at,
                              author_id=author_id, is_system_message=is_system_message)
            session.add(message)
            session.commit()
            return message.id
    return _insert


@pytest.fixture
def fetch_all():
    def _fetch(model):
        with db.get_session() as session:
            return session.exec(select(model)).all()
    return _fetch
