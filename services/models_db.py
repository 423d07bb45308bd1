# services/models_db.py
import uuid
from datetime import datetime, timezone
from typing import Optional, List
from pydantic import NaiveDatetime
from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship


def utcnow() -> datetime:
    """Naive UTC 'now'; every timestamp in the store is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key of a two-party chat."""
    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"


class User(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: Optional[str] = None
    image: Optional[str] = None


class Chat(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    # Unique per unordered pair of participants, see pair_key()
    pair_key: str = Field(unique=True, index=True)
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: NaiveDatetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    participants: List["ChatParticipant"] = Relationship(back_populates="chat")


class ChatParticipant(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "chat_id"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    chat_id: str = Field(foreign_key="chat.id", index=True)
    last_read_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    chat: Optional["Chat"] = Relationship(back_populates="participants")


class Message(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    chat_id: str = Field(foreign_key="chat.id", index=True)
    # None for system messages
    author_id: Optional[str] = Field(default=None, foreign_key="user.id")
    content: str
    created_at: NaiveDatetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    is_system_message: bool = False


class PhotoLike(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("liker_id", "liked_user_id"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    liker_id: str = Field(foreign_key="user.id", index=True)
    liked_user_id: str = Field(foreign_key="user.id", index=True)
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)


class Bookmark(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("bookmarker_id", "bookmarked_user_id"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    bookmarker_id: str = Field(foreign_key="user.id", index=True)
    bookmarked_user_id: str = Field(foreign_key="user.id", index=True)
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
