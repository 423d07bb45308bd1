# db.py
import os
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy.pool import StaticPool
from config import DATABASE_URL


def _make_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True)

    # Poll queries run in worker threads, so SQLite connections must be shareable
    kwargs = {"connect_args": {"check_same_thread": False}}
    path = url.split("///", 1)[1] if "///" in url else ""
    if not path or path == ":memory:":
        kwargs["poolclass"] = StaticPool
    else:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    return create_engine(url, echo=False, **kwargs)


engine = _make_engine(DATABASE_URL)

def init_db():
    from services import models_db  # noqa: F401  (registers the tables)
    SQLModel.metadata.create_all(engine)

def get_session():
    return Session(engine)
