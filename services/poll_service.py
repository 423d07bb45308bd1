# services/poll_service.py
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import col
from config import POLL_TIMEOUT_SECONDS, POLL_INTERVAL_SECONDS
from db import get_session
from services.chat_service import EPOCH, ensure_participant, messages_with_authors, serialize_message
from services.errors import StoreError, ValidationError
from services.models_db import Message

logger = logging.getLogger(__name__)


def parse_since(value: Optional[str]) -> datetime:
    """
    Parse the client's cursor into a naive-UTC datetime.
    Absent or empty means the epoch, i.e. every message is new.
    """
    if not value:
        return EPOCH
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError("Invalid timestamp", {"since": [f"Not an ISO-8601 timestamp: {value}"]}) from e
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts

def fetch_messages_since(chat_id: str, since: datetime) -> List[Dict]:
    """Messages of chat_id created strictly after `since`, oldest first."""
    try:
        with get_session() as session:
            rows = session.exec(
                messages_with_authors()
                .where(Message.chat_id == chat_id, Message.created_at > since)
                .order_by(col(Message.created_at).asc())
            ).all()
    except SQLAlchemyError as e:
        logger.error(f"Poll query failed for chat {chat_id}: {e}")
        raise StoreError("Failed to load messages") from e
    return [serialize_message(m, a) for m, a in rows]

async def poll_messages(
    chat_id: str,
    user_id: str,
    since: Optional[datetime] = None,
    timeout: Optional[float] = None,
    interval: Optional[float] = None,
) -> List[Dict]:
    """
    Long-poll chat_id for messages newer than `since`.

    Returns as soon as a check finds messages, or an empty list once the wait
    budget is spent. Store queries run in a worker thread so a waiting poll
    never blocks other requests. Authorization is checked before waiting.
    """
    timeout = POLL_TIMEOUT_SECONDS if timeout is None else timeout
    interval = POLL_INTERVAL_SECONDS if interval is None else interval
    cursor = since or EPOCH

    await asyncio.to_thread(ensure_participant, user_id, chat_id)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    checks = 0
    while True:
        messages = await asyncio.to_thread(fetch_messages_since, chat_id, cursor)
        checks += 1
        if messages:
            logger.debug(f"Poll on chat {chat_id} returned {len(messages)} message(s) after {checks} check(s)")
            return messages

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval, remaining))

    logger.debug(f"Poll on chat {chat_id} timed out after {checks} check(s)")
    return []
