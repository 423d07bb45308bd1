# services/chat_service.py
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import pydantic
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select, col
from config import MESSAGES_PER_PAGE, MATCH_TX_RETRIES
from db import get_session
from models import MessageContent
from services.errors import Forbidden, InvalidOperation, NotFound, StoreError, ValidationError
from services.models_db import Chat, ChatParticipant, Message, User, pair_key, utcnow

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)


def isoformat(ts: datetime) -> str:
    """Serialize a naive-UTC store timestamp as ISO-8601 with a Z suffix."""
    return ts.isoformat(timespec="microseconds") + "Z"

def user_summary(user: Optional[User]) -> Optional[Dict]:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "image": user.image}

def serialize_message(message: Message, author: Optional[User]) -> Dict:
    return {
        "id": message.id,
        "content": message.content,
        "createdAt": isoformat(message.created_at),
        "authorId": message.author_id,
        "author": user_summary(author),
        "chatId": message.chat_id,
        "isSystemMessage": bool(message.is_system_message),
    }

def messages_with_authors():
    """Base query yielding (Message, author-or-None) rows."""
    return select(Message, User).join(User, Message.author_id == User.id, isouter=True)

def get_participation(session: Session, user_id: str, chat_id: str) -> Optional[ChatParticipant]:
    return session.exec(
        select(ChatParticipant).where(
            ChatParticipant.user_id == user_id,
            ChatParticipant.chat_id == chat_id,
        )
    ).first()

def ensure_participant(user_id: str, chat_id: str) -> None:
    """Raise Forbidden unless user_id takes part in chat_id."""
    try:
        with get_session() as session:
            participation = get_participation(session, user_id, chat_id)
    except SQLAlchemyError as e:
        logger.error(f"Participant lookup failed for chat {chat_id}: {e}")
        raise StoreError("Failed to load chat") from e
    if participation is None:
        raise Forbidden("You are not a participant of this chat")

def require_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user

# ============================================================================
# Find-or-create
# ============================================================================

def find_chat_between(session: Session, user_a: str, user_b: str) -> Optional[Chat]:
    """
    Find the chat whose participant set is exactly {user_a, user_b}:
    some participant is A, some participant is B and every participant is in {A, B}.
    """
    with_a = select(ChatParticipant.chat_id).where(ChatParticipant.user_id == user_a)
    with_b = select(ChatParticipant.chat_id).where(ChatParticipant.user_id == user_b)
    with_others = select(ChatParticipant.chat_id).where(
        col(ChatParticipant.user_id).not_in([user_a, user_b])
    )
    return session.exec(
        select(Chat).where(
            col(Chat.id).in_(with_a),
            col(Chat.id).in_(with_b),
            col(Chat.id).not_in(with_others),
        )
    ).first()

def find_or_create_chat(session: Session, user_a: str, user_b: str) -> Chat:
    """
    Return the two-party chat between user_a and user_b, creating it inside the
    caller's transaction when there is none. The caller commits.

    A concurrent creator of the same pair makes the flush fail with
    IntegrityError on Chat.pair_key; callers retry their whole transaction.
    """
    chat = find_chat_between(session, user_a, user_b)
    if chat is not None:
        return chat

    chat = Chat(pair_key=pair_key(user_a, user_b))
    session.add(chat)
    session.add(ChatParticipant(user_id=user_a, chat_id=chat.id))
    session.add(ChatParticipant(user_id=user_b, chat_id=chat.id))
    session.flush()
    logger.info(f"Created chat {chat.id} between {user_a} and {user_b}")
    return chat

def start_chat(user_id: str, receiver_id: str) -> str:
    """Find or create the chat with receiver_id and return its id."""
    if user_id == receiver_id:
        raise InvalidOperation("You cannot start a chat with yourself")

    for attempt in range(1, MATCH_TX_RETRIES + 1):
        with get_session() as session:
            try:
                require_user(session, receiver_id)
                chat = find_or_create_chat(session, user_id, receiver_id)
                chat_id = chat.id
                session.commit()
                return chat_id
            except IntegrityError as e:
                session.rollback()
                logger.warning(f"Chat creation conflict for {user_id}/{receiver_id} (attempt {attempt}): {e}")
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error finding or creating chat for {user_id}/{receiver_id}: {e}")
                raise StoreError("Failed to start chat") from e

    raise StoreError("Failed to start chat")

# ============================================================================
# Messages
# ============================================================================

def next_message_timestamp(session: Session, chat_id: str) -> datetime:
    """'now', nudged forward so created_at strictly increases within a chat."""
    now = utcnow()
    latest = session.exec(
        select(func.max(Message.created_at)).where(Message.chat_id == chat_id)
    ).one()
    if latest is not None and latest >= now:
        return latest + timedelta(microseconds=1)
    return now

def add_message(
    session: Session,
    chat_id: str,
    content: str,
    author_id: Optional[str] = None,
    is_system_message: bool = False,
) -> Message:
    """Insert a message and bump the chat's updated_at, inside the caller's transaction."""
    chat = session.get(Chat, chat_id)
    if chat is None:
        raise NotFound(f"Chat {chat_id} not found")

    message = Message(
        chat_id=chat_id,
        author_id=author_id,
        content=content,
        is_system_message=is_system_message,
        created_at=next_message_timestamp(session, chat_id),
    )
    session.add(message)
    chat.updated_at = message.created_at
    session.add(chat)
    session.flush()
    return message

def validate_content(content) -> str:
    try:
        return MessageContent(content=content).content
    except pydantic.ValidationError as e:
        errors: Dict[str, List[str]] = {}
        for err in e.errors():
            field = str(err["loc"][0]) if err["loc"] else "content"
            errors.setdefault(field, []).append(err["msg"])
        raise ValidationError("Validation error", errors) from e

def send_message(user_id: str, chat_id: str, content) -> Dict:
    """
    Post a message authored by user_id into chat_id.

    The insert and the chat's updated_at bump commit together.
    Returns the created message with author details attached.
    """
    content = validate_content(content)

    with get_session() as session:
        try:
            if get_participation(session, user_id, chat_id) is None:
                raise Forbidden("You are not a participant of this chat")
            message = add_message(session, chat_id, content, author_id=user_id)
            session.commit()
            session.refresh(message)
            author = session.get(User, user_id)
            return serialize_message(message, author)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error sending message to chat {chat_id}: {e}")
            raise StoreError("Failed to send message") from e

def get_older_messages(user_id: str, chat_id: str, cursor: Optional[str] = None) -> Dict:
    """
    One page of history older than the message `cursor` (newest page when absent).
    Messages come back ascending; nextCursor is the oldest id of the page.
    """
    ensure_participant(user_id, chat_id)

    try:
        with get_session() as session:
            stmt = messages_with_authors().where(Message.chat_id == chat_id)
            if cursor:
                anchor = session.get(Message, cursor)
                if anchor is None or anchor.chat_id != chat_id:
                    raise ValidationError("Invalid cursor", {"cursor": ["Unknown message id"]})
                stmt = stmt.where(Message.created_at < anchor.created_at)
            rows = session.exec(
                stmt.order_by(col(Message.created_at).desc()).limit(MESSAGES_PER_PAGE + 1)
            ).all()
    except SQLAlchemyError as e:
        logger.error(f"Error loading older messages for chat {chat_id}: {e}")
        raise StoreError("Failed to load messages") from e

    has_more = len(rows) > MESSAGES_PER_PAGE
    page = rows[:MESSAGES_PER_PAGE]
    next_cursor = page[-1][0].id if page else None
    return {
        "messages": [serialize_message(m, a) for m, a in reversed(page)],
        "nextCursor": next_cursor,
        "hasMore": has_more,
    }

# ============================================================================
# Read state
# ============================================================================

def _count_unread(session: Session, participation: ChatParticipant) -> int:
    watermark = participation.last_read_at or EPOCH
    return session.exec(
        select(func.count()).select_from(Message).where(
            Message.chat_id == participation.chat_id,
            # SQL `<>` leaves out system messages, which have no author
            Message.author_id != participation.user_id,
            Message.created_at > watermark,
        )
    ).one()

def unread_count(user_id: str) -> int:
    """Messages from others newer than the user's watermark, summed over all chats."""
    try:
        with get_session() as session:
            participations = session.exec(
                select(ChatParticipant).where(ChatParticipant.user_id == user_id)
            ).all()
            return sum(_count_unread(session, p) for p in participations)
    except SQLAlchemyError as e:
        logger.error(f"Error counting unread messages for {user_id}: {e}")
        raise StoreError("Failed to count unread messages") from e

def mark_read(user_id: str, chat_id: str) -> None:
    """Move the caller's watermark in chat_id to now. Other participants are untouched."""
    with get_session() as session:
        try:
            participation = get_participation(session, user_id, chat_id)
            if participation is None:
                raise Forbidden("You are not a participant of this chat")
            participation.last_read_at = utcnow()
            session.add(participation)
            session.commit()
            logger.debug(f"Marked chat {chat_id} as read for {user_id}")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error marking chat {chat_id} as read: {e}")
            raise StoreError("Failed to update read state") from e

# ============================================================================
# Chat list / chat view
# ============================================================================

def _other_participant(session: Session, chat_id: str, user_id: str) -> Optional[User]:
    return session.exec(
        select(User)
        .join(ChatParticipant, ChatParticipant.user_id == User.id)
        .where(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id != user_id)
    ).first()

def list_chats(user_id: str) -> List[Dict]:
    """Chats of user_id, most recently active first."""
    try:
        with get_session() as session:
            rows = session.exec(
                select(Chat, ChatParticipant)
                .join(ChatParticipant, ChatParticipant.chat_id == Chat.id)
                .where(ChatParticipant.user_id == user_id)
                .order_by(col(Chat.updated_at).desc())
            ).all()

            results = []
            for chat, participation in rows:
                last = session.exec(
                    messages_with_authors()
                    .where(Message.chat_id == chat.id)
                    .order_by(col(Message.created_at).desc())
                    .limit(1)
                ).first()
                results.append({
                    "id": chat.id,
                    "updatedAt": isoformat(chat.updated_at),
                    "otherParticipant": user_summary(_other_participant(session, chat.id, user_id)),
                    "lastMessage": serialize_message(*last) if last else None,
                    "unreadCount": _count_unread(session, participation),
                })
            return results
    except SQLAlchemyError as e:
        logger.error(f"Error listing chats for {user_id}: {e}")
        raise StoreError("Failed to load chats") from e

def get_chat(user_id: str, chat_id: str) -> Dict:
    """Participants and the full ascending history of one chat."""
    try:
        with get_session() as session:
            chat = session.get(Chat, chat_id)
            if chat is None:
                raise NotFound(f"Chat {chat_id} not found")
            if get_participation(session, user_id, chat_id) is None:
                raise Forbidden("You are not a participant of this chat")

            participants = [session.get(User, p.user_id) for p in chat.participants]
            rows = session.exec(
                messages_with_authors()
                .where(Message.chat_id == chat_id)
                .order_by(col(Message.created_at).asc())
            ).all()
            return {
                "id": chat.id,
                "updatedAt": isoformat(chat.updated_at),
                "participants": [user_summary(u) for u in participants],
                "otherParticipant": user_summary(_other_participant(session, chat_id, user_id)),
                "messages": [serialize_message(m, a) for m, a in rows],
            }
    except SQLAlchemyError as e:
        logger.error(f"Error loading chat {chat_id}: {e}")
        raise StoreError("Failed to load chat") from e
