# services/match_service.py
import logging
from typing import Dict, List
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select, col
from config import MATCH_TX_RETRIES
from db import get_session
from services.chat_service import add_message, find_or_create_chat, user_summary
from services.errors import InvalidOperation, NotFound, StoreError
from services.models_db import PhotoLike, User

logger = logging.getLogger(__name__)

MATCH_MESSAGE = "🎉 You and {name} liked each other! Start a conversation."


def _find_like(session: Session, liker_id: str, liked_user_id: str):
    return session.exec(
        select(PhotoLike).where(
            PhotoLike.liker_id == liker_id,
            PhotoLike.liked_user_id == liked_user_id,
        )
    ).first()

def lock_pair_statement(user_a: str, user_b: str):
    """Both users' rows, locked FOR UPDATE in id order."""
    return (
        select(User)
        .where(col(User.id).in_(sorted((user_a, user_b))))
        .order_by(col(User.id))
        .with_for_update()
    )

def _lock_pair(session: Session, user_a: str, user_b: str) -> Dict[str, User]:
    """
    Lock both users so like transactions on the same pair run one at a time:
    the reverse-edge check always sees an opposite like committed before it.
    SQLite ignores FOR UPDATE and relies on its single writer instead.
    """
    users = {u.id: u for u in session.exec(lock_pair_statement(user_a, user_b)).all()}
    for user_id in (user_a, user_b):
        if user_id not in users:
            raise NotFound(f"User {user_id} not found")
    return users

def _toggle_like_tx(session: Session, liker_id: str, liked_user_id: str) -> Dict:
    """
    The whole like/match workflow inside one transaction. Nothing is committed here.
    """
    liker = _lock_pair(session, liker_id, liked_user_id)[liker_id]

    existing = _find_like(session, liker_id, liked_user_id)
    if existing is not None:
        # Unliking never produces a match
        session.delete(existing)
        session.flush()
        return {"isLiked": False, "isMatch": False, "chatId": None}

    session.add(PhotoLike(liker_id=liker_id, liked_user_id=liked_user_id))
    session.flush()

    if _find_like(session, liked_user_id, liker_id) is None:
        return {"isLiked": True, "isMatch": False, "chatId": None}

    chat = find_or_create_chat(session, liker_id, liked_user_id)
    add_message(
        session,
        chat.id,
        MATCH_MESSAGE.format(name=liker.name or "someone"),
        author_id=None,
        is_system_message=True,
    )
    return {"isLiked": True, "isMatch": True, "chatId": chat.id}

def toggle_like(liker_id: str, liked_user_id: str) -> Dict:
    """
    Flip the like liker_id -> liked_user_id.

    When the new like makes the pair mutual, the two-party chat is found or
    created and a system message announces the match, all in the same
    transaction as the like itself. A uniqueness conflict with a concurrent
    transaction (same like, or the same pair's chat) retries from scratch.
    """
    if liker_id == liked_user_id:
        raise InvalidOperation("You cannot like yourself")

    for attempt in range(1, MATCH_TX_RETRIES + 1):
        with get_session() as session:
            try:
                result = _toggle_like_tx(session, liker_id, liked_user_id)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                logger.warning(f"Like conflict {liker_id} -> {liked_user_id} (attempt {attempt}): {e}")
                continue
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Error toggling like {liker_id} -> {liked_user_id}: {e}")
                raise StoreError("Failed to toggle like") from e

        if result["isMatch"]:
            logger.info(f"Match between {liker_id} and {liked_user_id} in chat {result['chatId']}")
            message = "It's a match! Chat created."
        elif result["isLiked"]:
            message = "Liked!"
        else:
            message = "Like removed."
        return {"success": True, "message": message, **result}

    raise StoreError("Failed to toggle like")

def has_liked(liker_id: str, liked_user_id: str) -> bool:
    if liker_id == liked_user_id:
        return False
    try:
        with get_session() as session:
            return _find_like(session, liker_id, liked_user_id) is not None
    except SQLAlchemyError as e:
        logger.error(f"Error checking like {liker_id} -> {liked_user_id}: {e}")
        raise StoreError("Failed to load like state") from e

def list_likes(user_id: str) -> Dict[str, List[Dict]]:
    """Users liked by user_id and users who liked user_id, newest first."""
    try:
        with get_session() as session:
            given = session.exec(
                select(User)
                .join(PhotoLike, PhotoLike.liked_user_id == User.id)
                .where(PhotoLike.liker_id == user_id)
                .order_by(col(PhotoLike.created_at).desc())
            ).all()
            received = session.exec(
                select(User)
                .join(PhotoLike, PhotoLike.liker_id == User.id)
                .where(PhotoLike.liked_user_id == user_id)
                .order_by(col(PhotoLike.created_at).desc())
            ).all()
            return {
                "given": [user_summary(u) for u in given],
                "received": [user_summary(u) for u in received],
            }
    except SQLAlchemyError as e:
        logger.error(f"Error listing likes for {user_id}: {e}")
        raise StoreError("Failed to load likes") from e
