# services/bookmark_service.py
import logging
from typing import Dict, List
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select, col
from db import get_session
from services.chat_service import require_user, user_summary
from services.errors import InvalidOperation, StoreError
from services.models_db import Bookmark, User

logger = logging.getLogger(__name__)

def toggle_bookmark(bookmarker_id: str, bookmarked_user_id: str) -> Dict:
    if bookmarker_id == bookmarked_user_id:
        raise InvalidOperation("You cannot bookmark yourself")

    with get_session() as session:
        try:
            require_user(session, bookmarked_user_id)
            existing = session.exec(
                select(Bookmark).where(
                    Bookmark.bookmarker_id == bookmarker_id,
                    Bookmark.bookmarked_user_id == bookmarked_user_id,
                )
            ).first()
            if existing:
                session.delete(existing)
                session.commit()
                return {"success": True, "isBookmarked": False, "message": "Bookmark removed."}

            session.add(Bookmark(bookmarker_id=bookmarker_id, bookmarked_user_id=bookmarked_user_id))
            session.commit()
            return {"success": True, "isBookmarked": True, "message": "Bookmark added."}
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error toggling bookmark {bookmarker_id} -> {bookmarked_user_id}: {e}")
            raise StoreError("Failed to toggle bookmark") from e

def is_bookmarked(bookmarker_id: str, bookmarked_user_id: str) -> bool:
    if bookmarker_id == bookmarked_user_id:
        return False
    try:
        with get_session() as session:
            return session.exec(
                select(Bookmark).where(
                    Bookmark.bookmarker_id == bookmarker_id,
                    Bookmark.bookmarked_user_id == bookmarked_user_id,
                )
            ).first() is not None
    except SQLAlchemyError as e:
        logger.error(f"Error checking bookmark {bookmarker_id} -> {bookmarked_user_id}: {e}")
        raise StoreError("Failed to load bookmark state") from e

def list_bookmarks(bookmarker_id: str) -> List[Dict]:
    try:
        with get_session() as session:
            users = session.exec(
                select(User)
                .join(Bookmark, Bookmark.bookmarked_user_id == User.id)
                .where(Bookmark.bookmarker_id == bookmarker_id)
                .order_by(col(Bookmark.created_at).desc())
            ).all()
            return [user_summary(u) for u in users]
    except SQLAlchemyError as e:
        logger.error(f"Error listing bookmarks for {bookmarker_id}: {e}")
        raise StoreError("Failed to load bookmarks") from e
