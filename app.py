import logging
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Body, Depends, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from config import CORS_ORIGINS, ENVIRONMENT, LOG_LEVEL
from models import (
    ActionResult, Author, ChatDetail, ChatListItem, LikesOverview, MessageContent, OlderMessagesResponse,
    PollResponse, SendMessageResponse, StartChatRequest, ToggleBookmarkResponse, ToggleLikeResponse,
)
from db import init_db, get_session
from services import chat_service as chats
from services import match_service as matches
from services import bookmark_service as bookmarks
from services.errors import (
    ChatServiceError, Forbidden, InvalidOperation, NotFound, StoreError, Unauthenticated, ValidationError,
)
from services.models_db import User
from services.poll_service import parse_since, poll_messages

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize database
try:
    init_db()
    logger.info("Database initialized successfully")
except Exception as e:
    logger.error(f"Failed to initialize database: {e}")
    raise

app = FastAPI(title="Match Chat Backend", version="0.1.0")

ALLOWED_ORIGINS = [origin.strip() for origin in CORS_ORIGINS.split(",") if origin.strip()]

if ENVIRONMENT == "development":
    ALLOWED_ORIGINS.extend([
        "http://localhost:*",
        "http://127.0.0.1:*",
    ])
    logger.warning("CORS is configured for development. Set ENVIRONMENT=production and CORS_ORIGINS for production.")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

ERROR_STATUS = [
    (Unauthenticated, status.HTTP_401_UNAUTHORIZED),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidOperation, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StoreError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]

def status_for(error: ChatServiceError) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(error, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR

def http_error(error: ChatServiceError) -> HTTPException:
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status_for(error), detail={"message": str(error), "errors": error.errors})
    return HTTPException(status_code=status_for(error), detail=str(error))

@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    """Malformed request bodies get the same shape as a rejected message."""
    errors = {}
    for err in exc.errors():
        field = str(err["loc"][-1]) if err["loc"] else "body"
        errors.setdefault(field, []).append(err["msg"])
    logger.warning(f"Rejected request to {request.url.path}: {errors}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"status": "error", "message": "Validation error", "errors": errors},
    )

def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Request-scoped session accessor: the caller's id, or 401."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        with get_session() as session:
            user = session.get(User, x_user_id)
    except Exception as e:
        logger.error(f"Session lookup failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to load session")
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user.id

# Health and readiness endpoints
@app.get("/health")
def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}

@app.get("/ready")
def readiness_check():
    """Readiness check - verifies database connectivity."""
    try:
        from sqlmodel import text
        with get_session() as session:
            session.exec(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not ready: database unavailable"
        )

# ============================================================================
# Chats
# ============================================================================

@app.get("/chats", response_model=List[ChatListItem])
def chats_list(user_id: str = Depends(current_user_id)):
    try:
        return chats.list_chats(user_id)
    except ChatServiceError as e:
        logger.error(f"Error listing chats for {user_id}: {e}")
        raise http_error(e)

@app.post("/chats/start")
def start_chat(req: StartChatRequest = Body(...), user_id: str = Depends(current_user_id)):
    """
    Find or create the two-party chat with `receiverId` and redirect to it.
    """
    receiver_id = req.receiver_id
    try:
        chat_id = chats.start_chat(user_id, receiver_id)
    except ChatServiceError as e:
        logger.error(f"Could not start chat {user_id} -> {receiver_id}: {e}")
        raise http_error(e)
    return RedirectResponse(url=f"/chats/{chat_id}", status_code=status.HTTP_303_SEE_OTHER)

@app.get("/chats/{chat_id}", response_model=ChatDetail)
def chat_detail(chat_id: str, user_id: str = Depends(current_user_id)):
    try:
        return chats.get_chat(user_id, chat_id)
    except ChatServiceError as e:
        logger.warning(f"Chat {chat_id} not available for {user_id}: {e}")
        raise http_error(e)

@app.get("/chats/{chat_id}/messages", response_model=OlderMessagesResponse)
def older_messages(chat_id: str, cursor: Optional[str] = None, user_id: str = Depends(current_user_id)):
    """Page backwards through a chat's history."""
    try:
        return chats.get_older_messages(user_id, chat_id, cursor)
    except ChatServiceError as e:
        logger.warning(f"Older messages for chat {chat_id} failed: {e}")
        raise http_error(e)

@app.get("/chats/{chat_id}/messages/poll", response_model=PollResponse)
async def poll_chat_messages(
    chat_id: str,
    since: Optional[str] = None,
    lastMessageTimestamp: Optional[str] = None,
    user_id: str = Depends(current_user_id),
):
    """
    Long poll: answers as soon as there are messages newer than `since`,
    or with an empty list once the wait budget is spent.
    """
    try:
        cursor = parse_since(since or lastMessageTimestamp)
        messages = await poll_messages(chat_id, user_id, cursor)
    except ChatServiceError as e:
        if isinstance(e, StoreError):
            logger.error(f"Poll failed for chat {chat_id}: {e}")
        raise http_error(e)
    return {"messages": messages}

@app.post("/chats/{chat_id}/messages", response_model=SendMessageResponse)
def send_chat_message(chat_id: str, req: MessageContent = Body(...), user_id: str = Depends(current_user_id)):
    try:
        new_message = chats.send_message(user_id, chat_id, req.content)
    except ValidationError as e:
        return JSONResponse(
            status_code=status_for(e),
            content={"status": "error", "message": "Validation error", "errors": e.errors},
        )
    except ChatServiceError as e:
        logger.error(f"Error sending message to chat {chat_id}: {e}")
        return JSONResponse(status_code=status_for(e), content={"status": "error", "message": str(e)})
    return {"status": "success", "message": "Message sent!", "newMessage": new_message}

@app.post("/chats/{chat_id}/read", response_model=ActionResult)
def mark_chat_read(chat_id: str, user_id: str = Depends(current_user_id)):
    try:
        chats.mark_read(user_id, chat_id)
    except ChatServiceError as e:
        logger.error(f"Error marking chat {chat_id} as read: {e}")
        return JSONResponse(status_code=status_for(e), content={"success": False, "error": str(e)})
    return {"success": True}

@app.get("/unread/count")
def get_unread_count(user_id: str = Depends(current_user_id)):
    """Get the total count of unread messages."""
    try:
        return {"count": chats.unread_count(user_id)}
    except ChatServiceError as e:
        logger.error(f"Error getting unread count: {e}")
        raise http_error(e)

# ============================================================================
# Likes & bookmarks
# ============================================================================

@app.post("/likes/{liked_user_id}/toggle", response_model=ToggleLikeResponse)
def toggle_like(liked_user_id: str, user_id: str = Depends(current_user_id)):
    try:
        return matches.toggle_like(user_id, liked_user_id)
    except ChatServiceError as e:
        logger.error(f"Error toggling like {user_id} -> {liked_user_id}: {e}")
        return JSONResponse(status_code=status_for(e), content={"success": False, "error": str(e)})

@app.get("/likes", response_model=LikesOverview)
def likes_overview(user_id: str = Depends(current_user_id)):
    try:
        return matches.list_likes(user_id)
    except ChatServiceError as e:
        raise http_error(e)

@app.get("/likes/{liked_user_id}")
def like_state(liked_user_id: str, user_id: str = Depends(current_user_id)):
    try:
        return {"isLiked": matches.has_liked(user_id, liked_user_id)}
    except ChatServiceError as e:
        raise http_error(e)

@app.post("/bookmarks/{bookmarked_user_id}/toggle", response_model=ToggleBookmarkResponse)
def toggle_bookmark(bookmarked_user_id: str, user_id: str = Depends(current_user_id)):
    try:
        return bookmarks.toggle_bookmark(user_id, bookmarked_user_id)
    except ChatServiceError as e:
        logger.error(f"Error toggling bookmark {user_id} -> {bookmarked_user_id}: {e}")
        return JSONResponse(status_code=status_for(e), content={"success": False, "error": str(e)})

@app.get("/bookmarks", response_model=List[Author])
def bookmarks_list(user_id: str = Depends(current_user_id)):
    try:
        return bookmarks.list_bookmarks(user_id)
    except ChatServiceError as e:
        raise http_error(e)

@app.get("/bookmarks/{bookmarked_user_id}")
def bookmark_state(bookmarked_user_id: str, user_id: str = Depends(current_user_id)):
    try:
        return {"isBookmarked": bookmarks.is_bookmarked(user_id, bookmarked_user_id)}
    except ChatServiceError as e:
        raise http_error(e)
