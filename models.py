from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Dict, List, Optional
from config import MESSAGE_MAX_LENGTH

class Author(BaseModel):
    id: str
    name: Optional[str] = None
    image: Optional[str] = None

class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    content: str
    created_at: str = Field(alias="createdAt")
    author_id: Optional[str] = Field(None, alias="authorId")
    author: Optional[Author] = None  # None for system messages
    chat_id: str = Field(alias="chatId")
    is_system_message: bool = Field(False, alias="isSystemMessage")

class PollResponse(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list)

class MessageContent(BaseModel):
    content: str = Field(..., min_length=1, max_length=MESSAGE_MAX_LENGTH)

    @field_validator("content")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message must not be empty")
        return value

class StartChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    receiver_id: str = Field(..., alias="receiverId", min_length=1)

class SendMessageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str  # "success" or "error"
    message: Optional[str] = None
    errors: Optional[Dict[str, List[str]]] = None
    new_message: Optional[ChatMessage] = Field(None, alias="newMessage")

class OlderMessagesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(None, alias="nextCursor")
    has_more: bool = Field(False, alias="hasMore")

class ToggleLikeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    is_liked: Optional[bool] = Field(None, alias="isLiked")
    is_match: Optional[bool] = Field(None, alias="isMatch")
    chat_id: Optional[str] = Field(None, alias="chatId")
    error: Optional[str] = None
    message: Optional[str] = None

class ToggleBookmarkResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    is_bookmarked: Optional[bool] = Field(None, alias="isBookmarked")
    error: Optional[str] = None
    message: Optional[str] = None

class ActionResult(BaseModel):
    success: bool
    error: Optional[str] = None

class ChatListItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    updated_at: str = Field(alias="updatedAt")
    other_participant: Optional[Author] = Field(None, alias="otherParticipant")
    last_message: Optional[ChatMessage] = Field(None, alias="lastMessage")
    unread_count: int = Field(0, alias="unreadCount")

class ChatDetail(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    updated_at: str = Field(alias="updatedAt")
    participants: List[Author]
    other_participant: Optional[Author] = Field(None, alias="otherParticipant")
    messages: List[ChatMessage] = Field(default_factory=list)

class LikesOverview(BaseModel):
    given: List[Author] = Field(default_factory=list)
    received: List[Author] = Field(default_factory=list)
