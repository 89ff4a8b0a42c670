"""
Pydantic schemas for request/response validation.

This module contains:
- Enumerations shared by services and the API (presence, message type)
- Record models returned by services and API routes
- Request models for incoming data validation
"""

import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


# Reserved "unnamed" tab names eligible for auto-rename, e.g. "Topic 3", "tab 12"
DEFAULT_TAB_NAME_PATTERN = re.compile(r"^(topic|tab)\s*\d+$", re.IGNORECASE)


def is_default_tab_name(name: str) -> bool:
    """Check if a tab name is a default-pattern name (like "Topic 1", "Tab 2")."""
    return bool(DEFAULT_TAB_NAME_PATTERN.match(name.strip()))


class Presence(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"


# =============================================================================
# Record Models
# =============================================================================

class UserResponse(BaseModel):
    """A participant profile."""
    id: str
    phone_number: str
    display_name: Optional[str] = None
    about: Optional[str] = None
    presence: Presence = Presence.OFFLINE
    last_seen: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ConversationResponse(BaseModel):
    """
    A 1:1 conversation.

    participants is the canonically sorted pair; unread_slots[i] belongs to
    participants[i].
    """
    id: str
    participants: list[str] = Field(..., min_length=2, max_length=2)
    created_by: str
    last_message_id: Optional[str] = None
    last_activity: Optional[datetime] = None
    unread_slot_0: int = Field(0, ge=0)
    unread_slot_1: int = Field(0, ge=0)
    created_at: datetime
    updated_at: datetime

    def slot_of(self, user_id: str) -> Optional[int]:
        """Position of user_id in the sorted participant pair, or None."""
        try:
            return self.participants.index(user_id)
        except ValueError:
            return None

    def other_participant(self, user_id: str) -> str:
        return self.participants[1] if self.participants[0] == user_id else self.participants[0]

    def unread_count_for(self, user_id: str) -> int:
        slot = self.slot_of(user_id)
        if slot is None:
            return 0
        return self.unread_slot_0 if slot == 0 else self.unread_slot_1


class ConversationSummary(BaseModel):
    """Conversation as seen by one participant."""
    conversation: ConversationResponse
    other_user: Optional[UserResponse] = None
    unread_count: int = Field(0, ge=0)


class ChatTabResponse(BaseModel):
    """A topic tab inside a conversation."""
    id: str
    conversation_id: str
    name: str
    tab_order: int = Field(..., ge=0)
    is_default: bool = False
    created_by: str
    message_counter: int = Field(0, ge=0)
    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def has_default_name(self) -> bool:
        return is_default_tab_name(self.name)


class MessageResponse(BaseModel):
    """A message inside a tab."""
    id: str
    tab_id: str
    sender_id: str
    message_type: MessageType
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    reply_to_message_id: Optional[str] = None
    sent_at: datetime
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    is_deleted: bool = False
    message_order: int = Field(..., ge=1)

    @computed_field
    @property
    def status(self) -> str:
        """Sent -> Delivered -> Read; read implies delivered."""
        if self.read_at is not None:
            return "read"
        if self.delivered_at is not None:
            return "delivered"
        return "sent"


class ConversationSearchResult(BaseModel):
    """
    One conversation matched by a search.

    match_types holds "participant" and/or "message"; matching_messages
    is newest first and empty for participant-only matches.
    """
    conversation: ConversationResponse
    other_user: Optional[UserResponse] = None
    match_types: list[str] = Field(default_factory=list)
    matching_messages: list[MessageResponse] = Field(default_factory=list)


class TopicDetectionResponse(BaseModel):
    """Result of a manual topic detection run."""
    tab_id: str
    renamed: bool
    name: str
    state: str


class MarkReadResponse(BaseModel):
    """Number of messages a read receipt touched."""
    marked: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    reason: Optional[str] = Field(None, description="Machine-readable failure reason")


# =============================================================================
# Request Models
# =============================================================================

class RegisterUserRequest(BaseModel):
    """
    First sign-in of the acting user.

    phone_number: E.164-like (starts with +, then digits only)
    """
    phone_number: str = Field(..., description="Phone number in E.164 format")
    display_name: Optional[str] = Field(None, max_length=80)

    @field_validator("phone_number")
    @classmethod
    def validate_e164_format(cls, v: str) -> str:
        if not v.startswith("+"):
            raise ValueError("phone_number must start with '+'")
        if not v[1:].isdigit():
            raise ValueError("phone_number must contain only digits after '+'")
        return v


class UpdateProfileRequest(BaseModel):
    display_name: Optional[str] = Field(None, max_length=80)
    about: Optional[str] = Field(None, max_length=500)


class PresenceRequest(BaseModel):
    status: Presence


class CreateConversationRequest(BaseModel):
    other_user_id: str = Field(..., min_length=1)


class CreateTabRequest(BaseModel):
    """name is optional: unnamed tabs get "Topic <n>" and are auto-renamed later."""
    name: Optional[str] = Field(None, max_length=60)


class RenameTabRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class ReorderTabsRequest(BaseModel):
    tab_ids: list[str] = Field(..., min_length=1)

    @field_validator("tab_ids")
    @classmethod
    def no_duplicates(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("tab_ids must not contain duplicates")
        return v


class SendMessageRequest(BaseModel):
    """
    Validates an outgoing message.

    - text: content required
    - image/file: media_url required, content is an optional caption
    """
    message_type: MessageType = MessageType.TEXT
    content: Optional[str] = Field(None, max_length=4096)
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    reply_to_message_id: Optional[str] = None

    @model_validator(mode="after")
    def check_payload(self) -> "SendMessageRequest":
        if self.message_type == MessageType.TEXT:
            if not self.content or not self.content.strip():
                raise ValueError("text messages require content")
        elif not self.media_url:
            raise ValueError(f"{self.message_type.value} messages require media_url")
        return self
