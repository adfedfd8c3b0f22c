"""
Pydantic schemas.

This module contains:
- Normalized message/media models produced by the ingestion pipeline
- Response models for API responses
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pipeline Models
# =============================================================================

class StoredMedia(BaseModel):
    """Metadata of a decrypted media file written to the media root."""
    path: str = Field(..., description="Path relative to the media storage root")
    mime_type: str = Field(..., description="MIME type reported by the provider")
    size: int = Field(..., ge=0, description="Size on disk in bytes")
    duration: Optional[int] = Field(None, description="Duration in seconds (audio)")
    caption: Optional[str] = Field(None, description="Caption or title")
    filename: Optional[str] = Field(None, description="Original filename (documents)")


class NormalizedMessage(BaseModel):
    """
    Canonical shape of one inbound or outbound message.

    message_body is never empty: a synthetic label replaces missing text.
    """
    wa_message_id: Optional[str] = None
    sender_name: str
    sender_phone: Optional[str] = None
    message_type: str = "text"
    message_body: str
    is_from_me: bool = False
    sent_at: str
    media: Optional[StoredMedia] = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ConversationResponse(BaseModel):
    """A conversation with a summary of its latest activity."""
    id: int
    wa_id: str
    name: str = Field(..., description="Display name, falls back to wa_id")
    channel: Optional[str] = None
    avatar_url: Optional[str] = None
    last_message_at: Optional[str] = None
    last_message_body: Optional[str] = None
    message_count: int = Field(0, ge=0)


class ConversationsListResponse(BaseModel):
    data: list[ConversationResponse] = Field(default_factory=list)


class ConversationSummary(BaseModel):
    id: int
    name: str


class MessageResponse(BaseModel):
    """
    Response model for a single stored message.
    media_url points at the media endpoint when a decrypted file exists.
    """
    id: int
    wa_message_id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_phone: Optional[str] = None
    message_type: Optional[str] = None
    message_body: str
    is_from_me: bool
    sent_at: str
    media_url: Optional[str] = None
    media_mime_type: Optional[str] = None
    media_size: Optional[int] = None
    media_duration: Optional[int] = None
    media_caption: Optional[str] = None
    media_filename: Optional[str] = None

    model_config = {
        "from_attributes": True,  # Allow creating from ORM objects
    }


class MessagesListResponse(BaseModel):
    """
    Response model for GET /conversations/{id}/messages with pagination.

    Contains:
    - conversation: id and display name
    - data: messages in sent_at ASC, id ASC order
    - total: total count of messages in the conversation
    - limit/offset: pagination window used
    """
    conversation: ConversationSummary
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=500)
    offset: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
