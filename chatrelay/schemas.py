"""
Pydantic schemas for the command surface.

This module contains:
- Request models for the send endpoints
- Response models for sends, history reads and health checks
"""

from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of POST /api/send.

    Both fields default to empty so that missing and blank values get the
    same 400 response from the handler.
    """
    recipient: str = Field(
        default="",
        description="Phone number or full JID of the recipient"
    )
    message: str = Field(
        default="",
        description="Text to send"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"recipient": "14155550100", "message": "Hello"}
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SendMessageResponse(BaseModel):
    """Result of a send and of queueing it for the logging backend."""
    success: bool = Field(..., description="Whether the message was sent")
    message: str = Field(..., description="Human-readable send result")
    message_logged: str = Field(default="", description="Whether the message was queued for logging")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """A stored message, mapped from the ORM row."""
    id: str = Field(..., description="Protocol message identifier")
    chat_jid: str = Field(..., description="Conversation identifier")
    sender: str = Field(..., description="Sender identifier")
    content: str = Field(..., description="Text content")
    timestamp: str = Field(..., description="Message time (ISO-8601 UTC)")
    is_from_me: bool = Field(..., description="Sent by the local account")

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    data: list[MessageResponse] = Field(default_factory=list)
    chat_jid: str
    limit: int = Field(..., ge=1)


class ChatResponse(BaseModel):
    jid: str = Field(..., description="Conversation identifier")
    name: Optional[str] = Field(None, description="Resolved display name")
    last_message_time: Optional[str] = Field(None, description="Time of the newest message (ISO-8601 UTC)")

    model_config = {"from_attributes": True}


class ChatsListResponse(BaseModel):
    data: list[ChatResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
