"""
Queue envelope: the unit of work crossing the relay boundary.

Wire format is JSON with camelCase keys and ``time`` as epoch milliseconds:

    {"kind": "image", "from": "15550001", "to": "15550002", "body": "caption",
     "blobURL": "https://...", "time": 1736935200123, ...}
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from chatrelay.exceptions import MalformedEnvelopeError
from chatrelay.utils import from_epoch_millis, to_epoch_millis, truncate_to_millis


class EnvelopeKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"


class QueueEnvelope(BaseModel):
    """
    Normalized chat event destined for the logging backend.

    Immutable. ``time`` is held at millisecond precision so that a
    serialize/deserialize round trip reproduces every field exactly.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: EnvelopeKind
    sender: str = Field(..., alias="from")
    recipient: str = Field(..., alias="to")
    body: str = ""
    blob_url: str = Field(default="", alias="blobURL")
    time: datetime

    # Identity metadata forwarded to the backend
    admin_phone: str = Field(default="", alias="adminPhone")
    message_id: str = Field(default="", alias="messageId")
    chat_id: str = Field(default="", alias="chatId")
    parent_message_id: str = Field(default="", alias="parentMessageId")

    @field_validator("time", mode="before")
    @classmethod
    def parse_time(cls, v):
        """Accept epoch milliseconds from the wire as well as datetimes."""
        if isinstance(v, bool):
            raise ValueError("time must be epoch milliseconds or a datetime")
        if isinstance(v, (int, float)):
            try:
                return from_epoch_millis(int(v))
            except (OverflowError, OSError, ValueError) as e:
                raise ValueError(f"time out of range: {v}") from e
        return v

    @field_validator("time")
    @classmethod
    def truncate_time(cls, v: datetime) -> datetime:
        return truncate_to_millis(v)

    @field_serializer("time")
    def serialize_time(self, v: datetime) -> int:
        return to_epoch_millis(v)

    @property
    def is_media(self) -> bool:
        return self.kind != EnvelopeKind.TEXT

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "QueueEnvelope":
        """
        Parse a queue message body.

        Raises:
            MalformedEnvelopeError: if the body is not a valid envelope.
        """
        if not raw:
            raise MalformedEnvelopeError("empty message body")
        try:
            envelope = cls.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedEnvelopeError(str(e)) from e
        # Media is only enqueued after its blob upload succeeded
        if envelope.is_media and not envelope.blob_url:
            raise MalformedEnvelopeError(f"{envelope.kind.value} envelope without blobURL")
        return envelope

    def with_blob_url(self, url: str) -> "QueueEnvelope":
        return self.model_copy(update={"blob_url": url})
