"""
Typed events and the messaging-client boundary.

The protocol client itself lives outside this package. Whatever wraps it
must translate its native events into the dataclasses below and implement
the MessagingClient protocol, raising ProtocolError on failure.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol

from chatrelay.utils import JID


class MediaKind(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"


@dataclass
class MediaAttachment:
    """Image or document payload; the bytes are fetched on demand."""
    kind: MediaKind
    caption: str = ""
    mimetype: str = ""
    filename: str = ""
    # Opaque handle the collaborator needs to download the media
    handle: object = None


@dataclass
class MessageContent:
    conversation: str = ""
    extended_text: Optional[str] = None
    quoted_text: Optional[str] = None
    image: Optional[MediaAttachment] = None
    document: Optional[MediaAttachment] = None


@dataclass
class MessageInfo:
    id: str
    chat: JID
    sender: JID
    timestamp: datetime
    is_from_me: bool = False
    push_name: str = ""


@dataclass
class MessageEvent:
    info: MessageInfo
    message: MessageContent


@dataclass
class ReceiptEvent:
    chat: JID
    sender: JID
    message_ids: List[str] = field(default_factory=list)
    receipt_type: str = ""
    timestamp: Optional[datetime] = None


@dataclass
class GroupMetadata:
    """Name fields carried by a history-sync conversation."""
    display_name: Optional[str] = None
    name: Optional[str] = None


@dataclass
class MessageKey:
    id: Optional[str] = None
    from_me: Optional[bool] = None
    participant: Optional[str] = None


@dataclass
class HistoryMessage:
    key: Optional[MessageKey] = None
    message: Optional[MessageContent] = None
    timestamp: Optional[int] = None  # epoch seconds, 0 or None when unknown


@dataclass
class Conversation:
    id: Optional[str] = None
    metadata: Optional[GroupMetadata] = None
    messages: List[Optional[HistoryMessage]] = field(default_factory=list)


@dataclass
class HistorySyncEvent:
    conversations: List[Conversation] = field(default_factory=list)


@dataclass
class ConnectedEvent:
    pass


@dataclass
class LoggedOutEvent:
    reason: str = ""


@dataclass
class GroupInfo:
    jid: JID
    name: str = ""


@dataclass
class Contact:
    full_name: str = ""
    push_name: str = ""


@dataclass
class MediaUpload:
    """Descriptor returned by the collaborator after uploading outbound media."""
    url: str
    direct_path: str = ""
    media_key: bytes = b""
    file_sha256: bytes = b""
    file_enc_sha256: bytes = b""
    file_length: int = 0


@dataclass
class OutboundMessage:
    text: str = ""
    media_kind: Optional[MediaKind] = None
    media: Optional[MediaUpload] = None
    mimetype: str = ""
    filename: str = ""


class MessagingClient(Protocol):
    """Operations the relay needs from the messaging-protocol client."""

    def own_jid(self) -> Optional[JID]:
        ...

    def is_connected(self) -> bool:
        ...

    def get_group_info(self, jid: JID) -> GroupInfo:
        ...

    def get_contact(self, jid: JID) -> Optional[Contact]:
        ...

    def download(self, attachment: MediaAttachment) -> bytes:
        ...

    def upload(self, data: bytes, kind: MediaKind) -> MediaUpload:
        ...

    def send_message(self, to: JID, message: OutboundMessage) -> str:
        """Send and return the protocol message id."""
        ...

    def add_event_handler(self, handler: Callable[[object], None]) -> None:
        """Register a callback that receives every incoming protocol event."""
        ...
