"""
Event classification.

Turns one protocol message (live, or one entry of a history sync) into the
envelopes to relay and the text record to store.
"""

import logging
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from chatrelay.envelope import EnvelopeKind, QueueEnvelope
from chatrelay.events import (
    HistoryMessage,
    MediaAttachment,
    MediaKind,
    MessageContent,
    MessageEvent,
    MessagingClient,
)
from chatrelay.exceptions import ProtocolError
from chatrelay.utils import JID, is_status_broadcast, parse_jid

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPES = {
    MediaKind.IMAGE: "image/jpeg",
    MediaKind.DOCUMENT: "application/pdf",
}


@dataclass
class Blob:
    """Raw media bytes waiting to be uploaded to the object store."""
    filename: str
    data: bytes
    content_type: str


@dataclass
class PendingEnvelope:
    envelope: QueueEnvelope
    blob: Optional[Blob] = None


@dataclass
class MessageRecord:
    """Arguments for ChatStore.upsert_message."""
    id: str
    chat_jid: str
    sender: str
    content: str
    timestamp: datetime
    is_from_me: bool


@dataclass
class Classification:
    envelopes: List[PendingEnvelope] = field(default_factory=list)
    record: Optional[MessageRecord] = None

    @property
    def is_empty(self) -> bool:
        return not self.envelopes and self.record is None


def extract_text(message: Optional[MessageContent]) -> str:
    """Plain conversation text, else extended text, else empty."""
    if message is None:
        return ""
    if message.conversation:
        return message.conversation
    return message.extended_text or ""


def is_status_chat(chat: JID, sender: Optional[JID] = None) -> bool:
    identities = [chat] if sender is None else [chat, sender]
    return any(is_status_broadcast(j.user) or is_status_broadcast(str(j)) for j in identities)


def _participant_user(participant: str) -> str:
    try:
        return parse_jid(participant).user
    except ValueError:
        return participant


class EventClassifier:
    """
    Classifies protocol messages into envelopes and store records.

    Media bytes are downloaded through the messaging client here; the
    producer uploads them and fills in the blob URL.
    """

    def __init__(self, client: MessagingClient, admin_phone: str = "", relay_history: bool = False):
        self.client = client
        self.admin_phone = admin_phone
        self.relay_history = relay_history

    def _own_user(self) -> str:
        own = self.client.own_jid()
        return own.user if own is not None else ""

    def _route(self, chat: JID, sender: str, is_from_me: bool) -> Tuple[str, str]:
        """Return (from, to) for the backend."""
        if chat.is_group:
            return sender, str(chat)
        own = self._own_user()
        if is_from_me:
            return own or sender, chat.user
        return chat.user, own

    def _envelope(self, kind: EnvelopeKind, route: Tuple[str, str], body: str,
                  time: datetime, message_id: str, chat: JID) -> QueueEnvelope:
        return QueueEnvelope(
            kind=kind,
            sender=route[0],
            recipient=route[1],
            body=body,
            time=time,
            admin_phone=self.admin_phone or self._own_user(),
            message_id=message_id,
            chat_id=str(chat),
        )

    def _fetch_blob(self, attachment: MediaAttachment, message_id: str) -> Optional[Blob]:
        try:
            data = self.client.download(attachment)
        except ProtocolError as e:
            logger.error(f"Failed to download {attachment.kind.value} for message {message_id}: {e}")
            return None

        content_type = (
            attachment.mimetype
            or mimetypes.guess_type(attachment.filename)[0]
            or DEFAULT_CONTENT_TYPES[attachment.kind]
        )
        filename = attachment.filename
        if not filename:
            extension = mimetypes.guess_extension(content_type) or ""
            filename = f"{attachment.kind.value}_{message_id}{extension}"
        return Blob(filename=filename, data=data, content_type=content_type)

    def classify_message(self, event: MessageEvent) -> Classification:
        """
        Classify a live message.

        Documents and images each yield an envelope with their caption as
        body; plain text yields a text envelope. The store record carries
        the text, or the first caption when there is no text. A quoted
        message yields one more text envelope with the quoted text.
        """
        info = event.info
        if is_status_chat(info.chat, info.sender):
            logger.debug(f"Dropping status broadcast message {info.id}")
            return Classification()

        route = self._route(info.chat, info.sender.user, info.is_from_me)
        result = Classification()

        attachments = (event.message.document, event.message.image)
        for attachment in attachments:
            if attachment is None:
                continue
            blob = self._fetch_blob(attachment, info.id)
            if blob is None:
                continue
            kind = EnvelopeKind(attachment.kind.value)
            envelope = self._envelope(kind, route, attachment.caption, info.timestamp, info.id, info.chat)
            result.envelopes.append(PendingEnvelope(envelope=envelope, blob=blob))

        text = extract_text(event.message)
        if text:
            envelope = self._envelope(EnvelopeKind.TEXT, route, text, info.timestamp, info.id, info.chat)
            result.envelopes.append(PendingEnvelope(envelope=envelope))

        # Media without text is stored under its caption
        content = text or next((a.caption for a in attachments if a is not None and a.caption), "")
        if content:
            result.record = MessageRecord(
                id=info.id,
                chat_jid=str(info.chat),
                sender=info.sender.user,
                content=content,
                timestamp=info.timestamp,
                is_from_me=info.is_from_me,
            )

        if event.message.quoted_text:
            # No parent linkage: the quoted message id is not relayed
            envelope = self._envelope(
                EnvelopeKind.TEXT, route, event.message.quoted_text, info.timestamp, "", info.chat
            )
            result.envelopes.append(PendingEnvelope(envelope=envelope))

        return result

    def classify_history(self, chat: JID, message: Optional[HistoryMessage]) -> Classification:
        """
        Classify one historical message: text only, never media.

        Messages without text or without a timestamp are skipped.
        """
        if message is None or message.message is None:
            return Classification()
        if is_status_chat(chat):
            return Classification()

        text = extract_text(message.message)
        if not text:
            return Classification()
        if not message.timestamp:
            logger.debug(f"Skipping history message without timestamp in {chat}")
            return Classification()

        key = message.key
        is_from_me = bool(key.from_me) if key is not None else False
        if is_from_me:
            sender = self._own_user() or chat.user
        elif key is not None and key.participant:
            sender = _participant_user(key.participant)
        else:
            sender = chat.user

        message_id = key.id if key is not None and key.id else ""
        timestamp = datetime.fromtimestamp(message.timestamp, tz=timezone.utc)

        result = Classification(record=MessageRecord(
            id=message_id,
            chat_jid=str(chat),
            sender=sender,
            content=text,
            timestamp=timestamp,
            is_from_me=is_from_me,
        ))
        if self.relay_history:
            route = self._route(chat, sender, is_from_me)
            envelope = self._envelope(EnvelopeKind.TEXT, route, text, timestamp, message_id, chat)
            result.envelopes.append(PendingEnvelope(envelope=envelope))
        return result
