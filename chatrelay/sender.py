"""
Outbound sends through the messaging client.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from chatrelay.events import MediaKind, MessagingClient, OutboundMessage
from chatrelay.exceptions import ProtocolError
from chatrelay.utils import JID, recipient_to_jid

logger = logging.getLogger(__name__)

_LABELS = {
    None: "Message",
    MediaKind.IMAGE: "Image message",
    MediaKind.DOCUMENT: "Document message",
}


@dataclass
class SendResult:
    success: bool
    message: str
    message_id: str = ""
    jid: Optional[JID] = None


def send_message(
    client: MessagingClient,
    recipient: str,
    text: str,
    media_kind: Optional[MediaKind] = None,
    data: Optional[bytes] = None,
    filename: str = "",
    mimetype: str = "",
) -> SendResult:
    """
    Send a text, image or document message.

    For media, the bytes are uploaded through the client first and ``text``
    becomes the caption. Failures are reported in the result, never raised.
    """
    if not client.is_connected():
        return SendResult(False, "Not connected to WhatsApp")

    try:
        jid = recipient_to_jid(recipient)
    except ValueError as e:
        return SendResult(False, f"Error parsing JID: {e}")

    outbound = OutboundMessage(text=text, media_kind=media_kind, mimetype=mimetype, filename=filename)
    if media_kind is not None:
        try:
            outbound.media = client.upload(data or b"", media_kind)
        except ProtocolError as e:
            return SendResult(False, f"Error uploading {media_kind.value}: {e}", jid=jid)

    label = _LABELS[media_kind]
    try:
        message_id = client.send_message(jid, outbound)
    except ProtocolError as e:
        return SendResult(False, f"Error sending {label.lower()}: {e}", jid=jid)

    logger.info(f"{label} sent to {jid}: id={message_id}")
    return SendResult(True, f"{label} sent to {recipient}", message_id=message_id, jid=jid)
