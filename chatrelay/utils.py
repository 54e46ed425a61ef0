"""
Utility functions for identifiers and timestamps.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DEFAULT_USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"
BROADCAST_SERVER = "broadcast"
STATUS_USER = "status"


@dataclass(frozen=True)
class JID:
    """
    Opaque chat or participant identity of the form ``user@server``.

    ``user`` is the local identifier (a phone number for people, a group id
    for groups); ``server`` tells the two apart.
    """
    user: str
    server: str = DEFAULT_USER_SERVER

    @property
    def is_group(self) -> bool:
        return self.server == GROUP_SERVER

    def __str__(self) -> str:
        if not self.server:
            return self.user
        return f"{self.user}@{self.server}"


def parse_jid(value: str) -> JID:
    """
    Parse a ``user@server`` string.

    Device suffixes (``user:12@server``) are dropped.

    Raises:
        ValueError: if the value is empty or has no user part.
    """
    if not value or not value.strip():
        raise ValueError("JID must not be empty")
    user, sep, server = value.strip().partition("@")
    user = user.split(":", 1)[0]
    if not user:
        raise ValueError(f"JID has no user part: {value!r}")
    if not sep:
        return JID(user=user, server="")
    return JID(user=user, server=server)


def recipient_to_jid(recipient: str) -> JID:
    """Treat recipients with '@' as JIDs and everything else as a phone number."""
    if "@" in recipient:
        return parse_jid(recipient)
    return JID(user=recipient.strip().lstrip("+"), server=DEFAULT_USER_SERVER)


def is_status_broadcast(value: str) -> bool:
    """True for the synthetic status identity, bare or as a full JID."""
    return value in (STATUS_USER, f"{STATUS_USER}@{BROADCAST_SERVER}")


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_to_millis(value: datetime) -> datetime:
    value = ensure_utc(value)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def to_epoch_millis(value: datetime) -> int:
    value = ensure_utc(value)
    # Exact to the millisecond
    delta = value - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_epoch_millis(value: int) -> datetime:
    seconds, millis = divmod(int(value), 1000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=millis * 1000)


def to_iso(value: datetime) -> str:
    """Format as ISO-8601 UTC with milliseconds and a Z suffix."""
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
