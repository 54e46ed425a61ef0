"""
Pytest configuration and shared fixtures.

Settings are built with explicit overrides and no env file so the suite
does not depend on the developer's .env. External collaborators (messaging
client, queue, object store, logging backend) are replaced by in-memory
fakes; the logging backend is served through httpx.MockTransport.
"""

import itertools
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from chatrelay.classifier import EventClassifier
from chatrelay.config import load_settings
from chatrelay.events import (
    Contact,
    GroupInfo,
    MediaAttachment,
    MediaKind,
    MediaUpload,
    MessageContent,
    MessageEvent,
    MessageInfo,
    OutboundMessage,
)
from chatrelay.exceptions import BlobStoreError, ProtocolError, QueueError
from chatrelay.forwarder import Forwarder
from chatrelay.producer import QueueProducer
from chatrelay.sqs_queue import QueueMessage
from chatrelay.storage import ChatStore
from chatrelay.utils import JID

OWN_USER = "15550000000"
BLOB_BUCKET_URL = "https://relay-media.s3.us-east-1.amazonaws.com"


# =============================================================================
# Fakes
# =============================================================================

class FakeMessagingClient:
    """In-memory stand-in for the messaging-protocol client."""

    def __init__(self, own_user: Optional[str] = OWN_USER):
        self.own = JID(own_user) if own_user else None
        self.connected = True
        self.groups: Dict[str, object] = {}
        self.contacts: Dict[str, Contact] = {}
        self.media: Dict[object, bytes] = {}
        self.upload_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.sent: List[tuple] = []
        self.uploads: List[tuple] = []
        self.group_lookups = 0
        self.handlers: List[Callable[[object], None]] = []
        self._ids = itertools.count(1)

    def own_jid(self) -> Optional[JID]:
        return self.own

    def is_connected(self) -> bool:
        return self.connected

    def get_group_info(self, jid: JID) -> GroupInfo:
        self.group_lookups += 1
        info = self.groups.get(str(jid))
        if isinstance(info, Exception):
            raise info
        if info is None:
            raise ProtocolError(f"group {jid} not found")
        return info

    def get_contact(self, jid: JID) -> Optional[Contact]:
        return self.contacts.get(str(jid))

    def download(self, attachment: MediaAttachment) -> bytes:
        if attachment.handle not in self.media:
            raise ProtocolError(f"media {attachment.handle} unavailable")
        return self.media[attachment.handle]

    def upload(self, data: bytes, kind: MediaKind) -> MediaUpload:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append((data, kind))
        return MediaUpload(url=f"https://mmg.example.net/{kind.value}", file_length=len(data))

    def send_message(self, to: JID, message: OutboundMessage) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((to, message))
        return f"OUT{next(self._ids)}"

    def add_event_handler(self, handler: Callable[[object], None]) -> None:
        self.handlers.append(handler)

    def emit(self, event) -> None:
        """Deliver an event the way the live session would."""
        for handler in self.handlers:
            handler(event)


class FakeQueue:
    """
    In-memory queue with SQS visibility semantics.

    Received messages stay invisible until deleted or until release() puts
    them back, which stands in for the visibility timeout expiring.
    """

    def __init__(self):
        self.client = None
        self.queue_url = "https://sqs.us-east-1.amazonaws.com/000000000000/relay"
        self.fail_send = False
        self.fail_receive = False
        self.fail_delete = False
        self.deleted: List[str] = []
        self._messages: Dict[str, dict] = {}
        self._ids = itertools.count(1)

    def send(self, body: str) -> str:
        if self.fail_send:
            raise QueueError("send_message failed: service unavailable")
        n = next(self._ids)
        message_id = f"q{n}"
        self._messages[message_id] = {
            "body": body,
            "receipt": f"r{n}",
            "receive_count": 0,
            "visible": True,
        }
        return message_id

    def receive(self, max_messages: int = 10, wait_seconds: int = 5) -> List[QueueMessage]:
        if self.fail_receive:
            raise QueueError("receive_message failed: service unavailable")
        received = []
        for message_id, entry in self._messages.items():
            if len(received) >= max_messages:
                break
            if not entry["visible"]:
                continue
            entry["visible"] = False
            entry["receive_count"] += 1
            received.append(QueueMessage(
                message_id=message_id,
                receipt_handle=entry["receipt"],
                body=entry["body"],
                receive_count=entry["receive_count"],
            ))
        return received

    def delete(self, receipt_handle: str) -> None:
        if self.fail_delete:
            raise QueueError("delete_message failed: service unavailable")
        for message_id, entry in list(self._messages.items()):
            if entry["receipt"] == receipt_handle:
                del self._messages[message_id]
                self.deleted.append(message_id)
                return

    def release(self) -> None:
        for entry in self._messages.values():
            entry["visible"] = True

    @property
    def bodies(self) -> List[str]:
        return [entry["body"] for entry in self._messages.values()]

    def __len__(self) -> int:
        return len(self._messages)


class FakeBlobStore:
    """Object store keeping uploads in a dict keyed by URL."""

    def __init__(self):
        self.objects: Dict[str, tuple] = {}
        self.fail = False

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        if self.fail:
            raise BlobStoreError(f"upload of {key} failed: access denied")
        url = f"{BLOB_BUCKET_URL}/{key}"
        self.objects[url] = (data, content_type or "application/octet-stream")
        return url


class FakeBackend:
    """
    Logging backend and object store served through httpx.MockTransport.

    POSTs are recorded and answered with the next queued status (200 once
    the queue is empty). GETs are answered from the blob store's objects.
    """

    def __init__(self, blob_store: Optional[FakeBlobStore] = None):
        self.blob_store = blob_store or FakeBlobStore()
        self.statuses: List[int] = []
        self.posts: List[httpx.Request] = []
        self.gets: List[str] = []
        self.raise_on_post: Optional[Exception] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            url = str(request.url)
            self.gets.append(url)
            if url not in self.blob_store.objects:
                return httpx.Response(404)
            content, content_type = self.blob_store.objects[url]
            return httpx.Response(200, content=content, headers={"content-type": content_type})

        if self.raise_on_post is not None:
            raise self.raise_on_post
        self.posts.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"ok": status == 200})


def form_field(request: httpx.Request, name: str) -> Optional[str]:
    """Value of a plain multipart field, or None if the field is absent."""
    marker = f'name="{name}"\r\n\r\n'.encode()
    content = request.content
    start = content.find(marker)
    if start == -1:
        return None
    start += len(marker)
    end = content.find(b"\r\n--", start)
    return content[start:end].decode()


# =============================================================================
# Event builders
# =============================================================================

def make_message_event(
    message_id: str = "M1",
    chat: str = "15551112222@s.whatsapp.net",
    sender: Optional[str] = None,
    text: str = "",
    is_from_me: bool = False,
    timestamp: Optional[datetime] = None,
    **content,
) -> MessageEvent:
    chat_jid = JID(*chat.split("@", 1))
    if sender is None:
        sender_jid = JID(OWN_USER) if is_from_me else JID(chat_jid.user)
    else:
        sender_jid = JID(*sender.split("@", 1))
    return MessageEvent(
        info=MessageInfo(
            id=message_id,
            chat=chat_jid,
            sender=sender_jid,
            timestamp=timestamp or datetime(2025, 1, 15, 10, 0, 0, 123000, tzinfo=timezone.utc),
            is_from_me=is_from_me,
        ),
        message=MessageContent(conversation=text, **content),
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    return load_settings(
        _env_file=None,
        BEARER_TOKEN="test-token",
        LOG_API_ENDPOINT="https://logs.example.com/whatsapp/log-message",
        DATABASE_URL=f"sqlite:///{tmp_path / 'store' / 'messages.db'}",
        AWS_SQS_QUEUE_URL="https://sqs.us-east-1.amazonaws.com/000000000000/relay",
        AWS_S3_BUCKET_NAME="relay-media",
        ADMIN_PHONE="",
        POLL_INTERVAL_SECONDS=0.01,
        POLL_WAIT_SECONDS=0,
    )


@pytest.fixture
def store(tmp_path):
    """Fresh on-disk SQLite store for each test."""
    chat_store = ChatStore(f"sqlite:///{tmp_path / 'messages.db'}")
    chat_store.init_db()
    yield chat_store
    chat_store.close()


@pytest.fixture
def messaging_client():
    return FakeMessagingClient()


@pytest.fixture
def fake_queue():
    return FakeQueue()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def backend(blob_store):
    return FakeBackend(blob_store)


@pytest.fixture
def http_client(backend):
    client = httpx.Client(transport=httpx.MockTransport(backend.handler))
    yield client
    client.close()


@pytest.fixture
def forwarder(http_client):
    return Forwarder(
        endpoint="https://logs.example.com/whatsapp/log-message",
        bearer_token="test-token",
        http_client=http_client,
    )


@pytest.fixture
def producer(fake_queue, blob_store):
    return QueueProducer(fake_queue, blob_store)


@pytest.fixture
def classifier(messaging_client):
    return EventClassifier(messaging_client)
