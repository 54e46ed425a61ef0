"""
Delivery to the remote logging backend.

Every envelope kind goes through Forwarder.forward(): media kinds first GET
their blob from the object store, then everything is posted as
multipart/form-data with a bearer token. The forwarder never touches the
queue or the store; the consumer decides what happens to the envelope.
"""

import logging
import posixpath
import time
from typing import List, Optional, Tuple, Union
from urllib.parse import unquote, urlparse

import httpx

from chatrelay.config import Settings
from chatrelay.envelope import QueueEnvelope
from chatrelay.exceptions import ConfigurationError, DeliveryError
from chatrelay.metrics import record_forward
from chatrelay.utils import to_epoch_millis

logger = logging.getLogger(__name__)

MESSAGE_STATUS = "READ"
FILE_FIELD = "files"


def blob_filename(url: str) -> str:
    """Basename of the blob URL's path, used as the multipart filename."""
    name = posixpath.basename(unquote(urlparse(url).path))
    return name or "blob"


# (field name, (filename, content) or (filename, content, content type))
FormPart = Tuple[str, Union[Tuple[Optional[str], str], Tuple[str, bytes, str]]]


def build_form_fields(envelope: QueueEnvelope) -> List[FormPart]:
    """
    Plain form fields for the backend.

    A None filename makes httpx send each value as a form-data field, so
    text-only envelopes are still multipart.
    """
    fields = {
        "entity_phone_number_from": envelope.sender,
        "entity_phone_number_to": envelope.recipient,
        "message_text": envelope.body,
        "message_status": MESSAGE_STATUS,
        "message_time": str(to_epoch_millis(envelope.time)),
        "admin_phone": envelope.admin_phone,
        "wa_message_id": envelope.message_id,
        "wa_parent_message_id": envelope.parent_message_id,
    }
    return [(name, (None, value)) for name, value in fields.items()]


class Forwarder:
    """
    Posts envelopes to the logging backend.

    Args:
        endpoint: Backend URL accepting the multipart POST
        bearer_token: Credential sent as ``Authorization: Bearer <token>``
        http_client: Optional shared httpx.Client
        fetch_timeout: Seconds allowed for the blob GET
        post_timeout: Seconds allowed for the backend POST

    Raises:
        ConfigurationError: if the endpoint or token is missing.
    """

    def __init__(
        self,
        endpoint: str,
        bearer_token: str,
        http_client: Optional[httpx.Client] = None,
        fetch_timeout: float = 30.0,
        post_timeout: float = 15.0,
    ):
        if not bearer_token:
            raise ConfigurationError("BEARER_TOKEN is not configured")
        if not endpoint:
            raise ConfigurationError("LOG_API_ENDPOINT is not configured")
        self.endpoint = endpoint
        self._bearer_token = bearer_token
        self._owns_client = http_client is None
        self.http = http_client or httpx.Client()
        self.fetch_timeout = fetch_timeout
        self.post_timeout = post_timeout

    @classmethod
    def from_settings(cls, settings: Settings, http_client: Optional[httpx.Client] = None) -> "Forwarder":
        return cls(
            endpoint=settings.LOG_API_ENDPOINT,
            bearer_token=settings.BEARER_TOKEN,
            http_client=http_client,
            fetch_timeout=settings.FETCH_TIMEOUT_SECONDS,
            post_timeout=settings.POST_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        if self._owns_client:
            self.http.close()

    def fetch_blob(self, url: str) -> Tuple[bytes, str]:
        """
        GET a blob from the object store.

        Returns:
            Tuple of (content, content type).

        Raises:
            DeliveryError: on a transport error or a non-2xx response.
        """
        try:
            response = self.http.get(url, timeout=self.fetch_timeout)
        except httpx.HTTPError as e:
            raise DeliveryError(f"error fetching blob {url}: {e}") from e
        if not response.is_success:
            raise DeliveryError(
                f"non-OK response fetching blob {url}: {response.status_code}",
                status_code=response.status_code,
            )
        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type

    def forward(self, envelope: QueueEnvelope) -> None:
        """
        Deliver one envelope.

        Raises:
            DeliveryError: on any transport error, a failed blob fetch, or a
                backend status other than 200.
        """
        kind = envelope.kind.value
        started = time.monotonic()
        try:
            self._forward(envelope)
        except DeliveryError as e:
            record_forward(kind, False, time.monotonic() - started)
            logger.error(f"Failed to log {kind} message {envelope.message_id}: {e}")
            raise
        record_forward(kind, True, time.monotonic() - started)
        logger.info(f"Successfully logged {kind} message {envelope.message_id}")

    def _forward(self, envelope: QueueEnvelope) -> None:
        files = build_form_fields(envelope)
        if envelope.is_media:
            if not envelope.blob_url:
                raise DeliveryError(f"{envelope.kind.value} envelope has no blob URL")
            content, content_type = self.fetch_blob(envelope.blob_url)
            files.append((FILE_FIELD, (blob_filename(envelope.blob_url), content, content_type)))

        try:
            response = self.http.post(
                self.endpoint,
                files=files,
                headers={"Authorization": f"Bearer {self._bearer_token}"},
                timeout=self.post_timeout,
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"error sending log: {e}") from e

        if response.status_code != httpx.codes.OK:
            raise DeliveryError(
                f"error response from log API: {response.status_code}",
                status_code=response.status_code,
            )
