import logging
from typing import Optional

from chatrelay.blobs import BlobStore, build_key
from chatrelay.classifier import PendingEnvelope
from chatrelay.envelope import QueueEnvelope
from chatrelay.exceptions import BlobStoreError, QueueError
from chatrelay.metrics import record_publish
from chatrelay.sqs_queue import SQSQueue

logger = logging.getLogger(__name__)


class QueueProducer:
    """
    Puts envelopes on the relay queue.

    Media envelopes are enqueued only after their blob is uploaded and a
    fetchable URL is known.
    """

    def __init__(self, queue: SQSQueue, blob_store: Optional[BlobStore] = None):
        self.queue = queue
        self.blob_store = blob_store

    def enqueue(self, envelope: QueueEnvelope) -> str:
        """
        Serialize and submit one envelope.

        Returns:
            The queue's message id.

        Raises:
            QueueError: if the queue backend rejects the submission.
        """
        message_id = self.queue.send(envelope.to_json())
        logger.info(
            f"Enqueued {envelope.kind.value} envelope: queue_id={message_id}, "
            f"message_id={envelope.message_id}, from={envelope.sender}, to={envelope.recipient}"
        )
        return message_id

    def publish(self, pending: PendingEnvelope) -> bool:
        """
        Upload the blob if there is one, then enqueue.

        Failures are logged and reported as False; the event is then lost to
        the relay path but may still be in local history.
        """
        envelope = pending.envelope
        kind = envelope.kind.value

        if envelope.is_media:
            if pending.blob is None or self.blob_store is None:
                logger.error(f"No blob or blob store for {kind} message {envelope.message_id}, dropping")
                record_publish(kind, "upload_failed")
                return False
            blob = pending.blob
            try:
                url = self.blob_store.upload(build_key(kind, blob.filename), blob.data, blob.content_type)
            except BlobStoreError as e:
                logger.error(f"Blob upload failed for {kind} message {envelope.message_id}: {e}")
                record_publish(kind, "upload_failed")
                return False
            envelope = envelope.with_blob_url(url)

        try:
            self.enqueue(envelope)
        except QueueError as e:
            # The uploaded blob, if any, stays in the bucket unreferenced
            logger.error(f"Failed to enqueue {kind} message {envelope.message_id}: {e}")
            record_publish(kind, "enqueue_failed")
            return False

        record_publish(kind, "queued")
        return True
