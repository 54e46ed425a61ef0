"""
Queue consumer.

One cycle: poll -> dispatch each message -> delete on success, retain on
failure -> sleep. Runs on a dedicated thread until stop() is called.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from chatrelay.config import Settings
from chatrelay.envelope import QueueEnvelope
from chatrelay.exceptions import DeliveryError, MalformedEnvelopeError, QueueError
from chatrelay.forwarder import Forwarder
from chatrelay.logging_utils import request_context
from chatrelay.metrics import record_dead_letter, record_poll_cycle
from chatrelay.sqs_queue import QueueMessage, SQSQueue

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Outcome counts for one poll cycle."""
    received: int = 0
    delivered: int = 0
    retained: int = 0
    dead_lettered: int = 0


class QueueConsumer:
    """
    Single consumer of the relay queue.

    Args:
        queue: Queue to poll and acknowledge on
        forwarder: Delivery stage for each envelope
        dead_letter_queue: Where malformed messages go once they have been
            received max_malformed_receives times; without one they are
            logged in full and deleted
        batch_size: Messages per poll (SQS allows at most 10)
        wait_seconds: Long-poll wait
        interval_seconds: Sleep between cycles
        max_malformed_receives: Redeliveries allowed for a malformed message
    """

    def __init__(
        self,
        queue: SQSQueue,
        forwarder: Forwarder,
        dead_letter_queue: Optional[SQSQueue] = None,
        batch_size: int = 10,
        wait_seconds: int = 5,
        interval_seconds: float = 10.0,
        max_malformed_receives: int = 5,
    ):
        self.queue = queue
        self.forwarder = forwarder
        self.dead_letter_queue = dead_letter_queue
        self.batch_size = batch_size
        self.wait_seconds = wait_seconds
        self.interval_seconds = interval_seconds
        self.max_malformed_receives = max_malformed_receives
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, settings: Settings, queue: SQSQueue, forwarder: Forwarder,
                      dead_letter_queue: Optional[SQSQueue] = None) -> "QueueConsumer":
        return cls(
            queue=queue,
            forwarder=forwarder,
            dead_letter_queue=dead_letter_queue,
            batch_size=settings.POLL_BATCH_SIZE,
            wait_seconds=settings.POLL_WAIT_SECONDS,
            interval_seconds=settings.POLL_INTERVAL_SECONDS,
            max_malformed_receives=settings.MAX_MALFORMED_RECEIVES,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="queue-consumer", daemon=True)
        self._thread.start()
        logger.info(
            f"Queue consumer started (batch={self.batch_size}, wait={self.wait_seconds}s, "
            f"interval={self.interval_seconds}s)"
        )

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Signal the loop to stop and join it.

        The current long poll and the envelope in flight are allowed to
        finish; no new envelope is started after the signal.

        Returns:
            True if the thread has exited.
        """
        self._stop_event.set()
        if self._thread is None:
            return True
        self._thread.join(timeout)
        stopped = not self._thread.is_alive()
        if stopped:
            self._thread = None
            logger.info("Queue consumer stopped")
        else:
            logger.warning("Queue consumer did not stop within timeout")
        return stopped

    def run(self) -> None:
        """Poll until stopped."""
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                record_poll_cycle("error")
                logger.exception("Unexpected error in consumer cycle")
            self._stop_event.wait(self.interval_seconds)

    # =========================================================================
    # Cycle
    # =========================================================================

    def poll_once(self) -> CycleResult:
        """Run one poll/dispatch cycle."""
        result = CycleResult()
        try:
            messages = self.queue.receive(self.batch_size, self.wait_seconds)
        except QueueError as e:
            logger.error(f"Failed to poll queue: {e}")
            record_poll_cycle("error")
            return result

        if not messages:
            record_poll_cycle("empty")
            return result

        result.received = len(messages)
        logger.debug(f"Received {len(messages)} messages")
        for message in messages:
            if self._stop_event.is_set():
                # Undispatched messages come back after the visibility timeout
                result.retained += 1
                continue
            with request_context(message.message_id):
                outcome = self._dispatch(message)
            setattr(result, outcome, getattr(result, outcome) + 1)

        record_poll_cycle("processed")
        logger.info(
            f"Cycle complete: received={result.received}, delivered={result.delivered}, "
            f"retained={result.retained}, dead_lettered={result.dead_lettered}"
        )
        return result

    def _dispatch(self, message: QueueMessage) -> str:
        """Process one message; return the CycleResult field to count it under."""
        try:
            envelope = QueueEnvelope.from_json(message.body)
        except MalformedEnvelopeError as e:
            return self._handle_malformed(message, e)
        except Exception as e:
            logger.exception(f"Unexpected error parsing message {message.message_id}")
            return self._handle_malformed(message, MalformedEnvelopeError(str(e)))

        try:
            self.forwarder.forward(envelope)
        except DeliveryError:
            # Left in place; the queue redelivers it after the visibility timeout
            return "retained"
        except Exception:
            logger.exception(f"Unexpected error forwarding message {envelope.message_id}")
            return "retained"

        try:
            self.queue.delete(message.receipt_handle)
        except QueueError as e:
            # Delivered but not acknowledged: the backend will see it again
            logger.error(f"Failed to delete delivered message {message.message_id}: {e}")
            return "retained"
        return "delivered"

    def _handle_malformed(self, message: QueueMessage, error: MalformedEnvelopeError) -> str:
        if message.receive_count < self.max_malformed_receives:
            logger.warning(
                f"Malformed envelope {message.message_id} "
                f"(receive {message.receive_count}/{self.max_malformed_receives}), leaving in queue: {error}"
            )
            return "retained"

        try:
            if self.dead_letter_queue is not None:
                self.dead_letter_queue.send(message.body)
                logger.error(f"Moved malformed envelope {message.message_id} to dead-letter queue: {error}")
            else:
                logger.error(
                    f"Dropping malformed envelope {message.message_id} after "
                    f"{message.receive_count} receives: {error}",
                    extra={"body": message.body},
                )
            self.queue.delete(message.receipt_handle)
        except QueueError as e:
            logger.error(f"Failed to dead-letter message {message.message_id}: {e}")
            return "retained"

        record_dead_letter()
        return "dead_lettered"
