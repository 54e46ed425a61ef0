"""
Routes protocol events to local history and to the relay queue.

The two paths are independent: a store failure never stops an envelope
from being queued, and a queueing failure never undoes a stored message.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from chatrelay.classifier import Blob, Classification, EventClassifier, MessageRecord, PendingEnvelope
from chatrelay.envelope import EnvelopeKind, QueueEnvelope
from chatrelay.events import (
    ConnectedEvent,
    HistorySyncEvent,
    LoggedOutEvent,
    MessageEvent,
    MessagingClient,
    ReceiptEvent,
)
from chatrelay.exceptions import StoreError
from chatrelay.naming import resolve_chat_name
from chatrelay.producer import QueueProducer
from chatrelay.sender import SendResult
from chatrelay.storage import ChatStore
from chatrelay.utils import parse_jid, utcnow

logger = logging.getLogger(__name__)


class EventBridge:
    """Entry point for events coming from the messaging client."""

    def __init__(
        self,
        client: MessagingClient,
        store: ChatStore,
        classifier: EventClassifier,
        producer: QueueProducer,
    ):
        self.client = client
        self.store = store
        self.classifier = classifier
        self.producer = producer

    def handle_event(self, event) -> None:
        """Dispatch one event by type. Unknown event types are ignored."""
        if isinstance(event, MessageEvent):
            self.handle_message(event)
        elif isinstance(event, ReceiptEvent):
            logger.info(
                f"Receipt {event.receipt_type or 'delivered'} from {event.sender} "
                f"in {event.chat}: {event.message_ids}"
            )
        elif isinstance(event, HistorySyncEvent):
            self.handle_history_sync(event)
        elif isinstance(event, ConnectedEvent):
            logger.info("Connected to WhatsApp")
        elif isinstance(event, LoggedOutEvent):
            logger.warning("Device logged out, please scan QR code to log in again")
        else:
            logger.debug(f"Ignoring event of type {type(event).__name__}")

    # =========================================================================
    # Live messages
    # =========================================================================

    def handle_message(self, event: MessageEvent) -> Classification:
        classification = self.classifier.classify_message(event)
        if classification.is_empty:
            return classification

        if classification.record is not None:
            self._store_live(event, classification.record)

        for pending in classification.envelopes:
            self.producer.publish(pending)
        return classification

    def _store_live(self, event: MessageEvent, record: MessageRecord) -> None:
        name = resolve_chat_name(self.client, self.store, event.info.chat, sender=record.sender)
        try:
            self.store.upsert_chat(record.chat_jid, name, record.timestamp)
        except StoreError as e:
            logger.warning(f"Failed to store chat {record.chat_jid}: {e}")
        try:
            self.store.upsert_message(
                record.id,
                record.chat_jid,
                record.sender,
                record.content,
                record.timestamp,
                record.is_from_me,
            )
        except StoreError as e:
            logger.warning(f"Failed to store message {record.id}: {e}")
            return

        direction = "→" if record.is_from_me else "←"
        logger.info(f"[{record.timestamp:%Y-%m-%d %H:%M:%S}] {direction} {record.sender}: {record.content}")

    # =========================================================================
    # History sync
    # =========================================================================

    def handle_history_sync(self, event: HistorySyncEvent) -> int:
        """
        Store the text messages of a history sync.

        Returns:
            Number of messages stored.
        """
        logger.info(f"Received history sync event with {len(event.conversations)} conversations")

        synced = 0
        for conversation in event.conversations:
            if not conversation.id:
                continue
            try:
                jid = parse_jid(conversation.id)
            except ValueError as e:
                logger.warning(f"Failed to parse JID {conversation.id}: {e}")
                continue

            name = resolve_chat_name(self.client, self.store, jid, metadata=conversation.metadata)

            messages = conversation.messages
            if not messages:
                continue
            # The first message is the most recent one
            latest = messages[0]
            if latest is None or latest.message is None or not latest.timestamp:
                continue

            latest_time = datetime.fromtimestamp(latest.timestamp, tz=timezone.utc)
            try:
                self.store.upsert_chat(str(jid), name, latest_time)
            except StoreError as e:
                logger.warning(f"Failed to store chat {jid}: {e}")

            for message in messages:
                classification = self.classifier.classify_history(jid, message)
                record = classification.record
                if record is None:
                    continue
                try:
                    self.store.upsert_message(
                        record.id,
                        record.chat_jid,
                        record.sender,
                        record.content,
                        record.timestamp,
                        record.is_from_me,
                    )
                except StoreError as e:
                    logger.warning(f"Failed to store history message {record.id}: {e}")
                else:
                    synced += 1
                    logger.debug(f"Stored history message {record.id} in {record.chat_jid}")
                for pending in classification.envelopes:
                    self.producer.publish(pending)

        logger.info(f"History sync complete. Stored {synced} text messages.")
        return synced

    # =========================================================================
    # Outbound (command surface)
    # =========================================================================

    def relay_outbound(
        self,
        result: SendResult,
        kind: EnvelopeKind,
        recipient: str,
        body: str,
        blob: Optional[Blob] = None,
        admin_phone: str = "",
    ) -> bool:
        """
        Queue a message the command surface just sent.

        Returns:
            True if the envelope reached the queue.
        """
        own = self.client.own_jid()
        own_user = own.user if own is not None else ""
        envelope = QueueEnvelope(
            kind=kind,
            sender=own_user,
            recipient=recipient,
            body=body,
            time=utcnow(),
            admin_phone=admin_phone or own_user,
            message_id=result.message_id,
            chat_id=str(result.jid) if result.jid is not None else "",
        )
        return self.producer.publish(PendingEnvelope(envelope=envelope, blob=blob))
