"""
SQS-backed durable queue.

At-least-once: a received message stays invisible for the queue's
visibility timeout and comes back unless it is deleted.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from chatrelay.exceptions import QueueError

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    message_id: str
    receipt_handle: str
    body: str
    receive_count: int = 1


class SQSQueue:
    """Thin wrapper over the boto3 SQS client for one queue."""

    def __init__(self, queue_url: str, client=None, region_name: Optional[str] = None):
        self.queue_url = queue_url
        self.client = client or boto3.client("sqs", region_name=region_name)

    @classmethod
    def from_name(cls, queue_name: str, client=None, region_name: Optional[str] = None) -> "SQSQueue":
        """
        Resolve a queue URL by name.

        Raises:
            QueueError: if the queue does not exist or cannot be reached.
        """
        client = client or boto3.client("sqs", region_name=region_name)
        try:
            queue_url = client.get_queue_url(QueueName=queue_name)["QueueUrl"]
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"cannot resolve queue {queue_name}: {e}") from e
        logger.info(f"Resolved queue {queue_name}: {queue_url}")
        return cls(queue_url, client=client)

    def send(self, body: str) -> str:
        """Submit a message body and return the queue's message id."""
        try:
            response = self.client.send_message(QueueUrl=self.queue_url, MessageBody=body)
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"send_message failed: {e}") from e
        return response["MessageId"]

    def receive(self, max_messages: int = 10, wait_seconds: int = 5) -> List[QueueMessage]:
        """Long-poll for up to max_messages messages."""
        try:
            response = self.client.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=max_messages,
                WaitTimeSeconds=wait_seconds,
                AttributeNames=["ApproximateReceiveCount"],
            )
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"receive_message failed: {e}") from e

        messages = []
        for raw in response.get("Messages", []):
            attributes = raw.get("Attributes", {})
            messages.append(QueueMessage(
                message_id=raw["MessageId"],
                receipt_handle=raw["ReceiptHandle"],
                body=raw.get("Body", ""),
                receive_count=int(attributes.get("ApproximateReceiveCount", 1)),
            ))
        return messages

    def delete(self, receipt_handle: str) -> None:
        try:
            self.client.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"delete_message failed: {e}") from e
