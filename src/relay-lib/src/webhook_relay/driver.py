"""
webhook_relay.driver — Run the relay consumer against SQS outside Lambda.

Local development and integration tests use this in place of the Lambda
event source mapping.  It keeps the same contract: one record per
consumer call, delete on ACK, leave the message on the queue on REDELIVER.
"""

from __future__ import annotations

from typing import Any, Protocol

from aws_lambda_powertools import Logger

from webhook_relay.exceptions import RecordBatchError
from webhook_relay.models import RelayDecision, RelayOutcome

logger = Logger(service="webhook-relay-lib")


class RecordConsumer(Protocol):
    def handle_record(
        self, record: dict[str, Any], *, remaining_ms: int | None = None
    ) -> RelayOutcome: ...


def to_lambda_record(message: dict[str, Any], *, queue_arn: str, region: str) -> dict[str, Any]:
    """Reshape an SQS ReceiveMessage entry into a Lambda SQS event record."""
    return {
        "messageId": message.get("MessageId"),
        "receiptHandle": message.get("ReceiptHandle"),
        "body": message.get("Body", ""),
        "attributes": dict(message.get("Attributes", {})),
        "messageAttributes": dict(message.get("MessageAttributes", {})),
        "md5OfBody": message.get("MD5OfBody"),
        "eventSource": "aws:sqs",
        "eventSourceARN": queue_arn,
        "awsRegion": region,
    }


class QueueDriver:
    def __init__(
        self,
        sqs_client: Any,
        queue_url: str,
        consumer: RecordConsumer,
        *,
        queue_arn: str = "",
        region: str = "",
    ) -> None:
        self._sqs = sqs_client
        self._queue_url = queue_url
        self._consumer = consumer
        self._queue_arn = queue_arn
        self._region = region

    def poll_once(self, wait_seconds: int = 0) -> RelayOutcome | None:
        """Receive at most one message and relay it.  Returns None when the queue is empty."""
        response = self._sqs.receive_message(
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=1,
            AttributeNames=["All"],
            MessageAttributeNames=["All"],
            WaitTimeSeconds=wait_seconds,
        )
        messages = response.get("Messages", [])
        if not messages:
            return None
        if len(messages) > 1:
            raise RecordBatchError(len(messages))

        message = messages[0]
        receipt_handle = message["ReceiptHandle"]
        record = to_lambda_record(message, queue_arn=self._queue_arn, region=self._region)
        try:
            outcome = self._consumer.handle_record(record)
        except Exception:
            logger.exception(
                "Consumer failed, releasing message",
                extra={"message_id": record["messageId"]},
            )
            self._release(receipt_handle)
            raise

        if outcome.decision == RelayDecision.ACK:
            self._sqs.delete_message(QueueUrl=self._queue_url, ReceiptHandle=receipt_handle)
        else:
            self._release(receipt_handle)
        return outcome

    def drain(self, max_messages: int = 100, wait_seconds: int = 0) -> list[RelayOutcome]:
        """Poll until the queue is empty or max_messages records have been handled.

        A released message can stay invisible for a moment, so callers that
        expect redeliveries should pass a non-zero wait_seconds.
        """
        outcomes: list[RelayOutcome] = []
        while len(outcomes) < max_messages:
            outcome = self.poll_once(wait_seconds)
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    def _release(self, receipt_handle: str) -> None:
        # Visible again immediately, still at the head of its group.
        self._sqs.change_message_visibility(
            QueueUrl=self._queue_url,
            ReceiptHandle=receipt_handle,
            VisibilityTimeout=0,
        )
