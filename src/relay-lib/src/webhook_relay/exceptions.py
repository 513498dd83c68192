"""
webhook_relay.exceptions — Error taxonomy for the relay pipeline.

Only RecordBatchError, UndecodableMessageError and BackendDeliveryError are
allowed to escape a Lambda handler.  Everything else is caught, reported and
folded into the ACK/REDELIVER decision or an HTTP status code.
"""


class WebhookRelayError(Exception):
    """Base class for all relay pipeline errors."""


class ConfigurationError(WebhookRelayError):
    """Raised at cold start when required configuration is absent."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing required configuration: {', '.join(self.missing)}")


class GroupKeyError(WebhookRelayError):
    """Raised when no MessageGroupId can be derived for an inbound request."""


class RecordBatchError(WebhookRelayError):
    """
    Raised when an invocation receives more than one SQS record.

    The event source must be configured with a batch size of 1; a batch
    makes it impossible to ack or fail records individually, so the
    invocation aborts before touching the store.
    """

    def __init__(self, record_count: int) -> None:
        self.record_count = record_count
        super().__init__(
            f"records.length > 1 in handler ({record_count}), this breaks our ability to "
            "mark individual messages as pass or fail - aborting"
        )


class BackendDeliveryError(WebhookRelayError):
    """
    Raised from the subscribe handler so SQS keeps the message for redelivery.

    Attributes:
        message_id:  SQS message id of the failed record.
        status_code: Backend status code, or None when no response was obtained.
    """

    def __init__(self, *, message_id: str, status_code: int | None) -> None:
        self.message_id = message_id
        self.status_code = status_code
        super().__init__(
            "Got a bad status code from the backend, throwing so the message is not "
            f"consumed. Status {status_code} (message_id={message_id})"
        )


class UndecodableMessageError(WebhookRelayError):
    """
    Raised from the subscribe handler when a queue message is not an event envelope.

    Nothing was stored or relayed; the message stays on the queue for the
    redrive policy to deal with.
    """

    def __init__(self, *, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(
            f"Queue message {message_id} is not a decodable event envelope, "
            "leaving it on the queue"
        )
