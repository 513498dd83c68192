"""
webhook_relay — Shared library for the buffered webhook relay Lambdas.

Envelope codec, configuration, group key policies, the DynamoDB record
store, the backend invoker, Sentry reporting and a local queue driver.
Packaged as a layer and imported by the publish, subscribe and faux-backend
handlers.
"""

from webhook_relay.backend import BackendInvoker
from webhook_relay.config import PublishConfig, SubscribeConfig
from webhook_relay.exceptions import (
    BackendDeliveryError,
    ConfigurationError,
    GroupKeyError,
    RecordBatchError,
    UndecodableMessageError,
    WebhookRelayError,
)
from webhook_relay.models import EventBody, EventRequest
from webhook_relay.store import MessageStore

__all__ = [
    "BackendDeliveryError",
    "BackendInvoker",
    "ConfigurationError",
    "EventBody",
    "EventRequest",
    "GroupKeyError",
    "MessageStore",
    "PublishConfig",
    "RecordBatchError",
    "SubscribeConfig",
    "UndecodableMessageError",
    "WebhookRelayError",
]
