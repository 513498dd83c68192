"""
webhook_relay.models — Queue envelope and stored record schemas.

Queue message body (JSON):
    {
      "request": {path, headers, body, httpMethod, queryStringParameters},
      "received_timestamp": <epoch ms>
    }

The ordering key travels as the SQS MessageGroupId, not inside the body,
so it does not take part in content-based deduplication.

Table: webhook messages
PK: id (SQS message id)
Attributes: message_id, group_id, received_timestamp (N), request (JSON string),
            backend_response_status_code (N, written after the backend call)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# Recorded in backend_response_status_code when the backend never answered.
NO_RESPONSE_STATUS: int = -1

# Used when the SQS record carries no messageId; must never raise.
UNKNOWN_MESSAGE_ID: str = "FAILED TO DETERMINE MESSAGE ID"


class RelayState(StrEnum):
    RECEIVED = "received"
    STORED = "stored"
    BACKEND_CALLED = "backend_called"
    RECORDED = "recorded"


class RelayDecision(StrEnum):
    ACK = "ack"
    REDELIVER = "redeliver"


def _string_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if v is not None}


def _collapse_headers(headers: Any, multi_value_headers: Any) -> dict[str, str]:
    collapsed = _string_map(headers)
    if isinstance(multi_value_headers, dict):
        for name, values in multi_value_headers.items():
            if isinstance(values, list) and values:
                collapsed[str(name)] = ", ".join(str(v) for v in values if v is not None)
    return collapsed


@dataclass(frozen=True)
class EventRequest:
    """The inbound webhook call as it was received by API Gateway."""

    http_method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    query_string_parameters: dict[str, str] | None = None

    @classmethod
    def from_api_gateway(cls, event: dict[str, Any]) -> EventRequest:
        """Build from an API Gateway REST proxy event.

        Multi-valued headers are collapsed into a single comma-separated value.
        An empty query string map is normalised to None.
        """
        query = _string_map(event.get("queryStringParameters")) or None
        body = event.get("body")
        return cls(
            http_method=str(event.get("httpMethod") or "").upper(),
            path=str(event.get("path") or "/"),
            headers=_collapse_headers(event.get("headers"), event.get("multiValueHeaders")),
            body=body if body is None else str(body),
            query_string_parameters=query,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRequest:
        query = data.get("queryStringParameters")
        body = data.get("body")
        return cls(
            http_method=str(data.get("httpMethod") or ""),
            path=str(data.get("path") or "/"),
            headers=_string_map(data.get("headers")),
            body=body if body is None else str(body),
            query_string_parameters=_string_map(query) if query is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "headers": dict(self.headers),
            "body": self.body,
            "httpMethod": self.http_method,
            "queryStringParameters": (
                dict(self.query_string_parameters)
                if self.query_string_parameters is not None
                else None
            ),
        }

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def json_body(self) -> Any:
        """Decode the body as JSON.  Returns None for an empty body.

        Raises ValueError if the body is not valid JSON.
        """
        if not self.body:
            return None
        return json.loads(self.body)


@dataclass(frozen=True)
class EventBody:
    """Envelope published to the queue.  Immutable once published."""

    request: EventRequest
    received_timestamp: int  # epoch milliseconds
    group_key: str | None = None

    def to_message_body(self) -> str:
        return json.dumps(
            {"request": self.request.to_dict(), "received_timestamp": self.received_timestamp}
        )

    @classmethod
    def from_message_body(cls, raw: str, *, group_key: str | None = None) -> EventBody:
        """Decode a queue message body.

        Raises ValueError if the body is not a JSON envelope.
        """
        data = json.loads(raw)
        if not isinstance(data, dict) or not isinstance(data.get("request"), dict):
            raise ValueError("Queue message body is not an event envelope")
        try:
            received_timestamp = int(data.get("received_timestamp") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(
                f"Invalid received_timestamp: {data.get('received_timestamp')!r}"
            ) from exc
        return cls(
            request=EventRequest.from_dict(data["request"]),
            received_timestamp=received_timestamp,
            group_key=group_key,
        )

    def with_publish_result(
        self, *, return_code: int, body: str, message_id: str | None
    ) -> dict[str, Any]:
        """Envelope decorated with the publish outcome, for the publish log line."""
        return {
            "request": self.request.to_dict(),
            "received_timestamp": self.received_timestamp,
            "group_key": self.group_key,
            "sqs_publish_result": {
                "return_code": return_code,
                "body": body,
                "message_id": message_id,
            },
        }


@dataclass(frozen=True)
class ControlFlags:
    """Test-rig switches embedded in the webhook body.

    suppress_sentry:      don't report errors for this call.
    consume_bad_messages: ACK even when the backend call fails.
    """

    suppress_sentry: bool = False
    consume_bad_messages: bool = False

    @classmethod
    def from_request(cls, request: EventRequest) -> ControlFlags:
        """Raises ValueError if the body is present but not JSON."""
        payload = request.json_body()
        if not isinstance(payload, dict):
            return cls()
        return cls(
            suppress_sentry=bool(payload.get("suppress_sentry")),
            consume_bad_messages=bool(payload.get("consume_bad_messages")),
        )


@dataclass(frozen=True)
class StoredRecord:
    """Audit entry for one SQS message id."""

    message_id: str
    group_id: str | None
    received_timestamp: int
    request: EventRequest

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "id": self.message_id,
            "message_id": self.message_id,
            "received_timestamp": self.received_timestamp,
            "request": json.dumps(self.request.to_dict()),
        }
        if self.group_id is not None:
            item["group_id"] = self.group_id
        return item


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a best-effort store write."""

    ok: bool
    operation: str
    message_id: str
    error: str | None = None
    already_stored: bool = False


@dataclass(frozen=True)
class BackendResponse:
    """What the backend returned.

    status_code is None when no response was obtained at all (DNS, connect,
    timeout); error then carries the transport failure.
    """

    status_code: int | None
    body: str = ""
    error: str | None = None

    @property
    def received(self) -> bool:
        return self.status_code is not None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and self.status_code < 300

    @property
    def recorded_status(self) -> int:
        return self.status_code if self.status_code is not None else NO_RESPONSE_STATUS


@dataclass(frozen=True)
class RelayOutcome:
    """Terminal result of one consumer invocation."""

    message_id: str
    group_id: str | None
    state: RelayState
    decision: RelayDecision
    response: BackendResponse
    flags: ControlFlags
    stored: bool
    recorded: bool

    @property
    def status_code(self) -> int | None:
        return self.response.status_code
