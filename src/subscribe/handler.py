"""
subscribe.handler — Relay consumer Lambda.

Triggered by the SQS FIFO event source with batch size 1.  Per invocation:

    RECEIVED -> STORED -> BACKEND_CALLED -> RECORDED -> ACK | REDELIVER

  Stage 1  put the request into DynamoDB (best effort)
  Stage 2  forward the request to the backend, one attempt
  Stage 3  record the backend status code on the same item (best effort)

A backend status >= 300, or no response at all, fails the invocation so SQS
redelivers the message, unless the body carries consume_bad_messages.
Store failures are reported and never change the outcome.  More than one
record per invocation aborts before anything is written.
"""

from __future__ import annotations

import os
from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext
from webhook_relay.backend import BackendInvoker
from webhook_relay.config import SubscribeConfig
from webhook_relay.exceptions import (
    BackendDeliveryError,
    ConfigurationError,
    RecordBatchError,
    UndecodableMessageError,
)
from webhook_relay.models import (
    UNKNOWN_MESSAGE_ID,
    BackendResponse,
    ControlFlags,
    EventBody,
    RelayDecision,
    RelayOutcome,
    RelayState,
    StoredRecord,
    StoreResult,
)
from webhook_relay.reporting import ErrorReporter, init_sentry
from webhook_relay.store import MessageStore

logger = Logger(service="subscribe")
tracer = Tracer()

LAMBDA_STAGE = "subscribe"

# Leave room to record the outcome after the backend call.
TIMEOUT_SAFETY_MARGIN_MS = 1000
MIN_BACKEND_TIMEOUT_SECONDS = 0.5


def record_to_message_id(record: dict[str, Any], reporter: ErrorReporter) -> str:
    """SQS message id of the record.  Never raises; used while logging errors."""
    message_id = record.get("messageId")
    if message_id:
        return str(message_id)
    logger.error("Failed to determine message_id for record", extra={"record": record})
    reporter.capture_message("messageId is null in record", extra={"record": record})
    return UNKNOWN_MESSAGE_ID


class RelayConsumer:
    def __init__(
        self,
        config: SubscribeConfig,
        *,
        store: MessageStore | None = None,
        invoker: BackendInvoker | None = None,
        reporter: ErrorReporter | None = None,
    ) -> None:
        self._config = config
        self._store = store or MessageStore(config.table_name, region=config.region)
        self._invoker = invoker or BackendInvoker(
            config.backend_url, timeout_seconds=config.backend_timeout_seconds
        )
        self._reporter = reporter or ErrorReporter()

    def handle_event(
        self, event: dict[str, Any], *, remaining_ms: int | None = None
    ) -> RelayOutcome | None:
        records = event.get("Records") or []
        logger.info(f"Received {len(records)} events")
        if len(records) > 1:
            raise RecordBatchError(len(records))
        if not records:
            logger.warning("Invoked with no records")
            return None
        return self.handle_record(records[0], remaining_ms=remaining_ms)

    def handle_record(
        self, record: dict[str, Any], *, remaining_ms: int | None = None
    ) -> RelayOutcome:
        message_id = record_to_message_id(record, self._reporter)
        group_id = (record.get("attributes") or {}).get("MessageGroupId")
        logger.append_keys(message_id=message_id, group_id=group_id)

        try:
            envelope = EventBody.from_message_body(record.get("body") or "", group_key=group_id)
        except ValueError as exc:
            # Nothing can be relayed; leave it to the queue's redrive policy.
            logger.exception("Undecodable queue message body")
            self._reporter.capture_exception(exc, extra={"record": record})
            return RelayOutcome(
                message_id=message_id,
                group_id=group_id,
                state=RelayState.RECEIVED,
                decision=RelayDecision.REDELIVER,
                response=BackendResponse(status_code=None, error="undecodable envelope"),
                flags=ControlFlags(),
                stored=False,
                recorded=False,
            )

        request = envelope.request
        if not group_id:
            self._reporter.capture_message(
                "MessageGroupId missing in event", extra={"event_body": request.to_dict()}
            )
        flags = self._control_flags(envelope)

        stored = self._store_request(message_id, envelope)
        response, backend_url = self._call_backend(envelope, remaining_ms)
        recorded = self._record_response(message_id, response)

        decision = self._decide(message_id, response, flags, backend_url, envelope)
        return RelayOutcome(
            message_id=message_id,
            group_id=group_id,
            state=RelayState.RECORDED,
            decision=decision,
            response=response,
            flags=flags,
            stored=stored.ok,
            recorded=recorded.ok,
        )

    def _control_flags(self, envelope: EventBody) -> ControlFlags:
        try:
            return ControlFlags.from_request(envelope.request)
        except ValueError:
            logger.warning("Error parsing debug context from body")
            return ControlFlags()

    # Stage 1
    def _store_request(self, message_id: str, envelope: EventBody) -> StoreResult:
        record = StoredRecord(
            message_id=message_id,
            group_id=envelope.group_key,
            received_timestamp=envelope.received_timestamp,
            request=envelope.request,
        )
        result = self._store.insert_record(record)
        if not result.ok:
            self._reporter.capture_message(
                f"Failed to store message in DynamoDB: {message_id}",
                extra={"error": result.error, "stage": "insert"},
            )
        return result

    # Stage 2
    def _call_backend(
        self, envelope: EventBody, remaining_ms: int | None
    ) -> tuple[BackendResponse, str | None]:
        request = envelope.request
        url = None
        try:
            url = self._invoker.build_url(request.path, request.query_string_parameters)
            headers = {}
            content_type = request.header("Content-Type")
            if content_type:
                headers["Content-Type"] = content_type
            logger.info(f"Contacting backend on {url}")
            response = self._invoker.forward(
                request.http_method,
                url,
                request.body,
                headers=headers,
                timeout=self._backend_timeout(remaining_ms),
            )
        except Exception as exc:
            logger.exception("Exception calling backend", extra={"backend_url": url})
            response = BackendResponse(status_code=None, error=f"{type(exc).__name__}: {exc}")
        return response, url

    def _backend_timeout(self, remaining_ms: int | None) -> float:
        configured = self._config.backend_timeout_seconds
        if remaining_ms is None:
            return configured
        budget = (remaining_ms - TIMEOUT_SAFETY_MARGIN_MS) / 1000
        return max(MIN_BACKEND_TIMEOUT_SECONDS, min(configured, budget))

    # Stage 3
    def _record_response(self, message_id: str, response: BackendResponse) -> StoreResult:
        result = self._store.update(
            message_id, {"backend_response_status_code": response.recorded_status}
        )
        if not result.ok:
            self._reporter.capture_message(
                f"Failed to store message in DynamoDB: {message_id}",
                extra={"error": result.error, "stage": "update"},
            )
        return result

    def _decide(
        self,
        message_id: str,
        response: BackendResponse,
        flags: ControlFlags,
        backend_url: str | None,
        envelope: EventBody,
    ) -> RelayDecision:
        if response.ok:
            return RelayDecision.ACK

        failure = BackendDeliveryError(message_id=message_id, status_code=response.status_code)
        extra = {
            "event_body": envelope.request.to_dict(),
            "group_id": envelope.group_key,
            "backend_url": backend_url,
            "backend_status_code": response.status_code,
            "backend_error": response.error,
            "backend_response_body": response.body[:1024],
        }
        if flags.suppress_sentry:
            logger.info(str(failure), extra=extra)
        else:
            logger.error(str(failure), extra=extra)
            self._reporter.capture_message(str(failure), extra=extra)

        if flags.consume_bad_messages:
            logger.info("Consuming bad message", extra={"message_id": message_id})
            return RelayDecision.ACK
        return RelayDecision.REDELIVER


_relay_consumer: RelayConsumer | None = None


def get_relay_consumer() -> RelayConsumer:
    """Build the consumer once per cold start, failing fast on missing configuration."""
    global _relay_consumer
    if _relay_consumer is None:
        try:
            config = SubscribeConfig.from_env()
        except ConfigurationError as exc:
            logger.error("Invalid subscribe configuration", extra={"missing": exc.missing})
            init_sentry(os.environ.get("SENTRY_DSN"), stage=LAMBDA_STAGE)
            ErrorReporter().capture_message(str(exc))
            raise
        init_sentry(
            config.sentry_dsn,
            stage=LAMBDA_STAGE,
            ignore_errors=[BackendDeliveryError, UndecodableMessageError],
        )
        _relay_consumer = RelayConsumer(config)
    return _relay_consumer


def _remaining_ms(context: LambdaContext) -> int | None:
    getter = getattr(context, "get_remaining_time_in_millis", None)
    if getter is None:
        return None
    return int(getter())


@logger.inject_lambda_context(clear_state=True)
@tracer.capture_lambda_handler
def handler(event: dict[str, Any], context: LambdaContext) -> None:
    """Subscribe Lambda entry point.  Raising leaves the message on the queue."""
    outcome = get_relay_consumer().handle_event(event, remaining_ms=_remaining_ms(context))
    if outcome is None:
        return
    if outcome.state == RelayState.RECEIVED:
        raise UndecodableMessageError(message_id=outcome.message_id)
    if outcome.decision == RelayDecision.REDELIVER:
        raise BackendDeliveryError(message_id=outcome.message_id, status_code=outcome.status_code)
    logger.info(
        f"Completed processing record {outcome.message_id}",
        extra={"backend_status_code": outcome.status_code},
    )
