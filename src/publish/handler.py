"""
publish.handler — Webhook ingestion Lambda.

Accepts any method/path from API Gateway, wraps the call in an envelope and
publishes it to the SQS FIFO queue under a MessageGroupId.  The queue has
content-based deduplication, so byte-identical envelopes inside the dedup
window collapse onto the first publish.

Responses:
    200  queued, body carries message_id
    400  no MessageGroupId could be derived, nothing published
    500  SQS publish failed

Nothing propagates past this handler except configuration errors at cold start.
"""

from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from typing import Any

import boto3
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.exceptions import ClientError
from webhook_relay.config import PublishConfig
from webhook_relay.exceptions import ConfigurationError, GroupKeyError
from webhook_relay.grouping import GroupKeyPolicy, policy_for
from webhook_relay.models import ControlFlags, EventBody, EventRequest
from webhook_relay.reporting import ErrorReporter, init_sentry

logger = Logger(service="publish")
tracer = Tracer()

LAMBDA_STAGE = "publish"


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body),
    }


class IngestionHandler:
    def __init__(
        self,
        config: PublishConfig,
        *,
        sqs_client: Any = None,
        group_key_policy: GroupKeyPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._sqs: Any = sqs_client or boto3.client("sqs", region_name=config.region)
        self._group_key_policy = group_key_policy or policy_for(config.group_key_field)
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _control_flags(self, request: EventRequest) -> ControlFlags:
        # Only suppress_sentry matters here; the test rig sets it on unhappy paths.
        try:
            return ControlFlags.from_request(request)
        except ValueError:
            logger.warning("Error parsing debug context from body")
            return ControlFlags()

    def handle(self, event: dict[str, Any]) -> dict[str, Any]:
        request = EventRequest.from_api_gateway(event)
        flags = self._control_flags(request)
        reporter = ErrorReporter(suppressed=flags.suppress_sentry)

        try:
            group_key = self._group_key_policy(request)
        except GroupKeyError as exc:
            logger.warning("Unable to determine MessageGroupId", extra={"reason": str(exc)})
            return _response(400, {"msg": "Unable to determine MessageGroupId"})
        except Exception:
            logger.exception("Group key policy failed")
            return _response(400, {"msg": "Unable to determine MessageGroupId"})

        envelope = EventBody(
            request=request,
            received_timestamp=self._now_ms(),
            group_key=group_key,
        )
        response, message_id = self._publish(envelope, reporter)

        summary = envelope.with_publish_result(
            return_code=response["statusCode"],
            body=response["body"],
            message_id=message_id,
        )
        if response["statusCode"] == 200:
            logger.info("Successfully published event to SQS", extra={"event_body": summary})
        else:
            logger.error("Failed to publish event to SQS", extra={"event_body": summary})
        return response

    def _publish(
        self, envelope: EventBody, reporter: ErrorReporter
    ) -> tuple[dict[str, Any], str | None]:
        try:
            result = self._sqs.send_message(
                QueueUrl=self._config.queue_url,
                MessageGroupId=envelope.group_key,
                MessageBody=envelope.to_message_body(),
            )
        except ClientError as exc:
            msg = "Error submitting event to SQS"
            error = exc.response.get("Error", {})
            logger.exception(msg, extra={"error_code": error.get("Code")})
            reporter.capture_exception(
                exc,
                extra={"sqs_response": exc.response},
                tags={
                    "code": error.get("Code"),
                    "message": error.get("Message"),
                    "statusCode": exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode"),
                },
            )
            body = {
                "msg": msg,
                "error": {"code": error.get("Code"), "message": error.get("Message")},
            }
            return _response(500, body), None
        except Exception as exc:
            logger.exception("Exception calling sqs.send_message")
            reporter.capture_exception(exc)
            return _response(500, {"msg": "See logs"}), None

        message_id = str(result["MessageId"])
        return (
            _response(
                200,
                {
                    "msg": f"You have added a message to the queue! Message ID is {message_id}",
                    "message_id": message_id,
                },
            ),
            message_id,
        )


_ingestion_handler: IngestionHandler | None = None


def get_ingestion_handler() -> IngestionHandler:
    """Build the handler once per cold start, failing fast on missing configuration."""
    global _ingestion_handler
    if _ingestion_handler is None:
        try:
            config = PublishConfig.from_env()
        except ConfigurationError as exc:
            logger.error("Invalid publish configuration", extra={"missing": exc.missing})
            init_sentry(os.environ.get("SENTRY_DSN"), stage=LAMBDA_STAGE)
            ErrorReporter().capture_message(str(exc))
            raise
        init_sentry(config.sentry_dsn, stage=LAMBDA_STAGE)
        _ingestion_handler = IngestionHandler(config)
    return _ingestion_handler


@logger.inject_lambda_context(correlation_id_path=correlation_paths.API_GATEWAY_REST)
@tracer.capture_lambda_handler
def handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    """Publish Lambda entry point."""
    return get_ingestion_handler().handle(event)
