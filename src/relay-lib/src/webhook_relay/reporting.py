"""
webhook_relay.reporting — Sentry error reporting for the relay Lambdas.

init_sentry() runs once per cold start.  Without a DSN the SDK is never
initialised and every capture is a no-op inside sentry_sdk itself.

ErrorReporter is built per invocation so the suppress_sentry test flag can
silence one call without touching the global client.
"""

from __future__ import annotations

from typing import Any

import sentry_sdk
from aws_lambda_powertools import Logger
from sentry_sdk.integrations.aws_lambda import AwsLambdaIntegration

logger = Logger(service="webhook-relay-lib")


def init_sentry(
    dsn: str | None,
    *,
    stage: str,
    environment: str | None = None,
    ignore_errors: list[type[BaseException]] | None = None,
) -> bool:
    """Initialise the Sentry SDK for a Lambda stage.  Returns False without a DSN.

    ignore_errors lists exception types the Lambda integration must not
    report when they escape the handler (they are reported explicitly,
    subject to suppression, before being raised).
    """
    if not dsn:
        logger.info("SENTRY_DSN not set, error reporting disabled", extra={"lambda_stage": stage})
        return False
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[AwsLambdaIntegration(timeout_warning=True)],
        ignore_errors=list(ignore_errors or []),
    )
    sentry_sdk.set_tag("lambda_stage", stage)
    return True


class ErrorReporter:
    """Thin wrapper over sentry_sdk.

    Never raises: a reporting failure is logged and swallowed so it cannot
    mask the error being reported.
    """

    def __init__(self, *, suppressed: bool = False) -> None:
        self.suppressed = suppressed

    def capture_exception(
        self,
        exc: BaseException,
        *,
        extra: dict[str, Any] | None = None,
        tags: dict[str, Any] | None = None,
    ) -> None:
        if self.suppressed:
            logger.info("Error report suppressed", extra={"error": str(exc)})
            return
        try:
            with sentry_sdk.new_scope() as scope:
                for key, value in (extra or {}).items():
                    scope.set_extra(key, value)
                for key, value in (tags or {}).items():
                    scope.set_tag(key, value)
                sentry_sdk.capture_exception(exc)
        except Exception:
            logger.exception("Failed to report exception to Sentry")

    def capture_message(
        self,
        message: str,
        *,
        level: str = "error",
        extra: dict[str, Any] | None = None,
    ) -> None:
        if self.suppressed:
            logger.info("Error report suppressed", extra={"report": message})
            return
        try:
            with sentry_sdk.new_scope() as scope:
                for key, value in (extra or {}).items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_message(message, level=level)
        except Exception:
            logger.exception("Failed to report message to Sentry")
