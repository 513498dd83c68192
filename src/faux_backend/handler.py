"""
faux_backend.handler — Stand-in backend for end-to-end tests.

Logs every request it receives and answers {"msg": "Event received"}.
The status code is 200 unless the JSON body carries
faux_backend_force_status_code, which lets the test rig exercise the
relay's failure paths (404, 401, 500 ...).
"""

from __future__ import annotations

import json
from typing import Any

from aws_lambda_powertools import Logger
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext

logger = Logger(service="faux-backend")

DEFAULT_STATUS_CODE = 200


def forced_status_code(body: str | None) -> int:
    if not body:
        return DEFAULT_STATUS_CODE
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return DEFAULT_STATUS_CODE
    if not isinstance(payload, dict):
        return DEFAULT_STATUS_CODE
    raw = payload.get("faux_backend_force_status_code")
    if raw is None or isinstance(raw, bool):
        return DEFAULT_STATUS_CODE
    try:
        status_code = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_STATUS_CODE
    if not 100 <= status_code <= 599:
        return DEFAULT_STATUS_CODE
    return status_code


@logger.inject_lambda_context(correlation_id_path=correlation_paths.API_GATEWAY_REST)
def handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    """Faux backend entry point."""
    logger.info(
        "Backend request received",
        extra={
            "http_method": event.get("httpMethod"),
            "path": event.get("path"),
            "query": event.get("queryStringParameters"),
            "body": event.get("body"),
        },
    )
    status_code = forced_status_code(event.get("body"))
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"msg": "Event received"}),
    }
