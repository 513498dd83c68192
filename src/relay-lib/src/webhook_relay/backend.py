"""
webhook_relay.backend — Forward a relayed webhook call to the backend.

Exactly one HTTP attempt per call.  Retrying happens only through SQS
redelivery of the whole pipeline, never here.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode, urljoin

import requests
from aws_lambda_powertools import Logger

from webhook_relay.models import BackendResponse

logger = Logger(service="webhook-relay-lib")


class BackendInvoker:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def build_url(self, path: str, query: dict[str, str] | None = None) -> str:
        """Join path onto the base URL.

        A leading slash would make the path absolute and drop any path on the
        base URL (API Gateway stage prefixes such as /prod/), so it is removed.
        """
        relative = path[1:] if path.startswith("/") else path
        url = urljoin(self._base_url, relative)
        if query:
            url = f"{url}?{urlencode(query)}"
        return url

    def forward(
        self,
        method: str,
        url: str,
        body: str | None,
        *,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> BackendResponse:
        """Send one request.  HTTP errors and transport failures are returned, not raised."""
        kwargs: dict[str, Any] = {
            "timeout": timeout if timeout is not None else self._timeout_seconds,
        }
        if body is not None:
            kwargs["data"] = body.encode("utf-8")
        if headers:
            kwargs["headers"] = headers
        try:
            response = self._session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            logger.warning(
                "No response from backend",
                extra={"url": url, "method": method, "error": str(exc)},
            )
            return BackendResponse(status_code=None, error=f"{type(exc).__name__}: {exc}")
        logger.info(
            "Backend call response",
            extra={"url": url, "method": method, "status_code": response.status_code},
        )
        return BackendResponse(status_code=response.status_code, body=response.text)
