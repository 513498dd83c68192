"""
webhook_relay.config — Process-wide configuration for the relay Lambdas.

Read once from the environment at cold start and passed explicitly into the
ingestion handler and relay consumer.  Missing required values raise
ConfigurationError so a misconfigured function fails on its first
invocation rather than half-way through a record.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from webhook_relay.exceptions import ConfigurationError

DEFAULT_REGION = "us-east-1"
DEFAULT_BACKEND_TIMEOUT_SECONDS = 5.0


def _optional(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name, "").strip()
    return value or None


def _require(environ: Mapping[str, str], names: tuple[str, ...]) -> dict[str, str]:
    values = {name: _optional(environ, name) for name in names}
    missing = [name for name, value in values.items() if value is None]
    if missing:
        raise ConfigurationError(missing)
    return {name: str(value) for name, value in values.items()}


def _region(environ: Mapping[str, str]) -> str:
    return _optional(environ, "AWS_REGION") or _optional(environ, "AWS_DEFAULT_REGION") or (
        DEFAULT_REGION
    )


@dataclass(frozen=True)
class PublishConfig:
    queue_url: str
    region: str
    sentry_dsn: str | None = None
    group_key_field: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PublishConfig:
        env = os.environ if environ is None else environ
        required = _require(env, ("QUEUE_URL",))
        return cls(
            queue_url=required["QUEUE_URL"],
            region=_region(env),
            sentry_dsn=_optional(env, "SENTRY_DSN"),
            group_key_field=_optional(env, "GROUP_KEY_FIELD"),
        )


@dataclass(frozen=True)
class SubscribeConfig:
    table_name: str
    backend_url: str
    region: str
    backend_timeout_seconds: float = DEFAULT_BACKEND_TIMEOUT_SECONDS
    sentry_dsn: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SubscribeConfig:
        env = os.environ if environ is None else environ
        required = _require(env, ("TABLE_NAME", "BACKEND_URL"))
        timeout_raw = _optional(env, "BACKEND_TIMEOUT_SECONDS")
        try:
            timeout = float(timeout_raw) if timeout_raw else DEFAULT_BACKEND_TIMEOUT_SECONDS
        except ValueError as exc:
            raise ValueError("BACKEND_TIMEOUT_SECONDS must be a number") from exc
        if timeout <= 0:
            raise ValueError("BACKEND_TIMEOUT_SECONDS must be positive")
        return cls(
            table_name=required["TABLE_NAME"],
            backend_url=required["BACKEND_URL"],
            region=_region(env),
            backend_timeout_seconds=timeout,
            sentry_dsn=_optional(env, "SENTRY_DSN"),
        )
