"""
webhook_relay.grouping — MessageGroupId derivation.

Messages sharing a group are delivered strictly in order, one at a time;
different groups carry no relative ordering.  The default policy puts
everything in one group, which serialises unrelated webhooks.  Swap in
json_field_group_key (GROUP_KEY_FIELD) to partition by tenant or order id.
"""

from __future__ import annotations

from collections.abc import Callable

from webhook_relay.exceptions import GroupKeyError
from webhook_relay.models import EventRequest

DEFAULT_GROUP_KEY = "grouping-disabled"

# SQS MessageGroupId limit
MAX_GROUP_KEY_LENGTH = 128

GroupKeyPolicy = Callable[[EventRequest], str]


def constant_group_key(request: EventRequest) -> str:
    return DEFAULT_GROUP_KEY


def json_field_group_key(field_name: str) -> GroupKeyPolicy:
    """Policy that groups by a top-level field of the JSON body."""

    def _policy(request: EventRequest) -> str:
        try:
            payload = request.json_body()
        except ValueError as exc:
            raise GroupKeyError("Request body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise GroupKeyError(f"Request body has no '{field_name}' field")
        value = payload.get(field_name)
        if value is None or isinstance(value, (dict, list)):
            raise GroupKeyError(f"Request body has no usable '{field_name}' field")
        key = str(value).strip()
        if not key or len(key) > MAX_GROUP_KEY_LENGTH:
            raise GroupKeyError(f"'{field_name}' is not a valid MessageGroupId")
        return key

    return _policy


def policy_for(group_key_field: str | None) -> GroupKeyPolicy:
    if group_key_field:
        return json_field_group_key(group_key_field)
    return constant_group_key
