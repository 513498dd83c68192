"""
webhook_relay.store — Durable record store for relayed webhook calls.

Best-effort audit persistence.  insert() and update() never raise: a
DynamoDB outage must not block webhook relay, so failures come back as a
StoreResult with ok=False and the caller decides how loudly to report.

Records are keyed by the SQS message id.  insert() is conditional on the id
being absent, so a redelivery leaves the first stored record (and any status
already recorded on it) untouched; update() is a last-write-wins upsert.
"""

from __future__ import annotations

import os
from decimal import Decimal
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from webhook_relay.models import StoredRecord, StoreResult

logger = Logger(service="webhook-relay-lib")

_KEY_ATTRIBUTE = "id"


def _ddb_value(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def build_update_expression(
    fields: dict[str, Any],
) -> tuple[str, dict[str, str], dict[str, Any]]:
    """Build a SET expression with placeholder names and values for every field."""
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    set_parts: list[str] = []
    for idx, (name, raw_value) in enumerate(fields.items(), start=1):
        name_key = f"#n{idx}"
        value_key = f":v{idx}"
        names[name_key] = name
        values[value_key] = _ddb_value(raw_value)
        set_parts.append(f"{name_key} = {value_key}")
    return "SET " + ", ".join(set_parts), names, values


class MessageStore:
    """DynamoDB table of Stored Records keyed by message id."""

    def __init__(
        self,
        table_name: str,
        *,
        region: str | None = None,
        dynamodb_resource: Any = None,
    ) -> None:
        self._table_name = table_name
        region_name = region or os.environ.get("AWS_REGION")
        self._dynamodb: Any = dynamodb_resource or boto3.resource(
            "dynamodb", region_name=region_name
        )

    @property
    def table_name(self) -> str:
        return self._table_name

    def _table(self) -> Any:
        return self._dynamodb.Table(self._table_name)

    def insert(self, message_id: str, fields: dict[str, Any]) -> StoreResult:
        """Create the record for message_id unless it already exists.  Never raises.

        An existing record counts as success with already_stored=True.
        """
        item = {k: _ddb_value(v) for k, v in fields.items()}
        item[_KEY_ATTRIBUTE] = message_id
        try:
            self._table().put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(#id)",
                ExpressionAttributeNames={"#id": _KEY_ATTRIBUTE},
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                logger.info("Message already stored", extra={"message_id": message_id})
                return StoreResult(
                    ok=True, operation="insert", message_id=message_id, already_stored=True
                )
            return self._failed("insert", message_id, exc)
        except Exception as exc:
            return self._failed("insert", message_id, exc)
        logger.info("Stored request info for message", extra={"message_id": message_id})
        return StoreResult(ok=True, operation="insert", message_id=message_id)

    def _failed(self, operation: str, message_id: str, exc: Exception) -> StoreResult:
        logger.exception(
            f"Failed to {operation} message in DynamoDB",
            extra={"message_id": message_id, "table_name": self._table_name},
        )
        return StoreResult(ok=False, operation=operation, message_id=message_id, error=str(exc))

    def insert_record(self, record: StoredRecord) -> StoreResult:
        return self.insert(record.message_id, record.to_item())

    def update(self, message_id: str, fields: dict[str, Any]) -> StoreResult:
        """Upsert fields onto the record for message_id.  Last write wins.  Never raises."""
        if not fields:
            return StoreResult(ok=True, operation="update", message_id=message_id)
        update_expression, names, values = build_update_expression(fields)
        try:
            self._table().update_item(
                Key={_KEY_ATTRIBUTE: message_id},
                UpdateExpression=update_expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except Exception as exc:
            return self._failed("update", message_id, exc)
        logger.info(
            "Stored update for message",
            extra={"message_id": message_id, "fields": list(fields)},
        )
        return StoreResult(ok=True, operation="update", message_id=message_id)

    def get(self, message_id: str) -> dict[str, Any] | None:
        """Read a record back.  Verification only; the relay never reads."""
        response = self._table().get_item(Key={_KEY_ATTRIBUTE: message_id}, ConsistentRead=True)
        return response.get("Item")
