from __future__ import annotations

import io
import json
import os
import sys
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import boto3
import pytest
import requests
from botocore.exceptions import ClientError
from moto import mock_aws

# Add project root and relay-lib to path
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src" / "relay-lib" / "src"))

import src.subscribe.handler as subscribe_handler
from src.faux_backend.handler import forced_status_code
from src.subscribe.handler import RelayConsumer, handler
from webhook_relay.backend import BackendInvoker
from webhook_relay.config import SubscribeConfig
from webhook_relay.exceptions import (
    BackendDeliveryError,
    ConfigurationError,
    RecordBatchError,
    UndecodableMessageError,
)
from webhook_relay.models import (
    NO_RESPONSE_STATUS,
    UNKNOWN_MESSAGE_ID,
    EventBody,
    EventRequest,
    RelayDecision,
    RelayState,
)
from webhook_relay.reporting import ErrorReporter
from webhook_relay.store import MessageStore

REGION = "us-east-1"
TABLE_NAME = "webhook-messages"
BACKEND_URL = "https://backend.example.com/prod/"


class FakeLambdaContext:
    function_name = "subscribe"
    memory_limit_in_mb = 256
    invoked_function_arn = "arn:aws:lambda:us-east-1:111111111111:function:subscribe"
    aws_request_id = "req-123"

    def __init__(self, remaining_ms: int = 30000) -> None:
        self._remaining_ms = remaining_ms

    def get_remaining_time_in_millis(self) -> int:
        return self._remaining_ms


class FakeBackendSession:
    """Answers like the faux backend: 200 unless the body forces a status."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.error: Exception | None = None

    def request(self, method: str, url: str, **kwargs: Any) -> Any:
        data = kwargs.get("data")
        body = data.decode("utf-8") if data is not None else None
        self.calls.append({"method": method, "url": url, "body": body, **kwargs})
        if self.error is not None:
            raise self.error
        response = MagicMock()
        response.status_code = forced_status_code(body)
        response.text = json.dumps({"msg": "Event received"})
        return response


@pytest.fixture
def aws_credentials():
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"  # pragma: allowlist secret
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"  # pragma: allowlist secret
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = REGION
    os.environ["AWS_REGION"] = REGION


@pytest.fixture
def table(aws_credentials):
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name=REGION)
        yield dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "id", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )


@pytest.fixture
def session() -> FakeBackendSession:
    return FakeBackendSession()


@pytest.fixture
def reporter() -> MagicMock:
    return MagicMock(spec=ErrorReporter)


@pytest.fixture
def config() -> SubscribeConfig:
    return SubscribeConfig(
        table_name=TABLE_NAME,
        backend_url=BACKEND_URL,
        region=REGION,
        backend_timeout_seconds=5.0,
    )


@pytest.fixture
def consumer(table, session, reporter, config) -> RelayConsumer:
    dynamodb = boto3.resource("dynamodb", region_name=REGION)
    store = MessageStore(TABLE_NAME, dynamodb_resource=dynamodb)
    invoker = BackendInvoker(BACKEND_URL, timeout_seconds=5.0, session=session)
    return RelayConsumer(config, store=store, invoker=invoker, reporter=reporter)


def _record(
    body: dict | str | None = None,
    *,
    message_id: str | None = "m-1",
    group_id: str | None = "grouping-disabled",
    path: str = "/health",
    query: dict[str, str] | None = None,
) -> dict[str, Any]:
    if isinstance(body, dict):
        body = json.dumps(body)
    envelope = EventBody(
        request=EventRequest(
            http_method="POST",
            path=path,
            headers={"content-type": "application/json", "X-Api-Key": "ignored"},
            body=body,
            query_string_parameters=query,
        ),
        received_timestamp=1700000000000,
    )
    record: dict[str, Any] = {
        "receiptHandle": "rh",
        "body": envelope.to_message_body(),
        "attributes": {"MessageGroupId": group_id} if group_id else {},
        "eventSource": "aws:sqs",
    }
    if message_id is not None:
        record["messageId"] = message_id
    return record


def _item(table, message_id: str = "m-1") -> dict[str, Any] | None:
    return table.get_item(Key={"id": message_id}, ConsistentRead=True).get("Item")


# ---------------------------------------------------------------------------
# Outcome scenarios
# ---------------------------------------------------------------------------


def test_successful_relay_is_acked_and_recorded(consumer, table, session, reporter):
    outcome = consumer.handle_record(_record({"order_id": "123456"}))

    assert outcome.decision == RelayDecision.ACK
    assert outcome.state == RelayState.RECORDED
    assert outcome.status_code == 200
    assert outcome.stored and outcome.recorded

    item = _item(table)
    assert item["backend_response_status_code"] == 200
    assert item["message_id"] == "m-1"
    assert json.loads(item["request"])["path"] == "/health"
    assert session.calls[0]["method"] == "POST"
    assert session.calls[0]["url"] == f"{BACKEND_URL}health"
    reporter.capture_message.assert_not_called()


def test_bad_status_consumed_quietly(consumer, table, reporter):
    body = {
        "faux_backend_force_status_code": 404,
        "suppress_sentry": True,
        "consume_bad_messages": True,
    }
    outcome = consumer.handle_record(_record(body))

    assert outcome.decision == RelayDecision.ACK
    assert outcome.status_code == 404
    assert _item(table)["backend_response_status_code"] == 404
    reporter.capture_message.assert_not_called()


def test_bad_status_consumed_and_reported(consumer, table, reporter):
    body = {"faux_backend_force_status_code": 500, "consume_bad_messages": True}
    outcome = consumer.handle_record(_record(body))

    assert outcome.decision == RelayDecision.ACK
    assert _item(table)["backend_response_status_code"] == 500
    reporter.capture_message.assert_called_once()
    message = reporter.capture_message.call_args.args[0]
    assert "Status 500" in message


def test_bad_status_is_redelivered(consumer, table, reporter):
    outcome = consumer.handle_record(_record({"faux_backend_force_status_code": 401}))

    assert outcome.decision == RelayDecision.REDELIVER
    assert outcome.status_code == 401
    assert _item(table)["backend_response_status_code"] == 401
    reporter.capture_message.assert_called_once()


def test_redirect_status_counts_as_failure(consumer):
    outcome = consumer.handle_record(_record({"faux_backend_force_status_code": 302}))
    assert outcome.decision == RelayDecision.REDELIVER


def test_no_backend_response_records_sentinel(consumer, table, session):
    session.error = requests.ConnectionError("connection refused")
    outcome = consumer.handle_record(_record({}))

    assert outcome.decision == RelayDecision.REDELIVER
    assert outcome.status_code is None
    assert _item(table)["backend_response_status_code"] == NO_RESPONSE_STATUS


def test_no_backend_response_consumed_when_flagged(consumer, session):
    session.error = requests.Timeout("read timed out")
    outcome = consumer.handle_record(_record({"consume_bad_messages": True}))
    assert outcome.decision == RelayDecision.ACK


def test_redelivery_overwrites_status(consumer, table):
    consumer.handle_record(_record({"faux_backend_force_status_code": 500}))
    consumer.handle_record(_record({}))
    assert _item(table)["backend_response_status_code"] == 200


def test_redelivery_keeps_stored_record_and_prior_status(consumer, table, session, monkeypatch):
    consumer.handle_record(_record({}))
    seen_at_backend_call: list[dict[str, Any]] = []
    forward = session.request

    def request(method, url, **kwargs):
        seen_at_backend_call.append(dict(_item(table)))
        return forward(method, url, **kwargs)

    monkeypatch.setattr(session, "request", request)
    outcome = consumer.handle_record(_record({}))

    assert outcome.stored is True
    assert seen_at_backend_call[0]["backend_response_status_code"] == 200
    assert seen_at_backend_call[0]["received_timestamp"] == 1700000000000


# ---------------------------------------------------------------------------
# Request forwarding
# ---------------------------------------------------------------------------


def test_forwards_query_and_content_type(consumer, session):
    consumer.handle_record(_record({}, path="/orders/1", query={"hello": "world"}))

    call = session.calls[0]
    assert call["url"] == f"{BACKEND_URL}orders/1?hello=world"
    assert call["headers"] == {"Content-Type": "application/json"}
    assert json.loads(call["body"]) == {}


def test_query_parameters_are_stored(consumer, table):
    consumer.handle_record(_record({}, query={"hello": "world"}))
    request = json.loads(_item(table)["request"])
    assert request["queryStringParameters"] == {"hello": "world"}


def test_backend_timeout_fits_remaining_time(consumer, session):
    consumer.handle_record(_record({}), remaining_ms=3000)
    assert session.calls[0]["timeout"] == 2.0


def test_backend_timeout_has_a_floor(consumer, session):
    consumer.handle_record(_record({}), remaining_ms=1200)
    assert session.calls[0]["timeout"] == subscribe_handler.MIN_BACKEND_TIMEOUT_SECONDS


def test_backend_timeout_defaults_to_configured(consumer, session):
    consumer.handle_record(_record({}))
    assert session.calls[0]["timeout"] == 5.0


# ---------------------------------------------------------------------------
# Degraded inputs and store failures
# ---------------------------------------------------------------------------


def test_single_record_invariant(consumer, table, session):
    event = {"Records": [_record({}, message_id="a"), _record({}, message_id="b")]}

    with pytest.raises(RecordBatchError):
        consumer.handle_event(event)

    assert table.scan()["Count"] == 0
    assert session.calls == []


def test_empty_event_is_a_noop(consumer, session):
    assert consumer.handle_event({"Records": []}) is None
    assert session.calls == []


def test_undecodable_body_is_redelivered_without_backend_call(consumer, session, reporter):
    record = _record({})
    record["body"] = "not an envelope"

    outcome = consumer.handle_record(record)

    assert outcome.decision == RelayDecision.REDELIVER
    assert outcome.state == RelayState.RECEIVED
    assert session.calls == []
    reporter.capture_exception.assert_called_once()


def test_non_numeric_timestamp_is_undecodable(consumer, table, session):
    record = _record({})
    envelope = json.loads(record["body"])
    envelope["received_timestamp"] = ["not", "a", "number"]
    record["body"] = json.dumps(envelope)

    outcome = consumer.handle_record(record)

    assert outcome.state == RelayState.RECEIVED
    assert outcome.decision == RelayDecision.REDELIVER
    assert session.calls == []
    assert _item(table) is None


def test_missing_message_id_uses_placeholder(consumer, table, reporter):
    outcome = consumer.handle_record(_record({}, message_id=None))

    assert outcome.message_id == UNKNOWN_MESSAGE_ID
    assert _item(table, UNKNOWN_MESSAGE_ID) is not None
    messages = [c.args[0] for c in reporter.capture_message.call_args_list]
    assert "messageId is null in record" in messages


def test_missing_group_id_is_reported(consumer, reporter):
    outcome = consumer.handle_record(_record({}, group_id=None))

    assert outcome.decision == RelayDecision.ACK
    messages = [c.args[0] for c in reporter.capture_message.call_args_list]
    assert "MessageGroupId missing in event" in messages


def test_malformed_body_is_still_relayed(consumer, session):
    outcome = consumer.handle_record(_record("plain text payload"))

    assert outcome.decision == RelayDecision.ACK
    assert outcome.flags.suppress_sentry is False
    assert session.calls[0]["body"] == "plain text payload"


def test_store_failures_do_not_change_outcome(session, reporter, config):
    table = MagicMock()
    error = ClientError(
        {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow"}},
        "PutItem",
    )
    table.put_item.side_effect = error
    table.update_item.side_effect = error
    resource = MagicMock()
    resource.Table.return_value = table
    consumer = RelayConsumer(
        config,
        store=MessageStore(TABLE_NAME, dynamodb_resource=resource),
        invoker=BackendInvoker(BACKEND_URL, session=session),
        reporter=reporter,
    )

    outcome = consumer.handle_record(_record({}))

    assert outcome.decision == RelayDecision.ACK
    assert outcome.stored is False
    assert outcome.recorded is False
    messages = [c.args[0] for c in reporter.capture_message.call_args_list]
    assert messages == [
        "Failed to store message in DynamoDB: m-1",
        "Failed to store message in DynamoDB: m-1",
    ]


# ---------------------------------------------------------------------------
# Lambda entry point
# ---------------------------------------------------------------------------


@pytest.fixture
def installed_consumer(consumer):
    subscribe_handler._relay_consumer = consumer
    yield consumer
    subscribe_handler._relay_consumer = None


@pytest.fixture
def log_lines():
    buffer = io.StringIO()
    log_handler = subscribe_handler.logger.registered_handler
    previous = log_handler.setStream(buffer)
    yield lambda: [json.loads(line) for line in buffer.getvalue().splitlines()]
    log_handler.setStream(previous)


def test_lambda_handler_acks_by_returning(installed_consumer, table):
    assert handler({"Records": [_record({})]}, FakeLambdaContext()) is None
    assert _item(table)["backend_response_status_code"] == 200


def test_lambda_handler_logs_invocation_and_record_keys(installed_consumer, log_lines):
    handler({"Records": [_record({})]}, FakeLambdaContext())

    completed = [
        line for line in log_lines() if line["message"].startswith("Completed processing record")
    ]
    assert len(completed) == 1
    line = completed[0]
    assert line["service"] == "subscribe"
    assert line["function_request_id"] == "req-123"
    assert line["message_id"] == "m-1"
    assert line["group_id"] == "grouping-disabled"
    assert line["backend_status_code"] == 200
    assert "cold_start" in line


def test_lambda_handler_clears_record_keys_between_invocations(installed_consumer, log_lines):
    handler({"Records": [_record({}, message_id="first")]}, FakeLambdaContext())
    handler({"Records": []}, FakeLambdaContext())

    no_records = [line for line in log_lines() if line["message"] == "Invoked with no records"]
    assert no_records
    assert "message_id" not in no_records[0]


def test_lambda_handler_raises_to_redeliver(installed_consumer):
    event = {"Records": [_record({"faux_backend_force_status_code": 500})]}

    with pytest.raises(BackendDeliveryError) as exc_info:
        handler(event, FakeLambdaContext())

    assert exc_info.value.status_code == 500
    assert exc_info.value.message_id == "m-1"


def test_lambda_handler_raises_distinct_error_for_undecodable_message(installed_consumer, session):
    record = _record({})
    record["body"] = "not an envelope"

    with pytest.raises(UndecodableMessageError) as exc_info:
        handler({"Records": [record]}, FakeLambdaContext())

    assert exc_info.value.message_id == "m-1"
    assert "backend" not in str(exc_info.value)
    assert session.calls == []


def test_lambda_handler_rejects_batches(installed_consumer):
    event = {"Records": [_record({}, message_id="a"), _record({}, message_id="b")]}
    with pytest.raises(RecordBatchError):
        handler(event, FakeLambdaContext())


def test_lambda_handler_fails_fast_without_configuration(monkeypatch):
    subscribe_handler._relay_consumer = None
    monkeypatch.delenv("TABLE_NAME", raising=False)
    monkeypatch.delenv("BACKEND_URL", raising=False)
    monkeypatch.delenv("SENTRY_DSN", raising=False)

    with pytest.raises(ConfigurationError) as exc_info:
        handler({"Records": []}, FakeLambdaContext())
    assert exc_info.value.missing == ["TABLE_NAME", "BACKEND_URL"]
