#!/usr/bin/env python3
"""
get_outputs.py — Print the CloudFormation outputs of a deployed webhook buffer stack.

The post-deploy checks read the endpoint, table name and region from this
JSON (saved as cdk.out.json):

    {"sqs-webhook-buffer-<env>": {"BufferedEndpoint": "...", "DynamoDBTable": "...", ...}}

Usage:
    uv run python scripts/get_outputs.py <env> [--region us-east-1] > cdk.out.json
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

import boto3

DEFAULT_STACK_NAME_PREFIX = "sqs-webhook-buffer-"
DEFAULT_REGION = "us-east-1"
LIVE_STACK_STATUSES = ("CREATE_COMPLETE", "UPDATE_COMPLETE")


class StackNotFoundError(RuntimeError):
    """Raised when the requested stack is not deployed."""


class StackInspector:
    def __init__(self, client: Any, *, stack_name_prefix: str) -> None:
        self._client = client
        self._prefix = stack_name_prefix

    def list_stacks(self) -> list[dict[str, Any]]:
        """Live stacks whose name starts with the prefix, across all result pages."""
        stacks: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {"StackStatusFilter": list(LIVE_STACK_STATUSES)}
        while True:
            response = self._client.list_stacks(**kwargs)
            stacks.extend(
                summary
                for summary in response.get("StackSummaries", [])
                if str(summary.get("StackName", "")).startswith(self._prefix)
            )
            next_token = response.get("NextToken")
            if not next_token:
                return stacks
            kwargs["NextToken"] = next_token

    def get_stack(self, stack_name: str) -> dict[str, Any]:
        if not stack_name.startswith(self._prefix):
            raise ValueError(
                f"Requested stack name {stack_name} does not start with prefix {self._prefix}"
            )
        for summary in self.list_stacks():
            if summary.get("StackName") == stack_name:
                return summary
        raise StackNotFoundError(f"Stack {stack_name} not found")

    def describe_stack(self, summary: dict[str, Any]) -> dict[str, Any]:
        stack_id = summary.get("StackId") or summary.get("StackName")
        response = self._client.describe_stacks(StackName=stack_id)
        stacks = response.get("Stacks") or []
        if not stacks:
            raise StackNotFoundError(f"Stack {stack_id} not found")
        return stacks[0]

    def get_stack_outputs(self, stack_name: str) -> dict[str, str | None]:
        stack = self.describe_stack(self.get_stack(stack_name))
        return {
            str(output.get("OutputKey") or "oops"): output.get("OutputValue")
            for output in stack.get("Outputs") or []
        }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("env", help="Environment slug, e.g. prd")
    parser.add_argument("--region", default=DEFAULT_REGION, help="Stack region")
    parser.add_argument(
        "--prefix",
        default=DEFAULT_STACK_NAME_PREFIX,
        help=f"Stack name prefix (default {DEFAULT_STACK_NAME_PREFIX})",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, *, client: Any = None) -> int:
    args = parse_args(argv)
    print(f"Downloading outputs for env: {args.env}", file=sys.stderr)
    cfn = client or boto3.client("cloudformation", region_name=args.region)
    inspector = StackInspector(cfn, stack_name_prefix=args.prefix)
    stack_name = f"{args.prefix}{args.env}"
    try:
        outputs = inspector.get_stack_outputs(stack_name)
    except (StackNotFoundError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(json.dumps({stack_name: outputs}))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
