"""DynamoDB access for the booking tables.

boto3 is blocking: async services await ``DynamoDBService.run``, which
runs the call on a bounded thread pool and turns store failures into
``PersistenceError``.
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, TypeVar

import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings, get_settings
from ..models.errors import ErrorCode, PersistenceError
from ..utils.retry import call_with_retry

logger = logging.getLogger(__name__)

R = TypeVar("R")

# ClientError codes worth retrying
TRANSIENT_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionInProgressException",
}

# Transaction cancellation reasons that mean "try again", not "condition failed"
TRANSIENT_CANCELLATION_CODES = {
    "TransactionConflict",
    "ThrottlingError",
    "ProvisionedThroughputExceeded",
}

_shared_service: "DynamoDBService | None" = None


def get_dynamodb_service() -> "DynamoDBService":
    """The process-wide store client (API container or Lambda)."""
    global _shared_service
    if _shared_service is None:
        _shared_service = DynamoDBService()
    return _shared_service


def reset_dynamodb_service() -> None:
    """Shut down the shared client; the next call builds a new one (tests)."""
    global _shared_service
    if _shared_service is not None:
        _shared_service.close()
    _shared_service = None


def is_transient_error(exc: BaseException) -> bool:
    """Whether a boto3 failure may succeed on retry."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        if error.get("Code") in TRANSIENT_ERROR_CODES:
            return True
        if error.get("Code") == "TransactionCanceledException":
            return any(
                r.get("Code") in TRANSIENT_CANCELLATION_CODES
                for r in exc.response.get("CancellationReasons", [])
            )
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status >= 500
    # Connection resets, read timeouts, endpoint errors
    return isinstance(exc, BotoCoreError)


class DynamoDBService:
    """Table access for one environment (``{prefix}-{table}`` names).

    Methods are blocking boto3 calls; await them through ``run``.
    """

    def __init__(self, settings: Settings | None = None, max_workers: int | None = None) -> None:
        self._settings = settings or get_settings()
        self.name_prefix = (
            self._settings.dynamodb_table_prefix or f"booking-{self._settings.environment}"
        )
        self._local = threading.local()
        self._client = boto3.client("dynamodb")
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or self._settings.store_max_workers,
            thread_name_prefix="dynamodb",
        )

    def table_name(self, table: str) -> str:
        return f"{self.name_prefix}-{table}"

    def _table(self, table: str) -> Any:
        # boto3 resources are not thread safe: one per worker thread
        resource = getattr(self._local, "resource", None)
        if resource is None:
            resource = boto3.session.Session().resource("dynamodb")
            self._local.resource = resource
        return resource.Table(self.table_name(table))

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    async def run(self, func: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Await a blocking store call on the worker pool.

        Throttling, transaction conflicts and 5xx responses are retried
        with backoff (STORE_MAX_ATTEMPTS, STORE_BACKOFF_SECONDS).

        Raises:
            PersistenceError: STORE_UNAVAILABLE; ``transient`` tells the
                caller whether a later retry may succeed.
        """
        loop = asyncio.get_running_loop()
        call = partial(func, *args, **kwargs)
        name = getattr(func, "__name__", "call")

        async def attempt() -> R:
            return await loop.run_in_executor(self._executor, call)

        try:
            return await call_with_retry(
                attempt,
                max_attempts=self._settings.store_max_attempts,
                backoff_seconds=self._settings.store_backoff_seconds,
                retry_on=(ClientError, BotoCoreError),
                should_retry=is_transient_error,
                operation=name,
            )
        except (ClientError, BotoCoreError) as e:
            transient = is_transient_error(e)
            logger.error("DynamoDB %s failed (transient=%s): %s", name, transient, e)
            raise PersistenceError(
                ErrorCode.STORE_UNAVAILABLE, details={"operation": name}, transient=transient
            ) from e

    # Single-item operations. A failed condition is a normal outcome
    # (None/False), every other ClientError propagates to ``run``.

    def get_item(self, table: str, key: dict[str, Any]) -> dict[str, Any] | None:
        response = self._table(table).get_item(Key=key, ConsistentRead=True)
        return response.get("Item")

    def put_item(
        self,
        table: str,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> bool:
        """Write an item; False when ``condition_expression`` did not hold."""
        args = _expression_args(
            condition_expression, expression_attribute_names, expression_attribute_values
        )
        try:
            self._table(table).put_item(Item=item, **args)
        except ClientError as e:
            if _condition_failed(e):
                return False
            raise
        return True

    def update_item(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any],
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any] | None:
        """Apply an update; returns the new item, or None when the condition failed."""
        args = _expression_args(
            condition_expression, expression_attribute_names, expression_attribute_values
        )
        try:
            response = self._table(table).update_item(
                Key=key, UpdateExpression=update_expression, ReturnValues="ALL_NEW", **args
            )
        except ClientError as e:
            if _condition_failed(e):
                return None
            raise
        return response.get("Attributes")

    def query_by_gsi(
        self,
        table: str,
        index_name: str,
        partition_key_name: str,
        partition_key_value: str,
        sort_key_condition: Any | None = None,
    ) -> list[dict[str, Any]]:
        """All items of one index partition, following pagination.

        ``sort_key_condition`` is a boto3 ``Key(...)`` condition on the
        index's range key, e.g. ``Key("expires_at").lt(now)``.
        """
        condition = Key(partition_key_name).eq(partition_key_value)
        if sort_key_condition is not None:
            condition = condition & sort_key_condition

        request: dict[str, Any] = {"IndexName": index_name, "KeyConditionExpression": condition}
        items: list[dict[str, Any]] = []
        while True:
            page = self._table(table).query(**request)
            items.extend(page.get("Items", []))
            if "LastEvaluatedKey" not in page:
                return items
            request["ExclusiveStartKey"] = page["LastEvaluatedKey"]

    # Transactions. Entries use the low-level client format (typed
    # attribute values, full table names); build them with tx_*.

    def transact_write(self, items: list[dict[str, Any]]) -> bool:
        """Commit all entries or none.

        Returns False when a condition check cancelled the transaction.
        Conflicts and throttling are raised for ``run`` to retry.
        """
        try:
            self._client.transact_write_items(TransactItems=items)  # type: ignore[arg-type]
        except ClientError as e:
            if e.response["Error"]["Code"] != "TransactionCanceledException":
                raise
            reasons = [
                r.get("Code")
                for r in e.response.get("CancellationReasons", [])
                if r.get("Code") not in (None, "None")
            ]
            if any(code in TRANSIENT_CANCELLATION_CODES for code in reasons):
                raise
            logger.info("Transaction cancelled: %s", reasons or "condition failed")
            return False
        return True

    def tx_put(
        self,
        table: str,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "Put": {
                "TableName": self.table_name(table),
                "Item": _serialize_map(item),
                **_expression_args(
                    condition_expression,
                    expression_attribute_names,
                    expression_attribute_values,
                    serialize=True,
                ),
            }
        }

    def tx_update(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any]:
        return {
            "Update": {
                "TableName": self.table_name(table),
                "Key": _serialize_map(key),
                "UpdateExpression": update_expression,
                **_expression_args(
                    condition_expression,
                    expression_attribute_names,
                    expression_attribute_values,
                    serialize=True,
                ),
            }
        }

    def tx_condition_check(
        self,
        table: str,
        key: dict[str, Any],
        condition_expression: str,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "ConditionCheck": {
                "TableName": self.table_name(table),
                "Key": _serialize_map(key),
                **_expression_args(
                    condition_expression,
                    expression_attribute_names,
                    expression_attribute_values,
                    serialize=True,
                ),
            }
        }


_serializer = TypeSerializer()


def _serialize_map(values: dict[str, Any]) -> dict[str, Any]:
    return {k: _serializer.serialize(v) for k, v in values.items()}


def _condition_failed(error: ClientError) -> bool:
    return error.response["Error"]["Code"] == "ConditionalCheckFailedException"


def _expression_args(
    condition_expression: str | None,
    names: dict[str, str] | None,
    values: dict[str, Any] | None,
    serialize: bool = False,
) -> dict[str, Any]:
    args: dict[str, Any] = {}
    if condition_expression:
        args["ConditionExpression"] = condition_expression
    if names:
        args["ExpressionAttributeNames"] = names
    if values:
        args["ExpressionAttributeValues"] = _serialize_map(values) if serialize else values
    return args
