"""
DynamoDB-backed persistence for reimbursement records.

The sync pass talks to the store only through five verbs:

    select(table, filters)           equality filters, all pages
    insert(table, rows)              batch put, ids and created_at assigned
    update(table, id, patch)         SET the given attributes on one row
    delete(table, filters)           delete every matching row
    upsert(table, row, conflict_key) put keyed by conflict_key

Each call is atomic on its own; nothing is transactional across calls.
Stores are created per request through a factory so no client state leaks
between invocations.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Protocol, TypeVar, cast

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource

from decimal_utils import ZERO, to_decimal

logger = logging.getLogger(__name__)

T = TypeVar("T")

REIMBURSEMENTS = "reimbursements"
REIMBURSEMENT_DETAILS = "reimbursement_details"
EMPLOYEES = "employees"
MONTHLY_SUMMARIES = "monthly_summaries"

# Partition key per logical table
TABLE_KEYS = {
    REIMBURSEMENTS: "id",
    REIMBURSEMENT_DETAILS: "id",
    EMPLOYEES: "id",
    MONTHLY_SUMMARIES: "month",
}


class ReimbursementStore(Protocol):
    def select(
        self, table: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]: ...
    def insert(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]: ...
    def update(self, table: str, row_id: str, patch: dict[str, Any]) -> None: ...
    def delete(self, table: str, filters: dict[str, Any]) -> int: ...
    def upsert(self, table: str, row: dict[str, Any], conflict_key: str) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry for store reads."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    multiplier: float = 1.0

    def run(
        self,
        operation: Callable[[], T],
        description: str,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        delay = self.backoff_seconds
        for attempt in range(1, max(self.max_attempts, 1) + 1):
            try:
                return operation()
            except ClientError as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        f"{description} failed after {attempt} attempts",
                        extra={"error": str(e)},
                    )
                    raise
                logger.warning(
                    f"{description} failed, retrying",
                    extra={"attempt": attempt, "delay": delay, "error": str(e)},
                )
                sleep(delay)
                delay *= self.multiplier
        raise RuntimeError("unreachable")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class DynamoDBStore:
    """ReimbursementStore over one DynamoDB table per logical table."""

    dynamodb: DynamoDBServiceResource

    def __init__(
        self,
        table_names: dict[str, str],
        dynamodb: DynamoDBServiceResource | None = None,
    ):
        self.dynamodb = dynamodb or cast(
            DynamoDBServiceResource, boto3.resource("dynamodb")
        )
        self._table_names = table_names
        self._tables: dict[str, Any] = {}

    def _table(self, table: str) -> Any:
        if table not in self._tables:
            if table not in self._table_names:
                raise KeyError(f"Unknown table: {table}")
            self._tables[table] = self.dynamodb.Table(self._table_names[table])
        return self._tables[table]

    @staticmethod
    def _condition(filters: dict[str, Any]) -> Any:
        condition = None
        for name, value in filters.items():
            clause = Attr(name).eq(value)
            condition = clause if condition is None else condition & clause
        return condition

    def select(
        self, table: str, filters: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        if filters:
            kwargs["FilterExpression"] = self._condition(filters)

        response = self._table(table).scan(**kwargs)
        items = response.get("Items", [])

        # Handle pagination if there are more items
        while "LastEvaluatedKey" in response:
            response = self._table(table).scan(
                ExclusiveStartKey=response["LastEvaluatedKey"], **kwargs
            )
            items.extend(response.get("Items", []))

        return items

    def insert(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        key = TABLE_KEYS[table]
        created_at = utc_now_iso()
        stored = []
        with self._table(table).batch_writer() as batch:
            for row in rows:
                item = {key: str(uuid.uuid4()), "created_at": created_at, **row}
                batch.put_item(Item=item)
                stored.append(item)
        return stored

    def update(self, table: str, row_id: str, patch: dict[str, Any]) -> None:
        if not patch:
            return
        names = {f"#f{i}": name for i, name in enumerate(patch)}
        values = {f":v{i}": value for i, value in enumerate(patch.values())}
        expression = "SET " + ", ".join(f"#f{i} = :v{i}" for i in range(len(patch)))
        self._table(table).update_item(
            Key={TABLE_KEYS[table]: row_id},
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ConditionExpression=Attr(TABLE_KEYS[table]).exists(),
        )

    def delete(self, table: str, filters: dict[str, Any]) -> int:
        key = TABLE_KEYS[table]
        rows = self.select(table, filters)
        with self._table(table).batch_writer() as batch:
            for row in rows:
                batch.delete_item(Key={key: row[key]})
        return len(rows)

    def upsert(self, table: str, row: dict[str, Any], conflict_key: str) -> None:
        if conflict_key != TABLE_KEYS[table]:
            raise ValueError(
                f"{table} can only upsert on its key {TABLE_KEYS[table]!r}"
            )
        self._table(table).put_item(Item=row)


def dynamodb_store_factory(table_names: dict[str, str]) -> Callable[[], DynamoDBStore]:
    """Return a factory that builds a fresh store (and boto3 resource) per call."""

    def factory() -> DynamoDBStore:
        return DynamoDBStore(table_names)

    return factory


def load_reimbursements(
    store: ReimbursementStore, policy: RetryPolicy
) -> list[dict[str, Any]]:
    """Load every reimbursement row, retrying transient DynamoDB errors."""
    return policy.run(lambda: store.select(REIMBURSEMENTS), "Loading reimbursements")


def load_employees(
    store: ReimbursementStore, policy: RetryPolicy
) -> dict[str, dict[str, Any]]:
    """Employees keyed by name."""
    rows = policy.run(lambda: store.select(EMPLOYEES), "Loading employees")
    return {row["name"]: row for row in rows if row.get("name")}


def refresh_monthly_summary(store: ReimbursementStore, month: str) -> None:
    """Recompute the total and row count for one month."""
    if not month:
        logger.error("Cannot update monthly summary: month is empty")
        return

    rows = store.select(REIMBURSEMENTS, {"month": month})
    total = sum((to_decimal(row.get("amount")) for row in rows), ZERO)
    store.upsert(
        MONTHLY_SUMMARIES,
        {
            "month": month,
            "total_amount": total,
            "record_count": len(rows),
            "updated_at": utc_now_iso(),
        },
        conflict_key="month",
    )
