"""
Pytest configuration and shared fixtures for the ledger sync test suite.

This file contains common fixtures and test configuration that can be used
across all test modules in the project.
"""

import copy
import itertools
import os
import sys
from datetime import datetime
from typing import Any, Dict, Generator, List
from unittest.mock import patch

import pytest

# Add src to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from reimbursement_store import TABLE_KEYS  # noqa: E402


class FakeStore:
    """In-memory ReimbursementStore with the same verb semantics as DynamoDBStore."""

    def __init__(self, tables: Dict[str, List[Dict[str, Any]]] | None = None) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [] for name in TABLE_KEYS
        }
        self._ids = itertools.count(1)
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}
        for name, rows in (tables or {}).items():
            self.tables[name] = [dict(row) for row in rows]

    def _maybe_fail(self, verb: str, table: str) -> None:
        error = self.fail_on.get(f"{verb}:{table}")
        if error is not None:
            raise error

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Dict[str, Any] | None) -> bool:
        return all(row.get(k) == v for k, v in (filters or {}).items())

    def select(self, table: str, filters: Dict[str, Any] | None = None) -> List[Dict[str, Any]]:
        self._maybe_fail("select", table)
        return [copy.deepcopy(r) for r in self.tables[table] if self._matches(r, filters)]

    def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self._maybe_fail("insert", table)
        self.calls.append(("insert", table, len(rows)))
        key = TABLE_KEYS[table]
        stored = []
        for row in rows:
            item = {key: f"{table}-{next(self._ids)}", "created_at": "2026-01-05T00:00:00+00:00", **row}
            self.tables[table].append(item)
            stored.append(copy.deepcopy(item))
        return stored

    def update(self, table: str, row_id: str, patch: Dict[str, Any]) -> None:
        self._maybe_fail("update", table)
        self.calls.append(("update", table, row_id))
        key = TABLE_KEYS[table]
        for row in self.tables[table]:
            if row[key] == row_id:
                row.update(patch)
                return
        raise KeyError(row_id)

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        self._maybe_fail("delete", table)
        self.calls.append(("delete", table, dict(filters)))
        before = len(self.tables[table])
        self.tables[table] = [r for r in self.tables[table] if not self._matches(r, filters)]
        return before - len(self.tables[table])

    def upsert(self, table: str, row: Dict[str, Any], conflict_key: str) -> None:
        self._maybe_fail("upsert", table)
        self.tables[table] = [
            r for r in self.tables[table] if r.get(conflict_key) != row[conflict_key]
        ]
        self.tables[table].append(dict(row))

    def mutations(self) -> List[tuple]:
        return [c for c in self.calls if c[1] == "reimbursements"]


def ledger_item(
    employee: Any,
    month: Any,
    amount: Any,
    category: Any = "交通",
    note: Any = "",
    date: Any = "1764547200000",
    record_id: str | None = None,
) -> Dict[str, Any]:
    """Build a raw ledger row the way records/search returns it."""
    return {
        "record_id": record_id or f"rec{abs(hash((str(employee), str(month), str(amount), str(date), str(note)))) % 10**8}",
        "fields": {
            "支出人": employee,
            "月份": month,
            "金额": amount,
            "分类": category,
            "支出说明": note,
            "日期": date,
        },
    }


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def sample_employees() -> List[Dict[str, Any]]:
    return [
        {"id": "emp-1", "name": "蒋坤洪", "account_number": "6222000011112222", "bank_branch": "招商银行深圳分行"},
        {"id": "emp-2", "name": "李宇航", "account_number": "6222000033334444", "bank_branch": "工商银行南山支行"},
    ]


@pytest.fixture
def sample_ledger_items() -> List[Dict[str, Any]]:
    """December rows in the mixed shapes the ledger actually returns."""
    return [
        ledger_item("Stephen", "2025-12", 100, note="打车"),
        ledger_item([{"text": "stephen", "type": "text"}], {"type": 1, "value": [{"text": "2025年12月"}]}, "50", note="地铁"),
        ledger_item([{"name": "Lewis Li", "id": "ou_1"}], "2025/12", 5000, category="差旅"),
        ledger_item("王芳", "2025-11", 80),
    ]


@pytest.fixture
def mock_external_apis() -> Generator[Dict[str, Any], None, None]:
    """Mock external API calls made through requests.Session."""
    with patch("requests.Session.post") as mock_post:
        yield {"post": mock_post}


@pytest.fixture
def freeze_time() -> Generator[datetime, None, None]:
    """Fixture to freeze time for testing date/time dependent code."""
    from freezegun import freeze_time as _freeze_time

    with _freeze_time("2026-01-05 10:00:00"):
        yield datetime(2026, 1, 5, 10, 0, 0)


@pytest.fixture(autouse=True)
def setup_test_environment() -> Generator[None, None, None]:
    """Auto-use fixture to keep tests away from real ledger and AWS settings."""
    test_env_vars = {
        "AWS_DEFAULT_REGION": "us-east-2",
        "AWS_ACCESS_KEY_ID": "testing",
        "AWS_SECRET_ACCESS_KEY": "testing",
        "AWS_LAMBDA_FUNCTION_NAME": "test-function",
        "PYTHONPATH": "src",
    }

    with patch.dict(os.environ, test_env_vars):
        for name in (
            "FEISHU_APP_TOKEN",
            "FEISHU_TABLE_ID",
            "FEISHU_APP_ID",
            "FEISHU_APP_SECRET",
            "SYNC_CONFIG_PARAMETER",
        ):
            os.environ.pop(name, None)
        yield


# Pytest markers for different test categories
pytest_plugins: List[str] = []


def pytest_configure(config: Any) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Fast unit tests with no external dependencies"
    )
    config.addinivalue_line(
        "markers", "financial: Tests involving amount calculations"
    )
    config.addinivalue_line("markers", "auth: Authentication and authorization tests")


def pytest_collection_modifyitems(config: Any, items: List[Any]) -> None:
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "amount" in item.name.lower() or "total" in item.name.lower():
            item.add_marker(pytest.mark.financial)
        if "auth" in item.name.lower() or "protect" in item.name.lower():
            item.add_marker(pytest.mark.auth)
