"""
End-to-end reconcile passes with a mocked ledger client and the in-memory store.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from conftest import FakeStore, ledger_item

from ledger_client import LedgerClient, TenantToken
from ledger_sync import SyncRequest, resolve_access_token, run_sync
from protection import AdminCredentials
from reimbursement_store import EMPLOYEES, MONTHLY_SUMMARIES, REIMBURSEMENTS
from sync_config import SyncConfig
from sync_errors import AuthorizationRequired, ConfigurationError, TransportError


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(app_token="bascn123", table_id="tbl456", retry_backoff=0)


@pytest.fixture
def client() -> MagicMock:
    return MagicMock(spec=LedgerClient)


@pytest.fixture
def store(sample_employees: list) -> FakeStore:
    return FakeStore({EMPLOYEES: sample_employees})


def _request(**kwargs) -> SyncRequest:
    return SyncRequest(access_token="t-123", **kwargs)


class TestRunSync:
    def test_alias_rows_become_one_reimbursement(
        self, config: SyncConfig, client: MagicMock, store: FakeStore
    ) -> None:
        client.fetch_all.return_value = [
            ledger_item("Stephen", "2025-12", 100, note="打车"),
            ledger_item("stephen", "2025年12月", 50, note="地铁"),
        ]

        outcome = run_sync(_request(), config, client=client, store_factory=lambda: store)

        rows = store.select(REIMBURSEMENTS)
        assert len(rows) == 1
        assert rows[0]["employee_name"] == "蒋坤洪"
        assert rows[0]["month"] == "2025年12月"
        assert rows[0]["amount"] == Decimal("150")
        assert rows[0]["account_number"] == "6222000011112222"
        assert outcome.result.inserted == 1
        client.fetch_all.assert_called_once_with("bascn123", "tbl456", "t-123")

    def test_duplicates_and_old_rows_are_ignored(
        self, config: SyncConfig, client: MagicMock, store: FakeStore
    ) -> None:
        client.fetch_all.return_value = [
            ledger_item("王芳", "2025-12", 80, record_id="rec1"),
            ledger_item("王芳", "2025-12", 80, record_id="rec2"),
            ledger_item("王芳", "2025-11", 999),
        ]

        outcome = run_sync(_request(), config, client=client, store_factory=lambda: store)

        assert outcome.fetched == 3
        assert outcome.matched == 2
        assert store.select(REIMBURSEMENTS)[0]["amount"] == Decimal("80")

    def test_existing_rows_before_cutoff_are_untouched(
        self, config: SyncConfig, client: MagicMock, store: FakeStore
    ) -> None:
        store.insert(
            REIMBURSEMENTS,
            [{"employee_name": "王芳", "month": "2024年12月", "amount": Decimal("1")}],
        )
        client.fetch_all.return_value = []

        outcome = run_sync(_request(), config, client=client, store_factory=lambda: store)

        assert outcome.result.deleted == 0
        assert len(store.select(REIMBURSEMENTS)) == 1
        assert outcome.message == "All records are up to date (from 2025-12)"

    def test_second_pass_reports_up_to_date(
        self, config: SyncConfig, client: MagicMock, store: FakeStore, sample_ledger_items: list
    ) -> None:
        client.fetch_all.return_value = sample_ledger_items
        run_sync(_request(), config, client=client, store_factory=lambda: store)
        store.calls.clear()

        outcome = run_sync(_request(), config, client=client, store_factory=lambda: store)

        assert store.mutations() == []
        assert outcome.as_dict() == {
            "success": True,
            "message": "All records are up to date (from 2025-12)",
            "fetched": 4,
            "matched": 3,
            "inserted": 0,
            "updated": 0,
            "deleted": 0,
            "skipped": 0,
            "unchanged": 2,
            "failed": 0,
        }

    def test_summary_refreshed(
        self, config: SyncConfig, client: MagicMock, store: FakeStore, sample_ledger_items: list
    ) -> None:
        client.fetch_all.return_value = sample_ledger_items

        run_sync(_request(), config, client=client, store_factory=lambda: store)

        summary = store.select(MONTHLY_SUMMARIES, {"month": "2025年12月"})[0]
        assert summary["total_amount"] == Decimal("5150")
        assert summary["record_count"] == 2

    def test_cutoff_from_request(
        self, config: SyncConfig, client: MagicMock, store: FakeStore, sample_ledger_items: list
    ) -> None:
        client.fetch_all.return_value = sample_ledger_items

        outcome = run_sync(
            _request(cutoff_month="2025-11", credentials=AdminCredentials("admin", "admin123")),
            config,
            client=client,
            store_factory=lambda: store,
        )

        assert outcome.matched == 4
        assert outcome.cutoff == "2025-11"
        assert len(store.select(REIMBURSEMENTS)) == 3


class TestProtectedMonthPass:
    def _seed(self, store: FakeStore) -> None:
        store.insert(
            REIMBURSEMENTS,
            [{"employee_name": "王芳", "month": "2025年6月", "amount": Decimal("100")}],
        )
        store.calls.clear()

    def test_without_credentials_nothing_is_written(
        self, config: SyncConfig, client: MagicMock, store: FakeStore
    ) -> None:
        self._seed(store)
        client.fetch_all.return_value = [
            ledger_item("王芳", "2025-06", 130),
            ledger_item("王芳", "2025-12", 20),
        ]

        with pytest.raises(AuthorizationRequired) as exc_info:
            run_sync(
                _request(cutoff_month="2025-06"),
                config,
                client=client,
                store_factory=lambda: store,
            )

        assert exc_info.value.months == ["2025年6月"]
        assert store.calls == []

    def test_wrong_credentials_skip_protected_changes(
        self, config: SyncConfig, client: MagicMock, store: FakeStore
    ) -> None:
        self._seed(store)
        client.fetch_all.return_value = [
            ledger_item("王芳", "2025-06", 130),
            ledger_item("王芳", "2025-12", 20),
        ]

        outcome = run_sync(
            _request(cutoff_month="2025-06", credentials=AdminCredentials("admin", "x")),
            config,
            client=client,
            store_factory=lambda: store,
        )

        assert outcome.result.skipped == 1
        assert outcome.result.inserted == 1
        assert "1 protected change(s) skipped" in outcome.message
        assert store.select(REIMBURSEMENTS, {"month": "2025年6月"})[0]["amount"] == Decimal("100")


class TestConfigurationErrors:
    def test_missing_ledger_settings(self, client: MagicMock, store: FakeStore) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            run_sync(SyncRequest(), SyncConfig(), client=client, store_factory=lambda: store)

        assert "appToken" in str(exc_info.value)
        assert "accessToken" in str(exc_info.value)
        client.fetch_all.assert_not_called()

    def test_request_values_override_config(self, client: MagicMock, store: FakeStore) -> None:
        client.fetch_all.return_value = []

        run_sync(
            SyncRequest(app_token="a", table_id="t", access_token="k"),
            SyncConfig(),
            client=client,
            store_factory=lambda: store,
        )

        client.fetch_all.assert_called_once_with("a", "t", "k")

    def test_invalid_cutoff(self, config: SyncConfig, client: MagicMock, store: FakeStore) -> None:
        with pytest.raises(ConfigurationError):
            run_sync(
                _request(cutoff_month="next month"),
                config,
                client=client,
                store_factory=lambda: store,
            )

        client.fetch_all.assert_not_called()

    def test_ledger_errors_propagate(
        self, config: SyncConfig, client: MagicMock, store: FakeStore
    ) -> None:
        client.fetch_all.side_effect = TransportError(500, "boom")

        with pytest.raises(TransportError):
            run_sync(_request(), config, client=client, store_factory=lambda: store)

        assert store.calls == []


class TestResolveAccessToken:
    def test_request_token_wins(self, config: SyncConfig, client: MagicMock) -> None:
        assert resolve_access_token(SyncRequest(access_token="mine"), config, client) == "mine"
        client.fetch_tenant_token.assert_not_called()

    def test_exchanges_app_credentials(self, client: MagicMock) -> None:
        client.fetch_tenant_token.return_value = TenantToken("t-999", 7200)
        config = SyncConfig(app_id="cli_abc", app_secret="secret")

        assert resolve_access_token(SyncRequest(), config, client) == "t-999"
        client.fetch_tenant_token.assert_called_once_with("cli_abc", "secret")

    def test_failed_exchange_yields_none(self, client: MagicMock) -> None:
        client.fetch_tenant_token.side_effect = TransportError(400, "bad secret")
        config = SyncConfig(app_id="cli_abc", app_secret="secret")

        assert resolve_access_token(SyncRequest(), config, client) is None

    def test_no_app_credentials(self, config: SyncConfig, client: MagicMock) -> None:
        assert resolve_access_token(SyncRequest(), config, client) is None


def test_request_from_body() -> None:
    request = SyncRequest.from_body(
        {
            "appToken": "a",
            "tableId": "",
            "adminUsername": "admin",
            "adminPassword": "admin123",
            "cutoffMonth": "2026-01",
        }
    )

    assert request.app_token == "a"
    assert request.table_id is None
    assert request.credentials == AdminCredentials("admin", "admin123")
    assert request.cutoff_month == "2026-01"
    assert SyncRequest.from_body(None) == SyncRequest()
