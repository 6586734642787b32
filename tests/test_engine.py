"""
Integration tests for the usage snapshot engine.

Tests orchestration over a mocked source, failure degradation and a full
run against fixture files.
"""

import json
import os
import tempfile
from decimal import Decimal
from unittest.mock import Mock

import pytest

from usage_reconciler.core.engine import UsageFetchError, build_usage_snapshot
from usage_reconciler.core.reconciler import SpendReconciler
from usage_reconciler.core.session import SessionIdentity
from usage_reconciler.core.team import TeamMembershipCache
from usage_reconciler.core.unknown_models import UnknownModelDetector
from usage_reconciler.sources.fixtures import FixtureUsageSource, invoice_file_name
from usage_reconciler.storage.repository import (
    InMemoryMembershipStore,
    JsonFileMembershipStore,
    SqliteMembershipStore,
)

from conftest import individual_usage_payload, invoice_payload, make_token, utc

NOW = utc(2024, 3, 20, 12)

CURRENT_INVOICE = invoice_payload(
    ("142 token-based usage calls to claude-4-sonnet, totalling: $9.94", 994),
    ("5 glorbo-7 requests", 50),
    ("Mid-month usage paid", -500),
)
PREVIOUS_INVOICE = invoice_payload(
    ("20 gpt-4 requests", 800),
)


def _invoices(invoices):
    def fetch(month, year):
        payload = invoices.get((month, year))
        if isinstance(payload, Exception):
            raise payload
        if payload is None:
            raise FileNotFoundError(f"no invoice for {month}/{year}")
        return payload
    return fetch


class TestBuildUsageSnapshot:
    """Test snapshot orchestration against a mocked source."""

    def setup_method(self):
        self.session = SessionIdentity.from_token(make_token())
        self.store = InMemoryMembershipStore()
        self.cache = TeamMembershipCache(self.store)
        self.detector = UnknownModelDetector()

        self.source = Mock()
        self.source.fetch_individual_usage.return_value = individual_usage_payload()
        self.source.fetch_monthly_invoice.side_effect = _invoices({
            (3, 2024): CURRENT_INVOICE,
            (2, 2024): PREVIOUS_INVOICE,
        })
        self.source.fetch_teams.return_value = {"teams": []}
        self.source.fetch_usage_based_status.return_value = {"usageBasedPremiumRequests": True}
        self.source.fetch_hard_limit.return_value = {"hardLimit": 50}

    def _build(self, **kwargs):
        return build_usage_snapshot(
            self.session, self.source, self.cache, self.detector, now=NOW, **kwargs
        )

    def _make_team_member(self):
        self.source.fetch_teams.return_value = {"teams": [{"id": 42}]}
        self.source.fetch_team_details.return_value = {"userId": 7}
        self.source.fetch_team_spend.return_value = {
            "teamMemberSpend": [{"userId": 7, "spendCents": 2500}],
            "totalMembers": 1
        }

    def test_individual_snapshot(self):
        """Verify periods, costs and counters for an individual subscriber."""
        snapshot = self._build()

        assert (snapshot.current_period.period.month, snapshot.current_period.period.year) == (3, 2024)
        assert (snapshot.previous_period.period.month, snapshot.previous_period.period.year) == (2, 2024)
        assert not snapshot.is_team_sourced
        assert snapshot.actual_cost == Decimal("10.44")
        assert snapshot.unpaid_balance == Decimal("5.44")
        assert snapshot.premium_requests.current == 120
        assert snapshot.premium_requests.limit == 500
        assert snapshot.usage_based.is_enabled
        assert snapshot.usage_based.limit_dollars == Decimal("50")

        self.source.fetch_monthly_invoice.assert_any_call(3, 2024)
        self.source.fetch_monthly_invoice.assert_any_call(2, 2024)
        self.source.fetch_team_spend.assert_not_called()
        self.source.fetch_usage_based_status.assert_called_once_with(None)

    def test_team_snapshot(self):
        self._make_team_member()

        snapshot = self._build()

        assert snapshot.is_team_sourced
        assert snapshot.team_id == 42
        assert snapshot.actual_cost == Decimal("25")
        assert snapshot.unpaid_balance == Decimal("0")
        self.source.fetch_team_spend.assert_called_once_with(42)
        self.source.fetch_usage_based_status.assert_called_once_with(42)

    def test_individual_usage_failure_is_fatal(self):
        self.source.fetch_individual_usage.side_effect = ConnectionError("refused")

        with pytest.raises(UsageFetchError) as exc_info:
            self._build()

        assert exc_info.value.call == "individual_usage"
        assert isinstance(exc_info.value.cause, ConnectionError)
        self.source.fetch_monthly_invoice.assert_not_called()

    def test_missing_primary_model_is_fatal(self):
        with pytest.raises(UsageFetchError, match="no entry for model: o3"):
            self._build(reconciler=SpendReconciler(primary_model="o3"))

        self.source.fetch_monthly_invoice.assert_not_called()
        assert self.detector.terms == ()

    def test_individual_usage_without_anchor_is_fatal(self):
        self.source.fetch_individual_usage.return_value = {"gpt-4": {"numRequests": 1}}

        with pytest.raises(UsageFetchError, match="startOfMonth"):
            self._build()

    def test_current_invoice_failure_degrades_to_previous(self):
        """An unfetchable current invoice leaves the previous period active."""
        self.source.fetch_monthly_invoice.side_effect = _invoices({
            (3, 2024): TimeoutError("slow"),
            (2, 2024): PREVIOUS_INVOICE,
        })

        snapshot = self._build()

        assert snapshot.current_period.items == ()
        assert snapshot.active_period.period.month == 2
        assert snapshot.actual_cost == Decimal("8")

    def test_both_invoices_fail(self):
        self.source.fetch_monthly_invoice.side_effect = ConnectionError("down")

        snapshot = self._build()

        assert snapshot.actual_cost == Decimal("0")
        assert snapshot.unpaid_balance == Decimal("0")
        assert snapshot.premium_requests.current == 120

    def test_team_spend_failure_falls_back_to_invoice(self):
        self._make_team_member()
        self.source.fetch_team_spend.side_effect = ConnectionError("down")

        snapshot = self._build()

        assert not snapshot.is_team_sourced
        assert snapshot.actual_cost == Decimal("10.44")

    def test_membership_failure_is_not_cached(self):
        """A failed team lookup is retried on the next build."""
        self.source.fetch_teams.side_effect = [ConnectionError("down"), {"teams": []}]

        first = self._build()
        assert not first.is_team_sourced
        assert self.store.get(self.session.subject_id) is None

        self._build()
        assert self.source.fetch_teams.call_count == 2
        assert self.store.get(self.session.subject_id) is not None

    def test_membership_cached_across_builds(self):
        self._make_team_member()

        self._build()
        self._build()

        self.source.fetch_teams.assert_called_once()
        self.source.fetch_team_details.assert_called_once()
        assert self.source.fetch_team_spend.call_count == 2

    def test_usage_based_failure_assumes_disabled(self):
        self.source.fetch_hard_limit.side_effect = ConnectionError("down")

        snapshot = self._build()

        assert not snapshot.usage_based.is_enabled
        assert snapshot.usage_based_percent == Decimal("0")

    def test_unknown_models_reported_once(self):
        first = self._build()
        second = self._build()

        assert first.unknown_models == ("glorbo-7",)
        assert second.unknown_models == ()
        assert self.detector.terms == ("glorbo-7",)

    def test_negative_request_count_is_fatal(self):
        self.source.fetch_individual_usage.return_value = individual_usage_payload(num_requests=-5)

        with pytest.raises(UsageFetchError, match="current cannot be negative") as exc_info:
            self._build()

        assert exc_info.value.call == "individual_usage"
        self.source.fetch_monthly_invoice.assert_not_called()

    def test_team_sourced_snapshot_reports_no_unknown_models(self):
        self._make_team_member()

        snapshot = self._build()

        assert snapshot.is_team_sourced
        assert snapshot.unknown_models == ()
        assert self.detector.terms == ()

    def test_unknown_models_only_from_active_period(self):
        """An unknown model in the inactive previous period is not reported."""
        self.source.fetch_monthly_invoice.side_effect = _invoices({
            (3, 2024): invoice_payload(("5 gpt-4 requests", 100)),
            (2, 2024): invoice_payload(("5 glorbo-7 requests", 50)),
        })

        snapshot = self._build()

        assert snapshot.active_period.period.month == 3
        assert snapshot.unknown_models == ()

    def test_unknown_models_from_previous_when_it_is_active(self):
        self.source.fetch_monthly_invoice.side_effect = _invoices({
            (3, 2024): invoice_payload(),
            (2, 2024): invoice_payload(("5 glorbo-7 requests", 50)),
        })

        snapshot = self._build()

        assert snapshot.active_period.period.month == 2
        assert snapshot.unknown_models == ("glorbo-7",)


class TestCorruptMembershipCache:
    """Test that an unreadable cache leads to a fresh team lookup."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.session = SessionIdentity.from_token(make_token())

        self.source = Mock()
        self.source.fetch_individual_usage.return_value = individual_usage_payload()
        self.source.fetch_monthly_invoice.side_effect = _invoices({
            (3, 2024): CURRENT_INVOICE,
            (2, 2024): PREVIOUS_INVOICE,
        })
        self.source.fetch_teams.return_value = {"teams": [{"id": 42}]}
        self.source.fetch_team_details.return_value = {"userId": 7}
        self.source.fetch_team_spend.return_value = {
            "teamMemberSpend": [{"userId": 7, "spendCents": 2500}],
            "totalMembers": 1
        }
        self.source.fetch_usage_based_status.return_value = {}
        self.source.fetch_hard_limit.return_value = {}

    def teardown_method(self):
        self.temp_dir.cleanup()

    def _build(self, store):
        return build_usage_snapshot(
            self.session, self.source, TeamMembershipCache(store), UnknownModelDetector(), now=NOW
        )

    def test_out_of_range_timestamp_in_json_cache(self):
        path = os.path.join(self.temp_dir.name, "team-cache.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump({
                "userId": 0,
                "jwtSub": self.session.subject_id,
                "isTeamMember": False,
                "teamId": None,
                "lastChecked": 1e300,
                "startOfMonth": "2024-01-15T08:00:00.000Z"
            }, f)

        snapshot = self._build(JsonFileMembershipStore(path))

        self.source.fetch_teams.assert_called_once()
        assert snapshot.is_team_sourced
        assert snapshot.actual_cost == Decimal("25")

    def test_garbage_sqlite_file(self):
        db_path = os.path.join(self.temp_dir.name, "cache.db")
        store = SqliteMembershipStore(db_path)
        with open(db_path, "wb") as f:
            f.write(b"this is not a sqlite database " * 64)

        snapshot = self._build(store)

        self.source.fetch_teams.assert_called_once()
        assert snapshot.is_team_sourced
        assert snapshot.actual_cost == Decimal("25")


class TestFixtureSourceEndToEnd:
    """Test a full build against payload files on disk."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self._write("usage.json", individual_usage_payload(num_requests=250))
        self._write(invoice_file_name(3, 2024), CURRENT_INVOICE)
        self._write(invoice_file_name(2, 2024), PREVIOUS_INVOICE)
        self._write("usage-based.json", {"usageBasedPremiumRequests": False})
        self._write("hard-limit.json", {})

    def teardown_method(self):
        self.temp_dir.cleanup()

    def _write(self, name, payload):
        with open(os.path.join(self.temp_dir.name, name), "w", encoding="utf-8") as f:
            json.dump(payload, f)

    def _build(self):
        return build_usage_snapshot(
            SessionIdentity.from_token(make_token()),
            FixtureUsageSource(self.temp_dir.name),
            TeamMembershipCache(InMemoryMembershipStore()),
            UnknownModelDetector(),
            now=NOW
        )

    def test_individual_subscriber(self):
        snapshot = self._build()

        assert snapshot.premium_requests.current == 250
        assert snapshot.premium_requests.percent == 50
        assert snapshot.actual_cost == Decimal("10.44")
        assert snapshot.unknown_models == ("glorbo-7",)
        assert not snapshot.usage_based.is_enabled

    def test_team_member(self):
        self._write("teams.json", {"teams": [{"id": 42}]})
        self._write("team.json", {"userId": 7, "teamMembers": [{}, {}]})
        self._write("team-spend.json", {
            "teamMemberSpend": [{"userId": 7, "spendCents": 4321}],
            "totalMembers": 2
        })

        snapshot = self._build()

        assert snapshot.is_team_sourced
        assert snapshot.actual_cost == Decimal("43.21")

    def test_missing_invoice_file_degrades(self):
        os.remove(os.path.join(self.temp_dir.name, invoice_file_name(3, 2024)))

        snapshot = self._build()
        assert snapshot.active_period.period.month == 2

    def test_missing_directory(self):
        with pytest.raises(FileNotFoundError, match="Fixture directory not found"):
            FixtureUsageSource(os.path.join(self.temp_dir.name, "missing"))
