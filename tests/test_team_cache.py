"""
Unit tests for team membership resolution.

Tests the subject-keyed cache, the fresh lookup and spend extraction.
"""

import json
import os
import tempfile
from unittest.mock import Mock

import pytest

from usage_reconciler.core.payloads import TeamSpend
from usage_reconciler.core.team import (
    TeamMembershipCache,
    extract_user_spend,
    load_team_membership,
)
from usage_reconciler.storage.models import TeamMembershipRecord
from usage_reconciler.storage.repository import (
    InMemoryMembershipStore,
    JsonFileMembershipStore,
    MembershipStoreError,
)

from conftest import utc

ANCHOR = utc(2024, 1, 15, 8)
NOW = utc(2024, 3, 20, 12)


def _record(subject_id, is_team_member=False):
    return TeamMembershipRecord(
        subject_id=subject_id,
        is_team_member=is_team_member,
        period_anchor=ANCHOR,
        last_checked=NOW,
        team_id=42 if is_team_member else None,
        team_user_id=7 if is_team_member else None
    )


class TestTeamMembershipCache:
    """Test at-most-one lookup per subject."""

    def setup_method(self):
        self.store = InMemoryMembershipStore()
        self.cache = TeamMembershipCache(self.store)

    def test_miss_then_hit(self):
        """Verify the loader runs only once for repeated resolves."""
        loader = Mock(return_value=_record("sub-a", is_team_member=True))

        first = self.cache.resolve("sub-a", loader)
        second = self.cache.resolve("sub-a", loader)

        assert first == second
        assert first.is_team_member
        loader.assert_called_once()

    def test_subject_change_invalidates(self):
        """A, then B, then A again costs three lookups."""
        loader_a = Mock(return_value=_record("sub-a"))
        loader_b = Mock(return_value=_record("sub-b", is_team_member=True))

        self.cache.resolve("sub-a", loader_a)
        record_b = self.cache.resolve("sub-b", loader_b)
        record_a = self.cache.resolve("sub-a", loader_a)

        assert record_b.subject_id == "sub-b"
        assert record_a.subject_id == "sub-a"
        assert loader_a.call_count == 2
        assert loader_b.call_count == 1

    def test_loader_error_propagates_and_stores_nothing(self):
        loader = Mock(side_effect=ConnectionError("teams endpoint down"))

        with pytest.raises(ConnectionError):
            self.cache.resolve("sub-a", loader)

        assert self.store.get("sub-a") is None

    def test_loader_returning_other_subject_rejected(self):
        loader = Mock(return_value=_record("sub-b"))

        with pytest.raises(ValueError, match="different subject"):
            self.cache.resolve("sub-a", loader)
        assert self.store.get("sub-b") is None

    def test_empty_subject_rejected(self):
        loader = Mock()

        with pytest.raises(ValueError, match="subject_id is required"):
            self.cache.resolve("", loader)
        loader.assert_not_called()


class TestLoadTeamMembership:
    """Test the fresh membership lookup."""

    def setup_method(self):
        self.source = Mock()

    def test_team_member(self):
        self.source.fetch_teams.return_value = {"teams": [{"id": 42}, {"id": 99}]}
        self.source.fetch_team_details.return_value = {"userId": 7, "teamMembers": [{}, {}]}

        record = load_team_membership(self.source, "sub-a", ANCHOR, now=NOW)

        assert record.is_team_member
        assert record.team_id == 42
        assert record.team_user_id == 7
        assert record.period_anchor == ANCHOR
        assert record.last_checked == NOW
        self.source.fetch_team_details.assert_called_once_with(42)

    def test_no_teams(self):
        self.source.fetch_teams.return_value = {"teams": []}

        record = load_team_membership(self.source, "sub-a", ANCHOR, now=NOW)

        assert not record.is_team_member
        assert record.team_id is None
        assert not record.can_use_team_spend
        self.source.fetch_team_details.assert_not_called()

    def test_details_without_user_id(self):
        self.source.fetch_teams.return_value = {"teams": [{"id": 42}]}
        self.source.fetch_team_details.return_value = {}

        record = load_team_membership(self.source, "sub-a", ANCHOR, now=NOW)

        assert record.is_team_member
        assert record.team_user_id is None
        assert not record.can_use_team_spend

    def test_fetch_failure_propagates(self):
        self.source.fetch_teams.side_effect = TimeoutError("slow")

        with pytest.raises(TimeoutError):
            load_team_membership(self.source, "sub-a", ANCHOR, now=NOW)


class TestExtractUserSpend:
    """Test locating the caller in a team spend payload."""

    def setup_method(self):
        self.team_spend = TeamSpend.from_dict({
            "teamMemberSpend": [
                {"userId": 3, "name": "Other", "spendCents": 900},
                {
                    "userId": 7,
                    "name": "Dev",
                    "email": "dev@example.com",
                    "role": "member",
                    "spendCents": 1234,
                    "fastPremiumRequests": 310,
                    "hardLimitOverrideDollars": 50
                },
            ],
            "totalMembers": 2
        })

    def test_found(self):
        entry = extract_user_spend(self.team_spend, 7)

        assert entry.spend_cents == 1234
        assert entry.fast_premium_requests == 310
        assert entry.role == "member"

    def test_not_found(self):
        assert extract_user_spend(self.team_spend, 8) is None


class TestTeamMembershipCacheStoreFailures:
    """Test that a broken store never costs the caller a fresh record."""

    def test_write_failure_returns_loaded_record(self):
        store = Mock()
        store.get.return_value = None
        store.put.side_effect = MembershipStoreError("Cannot write membership cache: disk full")
        cache = TeamMembershipCache(store)
        loader = Mock(return_value=_record("sub-a", is_team_member=True))

        record = cache.resolve("sub-a", loader)

        assert record.is_team_member
        assert record.team_id == 42
        loader.assert_called_once()

    def test_corrupt_stored_record_triggers_fresh_lookup(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, "team-cache.json")
            data = _record("sub-a").to_cache_dict()
            data["lastChecked"] = 1e300
            with open(path, "w", encoding="utf-8") as f:
                json.dump(data, f)

            cache = TeamMembershipCache(JsonFileMembershipStore(path))
            loader = Mock(return_value=_record("sub-a", is_team_member=True))

            record = cache.resolve("sub-a", loader)

            assert record.is_team_member
            loader.assert_called_once()
