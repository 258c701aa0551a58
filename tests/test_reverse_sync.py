"""Tests for the reverse sync engine."""

import pytest

from club_sync.connectors.tracking import FieldChange, TrackingStore
from club_sync.core.concurrency import CancellationToken
from club_sync.core.retry import RetryPolicy
from club_sync.core.reverse_sync import (
    PORTAL_FIELDS,
    ReverseSyncEngine,
    group_changes,
    values_match,
)

from conftest import FakePortal


def record(store: TrackingStore, entity_key: str, field_name: str, value, stage: str) -> int:
    return store.record_field_change(FieldChange(entity_key, field_name, value, stage))


class TestGroupChanges:
    """Tests for per-entity stage grouping."""

    def test_stage_order(self) -> None:
        changes = [
            FieldChange("M1", "financial_block", True, "financial"),
            FieldChange("M1", "email", "a@x.org", "general"),
            FieldChange("M2", "vog_date", "2024-01-01", "other"),
            FieldChange("M1", "vog_date", "2024-02-02", "other"),
        ]
        grouped = group_changes(changes)

        assert list(grouped) == ["M1", "M2"]
        assert list(grouped["M1"]) == ["general", "other", "financial"]

    def test_unknown_stage(self) -> None:
        with pytest.raises(ValueError, match="Unknown stage"):
            group_changes([FieldChange("M1", "email", "a", "contact")])


class TestValuesMatch:
    def test_checkbox(self) -> None:
        spec = PORTAL_FIELDS["financial_block"]
        assert values_match(spec, True, "checked")
        assert values_match(spec, False, "")
        assert not values_match(spec, True, "0")

    def test_text_ignores_surrounding_space(self) -> None:
        assert values_match(PORTAL_FIELDS["email"], "a@x.org", " a@x.org ")
        assert values_match(PORTAL_FIELDS["phone"], None, "")


class TestReverseSyncEngine:
    """Tests for pushing changes back to the portal."""

    @pytest.mark.asyncio
    async def test_success_marks_synced_and_stamps_provenance(
        self, store: TrackingStore, no_wait: RetryPolicy
    ) -> None:
        portal = FakePortal()
        record(store, "M1", "email", "new@x.org", "general")
        record(store, "M1", "financial_block", True, "financial")

        result = await ReverseSyncEngine(store, portal, retry=no_wait).run()

        assert result.synced == 1
        assert result.entities[0].stages_completed == ["general", "financial"]
        assert portal.values[("M1", "email")] == "new@x.org"
        assert store.get_unsynced_changes() == []
        assert store.get_provenance("M1", "email").source_modified_at is not None
        assert store.get_provenance("M1", "financial_block") is not None

    @pytest.mark.asyncio
    async def test_later_change_wins(self, store: TrackingStore, no_wait: RetryPolicy) -> None:
        portal = FakePortal()
        record(store, "M1", "mobile", "0611", "general")
        record(store, "M1", "mobile", "0622", "general")

        await ReverseSyncEngine(store, portal, retry=no_wait).run()

        assert portal.values[("M1", "mobile")] == "0622"

    @pytest.mark.asyncio
    async def test_verification_failure_marks_nothing(self, store: TrackingStore) -> None:
        """A failing later stage leaves every change of the entity pending."""
        portal = FakePortal()
        portal.corrupt["financial"] = "0"
        record(store, "M1", "email", "new@x.org", "general")
        record(store, "M1", "financial_block", True, "financial")

        result = await ReverseSyncEngine(store, portal, retry=RetryPolicy.none()).run()

        outcome = result.entities[0]
        assert result.failed == 1
        assert not outcome.success
        assert outcome.stages_completed == ["general"]
        assert outcome.failed_stage == "financial"
        assert "Verification failed for financial_block" in outcome.error
        assert len(store.get_unsynced_changes()) == 2
        assert store.get_provenance("M1", "email") is None
        # The general stage was saved and is not rolled back.
        assert portal.values[("M1", "email")] == "new@x.org"

    @pytest.mark.asyncio
    async def test_failed_stage_is_retried(self, store: TrackingStore) -> None:
        portal = FakePortal()
        record(store, "M1", "email", "new@x.org", "general")
        reads = {"n": 0}
        original_read = portal.read

        async def flaky_read(stage, field):
            reads["n"] += 1
            if reads["n"] == 1:
                return "stale@x.org"
            return await original_read(stage, field)

        portal.read = flaky_read
        retry = RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=0.0)
        result = await ReverseSyncEngine(store, portal, retry=retry).run()

        assert result.synced == 1
        assert portal.saved_stages == [("M1", "general"), ("M1", "general")]

    @pytest.mark.asyncio
    async def test_reauthenticates_once(self, store: TrackingStore, no_wait: RetryPolicy) -> None:
        portal = FakePortal()
        portal.expired_opens = 1
        record(store, "M1", "email", "new@x.org", "general")

        result = await ReverseSyncEngine(store, portal, retry=no_wait).run()

        assert result.synced == 1
        assert portal.logins == 1

    @pytest.mark.asyncio
    async def test_login_page_persists(self, store: TrackingStore) -> None:
        portal = FakePortal()
        portal.expired_opens = 10
        record(store, "M1", "email", "new@x.org", "general")

        result = await ReverseSyncEngine(store, portal, retry=RetryPolicy.none()).run()

        assert result.failed == 1
        assert portal.logins == 1
        assert "login page" in result.entities[0].error
        assert portal.saved_stages == []

    @pytest.mark.asyncio
    async def test_unknown_field_fails_stage(self, store: TrackingStore) -> None:
        record(store, "M1", "shoe_size", "44", "general")

        result = await ReverseSyncEngine(store, FakePortal(), retry=RetryPolicy.none()).run()

        assert result.failed == 1
        assert "shoe_size" in result.entities[0].error

    @pytest.mark.asyncio
    async def test_portal_crash_does_not_stop_later_entities(
        self, store: TrackingStore, no_wait: RetryPolicy
    ) -> None:
        portal = FakePortal()
        original_save = portal.save

        async def save(stage):
            if portal._entity == "M1":
                raise RuntimeError("element not found: #save-button")
            await original_save(stage)

        portal.save = save
        record(store, "M1", "email", "a@x.org", "general")
        record(store, "M2", "email", "b@x.org", "general")

        result = await ReverseSyncEngine(store, portal, retry=no_wait).run()

        failed, pushed = result.entities
        assert (result.failed, result.synced) == (1, 1)
        assert failed.failed_stage == "general"
        assert "RuntimeError" in failed.error
        assert pushed.success
        assert portal.values[("M2", "email")] == "b@x.org"
        assert [c.entity_key for c in store.get_unsynced_changes()] == ["M1"]

    @pytest.mark.asyncio
    async def test_entity_filter(self, store: TrackingStore, no_wait: RetryPolicy) -> None:
        record(store, "M1", "email", "a@x.org", "general")
        record(store, "M2", "email", "b@x.org", "general")

        result = await ReverseSyncEngine(store, FakePortal(), retry=no_wait).run(["M2"])

        assert result.total == 1
        assert [c.entity_key for c in store.get_unsynced_changes()] == ["M1"]

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, store: TrackingStore, no_wait: RetryPolicy) -> None:
        record(store, "M1", "email", "a@x.org", "general")
        record(store, "M2", "email", "b@x.org", "general")
        token = CancellationToken()
        token.cancel()

        result = await ReverseSyncEngine(store, FakePortal(), retry=no_wait, cancel_token=token).run()

        assert result.cancelled
        assert result.pending == 2
        assert len(store.get_unsynced_changes()) == 2
