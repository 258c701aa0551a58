"""Tests for the tracking store."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from club_sync.connectors.tracking import FieldChange, SourceRow, TrackingStore
from club_sync.errors import SerializationError


def rows(*items: tuple[str, dict]) -> list[SourceRow]:
    return [SourceRow(key=(key,), payload=payload) for key, payload in items]


class TestEntityRows:
    """Tests for per-entity-type rows."""

    def test_upsert_and_get(self, store: TrackingStore) -> None:
        """Upserted rows are tracked and never synced."""
        written = store.upsert_many("member", rows(("M1", {"name": "Anna"}), ("M2", {"name": "Bram"})))
        assert written == 2

        entity = store.get("member", ("M1",))
        assert entity is not None
        assert entity.payload == {"name": "Anna"}
        assert entity.remote_id is None
        assert entity.last_synced_hash is None
        assert entity.needs_sync

    def test_upsert_empty(self, store: TrackingStore) -> None:
        assert store.upsert_many("member", []) == 0
        assert store.all("member") == []

    def test_upsert_keeps_sync_state(self, store: TrackingStore) -> None:
        """Re-upserting refreshes payload and hash but keeps remote id and synced hash."""
        store.upsert_many("member", rows(("M1", {"name": "Anna"})))
        entity = store.get("member", ("M1",))
        store.update_sync_state("member", entity.key, entity.source_hash, "42")

        store.upsert_many("member", rows(("M1", {"name": "Anna B"})))
        refreshed = store.get("member", ("M1",))

        assert refreshed.remote_id == "42"
        assert refreshed.last_synced_hash == entity.source_hash
        assert refreshed.source_hash != entity.source_hash
        assert refreshed.needs_sync

    def test_upsert_is_atomic(self, store: TrackingStore) -> None:
        """A row that cannot be serialized aborts the whole batch."""
        bad = rows(("M1", {"name": "Anna"}), ("M2", {"score": float("nan")}))
        with pytest.raises(SerializationError):
            store.upsert_many("member", bad)
        assert store.all("member") == []

    def test_get_needing_sync(self, store: TrackingStore) -> None:
        store.upsert_many("team", rows(("A", {"n": 1}), ("B", {"n": 2})))
        a = store.get("team", ("A",))
        store.update_sync_state("team", a.key, a.source_hash, "1")

        assert [e.key for e in store.get_needing_sync("team")] == [("B",)]
        assert len(store.get_needing_sync("team", force=True)) == 2

    def test_reset_sync_state(self, store: TrackingStore) -> None:
        """Clearing hash and remote id returns the row to never-synced."""
        store.upsert_many("team", rows(("A", {"n": 1})))
        a = store.get("team", ("A",))
        store.update_sync_state("team", a.key, a.source_hash, "1")
        store.update_sync_state("team", a.key, None, None)

        reset = store.get("team", ("A",))
        assert reset.remote_id is None
        assert reset.last_synced_hash is None
        assert reset.last_synced_at is None

    def test_update_missing_row(self, store: TrackingStore) -> None:
        assert store.update_sync_state("team", ("nope",), "h", "1") is False

    def test_get_not_in_key_set(self, store: TrackingStore) -> None:
        store.upsert_many("team", rows(("A", {}), ("B", {}), ("C", {})))

        orphans = store.get_not_in_key_set("team", [("A",), ("C",)])
        assert [e.key for e in orphans] == [("B",)]

        # An empty key set means every row is absent.
        assert len(store.get_not_in_key_set("team", [])) == 3

    def test_two_part_keys(self, store: TrackingStore) -> None:
        store.upsert_many(
            "work_history",
            [
                SourceRow(key=("M1", "team:A"), payload={"n": 1}),
                SourceRow(key=("M1", "team:B"), payload={"n": 2}),
            ],
        )
        entity = store.get("work_history", ("M1", "team:B"))
        assert entity.key == ("M1", "team:B")
        assert entity.label == "M1/team:B"

        store.update_sync_state("work_history", entity.key, entity.source_hash, "7", position=3)
        assert store.get("work_history", entity.key).remote_position == 3

    def test_invalid_key(self, store: TrackingStore) -> None:
        with pytest.raises(ValueError, match="one or two components"):
            store.get("team", ("a", "b", "c"))

    def test_invalid_entity_type(self, store: TrackingStore) -> None:
        with pytest.raises(ValueError, match="Invalid entity type"):
            store.all("team; DROP TABLE x")

    def test_delete(self, store: TrackingStore) -> None:
        store.upsert_many("team", rows(("A", {})))
        assert store.delete("team", ("A",)) is True
        assert store.delete("team", ("A",)) is False
        assert store.get("team", ("A",)) is None

    def test_remote_id_lookups(self, store: TrackingStore) -> None:
        store.upsert_many("member", rows(("M1", {"email": "Anna@Example.org"}), ("M2", {})))
        m1 = store.get("member", ("M1",))
        store.update_sync_state("member", m1.key, m1.source_hash, "11")

        assert store.remote_ids("member") == {"11"}
        assert store.find_by_remote_id("member", "11").key == ("M1",)
        assert store.find_by_remote_id("member", "12") is None
        assert [e.key for e in store.find_by_payload_field("member", "email", "anna@example.org")] == [("M1",)]

    def test_counts(self, store: TrackingStore) -> None:
        store.upsert_many("team", rows(("A", {}), ("B", {}), ("C", {})))
        a = store.get("team", ("A",))
        store.update_sync_state("team", a.key, a.source_hash, "1")

        counts = store.counts("team")
        assert counts.total == 3
        assert counts.synced == 1
        assert counts.pending == 2
        assert counts.never_synced == 2

    def test_persists_across_handles(self, tmp_path: Path) -> None:
        path = tmp_path / "db" / "tracking.sqlite"
        with TrackingStore(path) as first:
            first.upsert_many("team", rows(("A", {"n": 1})))

        with TrackingStore(path) as second:
            assert second.get("team", ("A",)).payload == {"n": 1}


class TestSnapshots:
    """Tests for stored source snapshots."""

    def test_latest_snapshot_none(self, store: TrackingStore) -> None:
        assert store.latest_snapshot() is None

    def test_latest_by_capture_time(self, store: TrackingStore) -> None:
        store.save_snapshot({"records": [], "n": 2}, captured_at="2024-02-01T00:00:00+00:00")
        store.save_snapshot({"records": [], "n": 1}, captured_at="2024-01-01T00:00:00+00:00")

        assert '"n": 2' in store.latest_snapshot()

    def test_latest_tie_breaks_on_insert_order(self, store: TrackingStore) -> None:
        store.save_snapshot('{"n": 1}', captured_at="2024-01-01T00:00:00+00:00")
        store.save_snapshot('{"n": 2}', captured_at="2024-01-01T00:00:00+00:00")
        assert store.latest_snapshot() == '{"n": 2}'


class TestFieldChanges:
    """Tests for pending reverse-sync changes and provenance."""

    def test_record_and_list(self, store: TrackingStore) -> None:
        change = FieldChange("M1", "mobile", "0622", "general", old_value="0611")
        change_id = store.record_field_change(change)

        assert change.id == change_id
        assert change.detected_at is not None

        pending = store.get_unsynced_changes()
        assert len(pending) == 1
        assert pending[0].new_value == "0622"
        assert pending[0].old_value == "0611"
        assert store.get_unsynced_changes("M2") == []

    def test_values_keep_their_type(self, store: TrackingStore) -> None:
        store.record_field_change(FieldChange("M1", "financial_block", False, "financial", True))
        change = store.get_unsynced_changes()[0]
        assert change.new_value is False
        assert change.old_value is True

    def test_has_field_change(self, store: TrackingStore) -> None:
        store.record_field_change(FieldChange("M1", "email", "a@x.org", "general"))
        assert store.has_field_change("M1", "email", "a@x.org")
        assert not store.has_field_change("M1", "email", "b@x.org")

    def test_mark_entity_pushed(self) -> None:
        """Marking synced and stamping provenance happen together."""
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        with TrackingStore(":memory:", clock=lambda: now) as store:
            first = store.record_field_change(FieldChange("M1", "email", "a@x.org", "general"))
            second = store.record_field_change(FieldChange("M1", "mobile", "06", "general"))

            store.mark_entity_pushed("M1", [first, second], ["email", "mobile"])

            assert store.get_unsynced_changes() == []
            assert not store.has_field_change("M1", "email", "a@x.org")
            provenance = store.get_provenance("M1", "email")
            assert provenance.source_modified_at == now.isoformat()

    def test_note_remote_modified_keeps_source_stamp(self, store: TrackingStore) -> None:
        store.mark_entity_pushed("M1", [], ["email"])
        stamped = store.get_provenance("M1", "email").source_modified_at

        store.note_remote_modified("M1", "email", "2024-03-02T00:00:00")
        provenance = store.get_provenance("M1", "email")
        assert provenance.source_modified_at == stamped
        assert provenance.remote_modified_at == "2024-03-02T00:00:00"

    def test_detection_timestamp(self, store: TrackingStore) -> None:
        assert store.last_detection_at() is None
        store.set_last_detection_at("2024-03-01T00:00:00+00:00")
        store.set_last_detection_at("2024-03-02T00:00:00+00:00")
        assert store.last_detection_at() == "2024-03-02T00:00:00+00:00"


class TestListFields:
    """Tests for cached mailing-list field definitions."""

    def test_replace_list_fields(self, store: TrackingStore) -> None:
        store.replace_list_fields([{"field_id": "f1", "tag": "{{a}}", "name": "A"}])
        store.replace_list_fields(
            [
                {"field_id": "f2", "tag": "{{b}}", "name": "B", "required": True},
                {"field_id": "f3", "tag": "{{c}}", "name": "C"},
            ]
        )
        assert [f["field_id"] for f in store.list_fields()] == ["f2", "f3"]
