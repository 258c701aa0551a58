"""
Field change detection (directory -> source).

Compares the reverse-syncable fields of people on the directory with the
tracked member payloads and records a pending change per differing field.
A change is not recorded when:

- the field was last written by our own reverse push and the directory has
  not been modified since (provenance stamp)
- an identical change is already waiting to be pushed
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from club_sync.connectors.tracking import FieldChange, TrackingStore
from club_sync.core.hashing import ChangeDetector
from club_sync.core.reverse_sync import PORTAL_FIELDS, FieldSpec, parse_checkbox
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _from_acf(spec: FieldSpec, value: Any) -> Any:
    if spec.kind == "checkbox":
        return parse_checkbox(value)
    if value in (None, ""):
        return None
    value = str(value).strip()
    # ACF stores dates as YYYYMMDD
    if spec.name.endswith("_date") and len(value) == 8 and value.isdigit():
        return f"{value[:4]}-{value[4:6]}-{value[6:]}"
    return value


@dataclass
class DetectionResult:
    run_id: str
    checked: int = 0
    unmatched: int = 0
    changed_entities: int = 0
    skipped_own_writes: int = 0
    skipped_duplicates: int = 0
    changes: list[FieldChange] = field(default_factory=list)


class FieldChangeDetector:
    """
    Example:
        detector = FieldChangeDetector(store)
        people = await directory.people_modified_since(store.last_detection_at())
        result = detector.detect(people)
    """

    def __init__(
        self,
        store: TrackingStore,
        fields: dict[str, FieldSpec] | None = None,
    ) -> None:
        self.store = store
        self.fields = fields or PORTAL_FIELDS
        self.detector = ChangeDetector(self.fields)

    def remote_values(self, person: dict[str, Any]) -> dict[str, Any]:
        acf = person.get("acf") or {}
        return {name: _from_acf(spec, acf.get(name)) for name, spec in self.fields.items()}

    def local_values(self, payload: dict[str, Any]) -> dict[str, Any]:
        values = {name: payload.get(name) for name in self.fields}
        for name, spec in self.fields.items():
            if spec.kind == "checkbox":
                values[name] = parse_checkbox(values[name])
        return values

    def detect(
        self,
        people: Iterable[dict[str, Any]],
        run_id: str | None = None,
    ) -> DetectionResult:
        """Record pending changes for every person whose tracked fields differ."""
        result = DetectionResult(run_id=run_id or uuid.uuid4().hex[:12])

        for person in people:
            member_id = (person.get("acf") or {}).get("member_id")
            if not member_id:
                continue
            tracked = self.store.get("member", (str(member_id),))
            if tracked is None:
                result.unmatched += 1
                continue

            result.checked += 1
            remote = self.remote_values(person)
            local = self.local_values(tracked.payload)
            if self.detector.fields_hash(remote) == self.detector.fields_hash(local):
                continue

            modified_at = person.get("modified_gmt") or person.get("modified")
            recorded = self._record_changes(
                str(member_id), local, remote, modified_at, result
            )
            if recorded:
                result.changed_entities += 1

        logger.info(
            f"Change detection {result.run_id}: checked {result.checked}, "
            f"{len(result.changes)} change(s) on {result.changed_entities} member(s)"
        )
        return result

    def _record_changes(
        self,
        entity_key: str,
        local: dict[str, Any],
        remote: dict[str, Any],
        modified_at: str | None,
        result: DetectionResult,
    ) -> int:
        recorded = 0
        remote_modified = parse_timestamp(modified_at)

        for name, (old, new) in self.detector.changed_fields(local, remote).items():
            provenance = self.store.get_provenance(entity_key, name)
            if provenance is not None:
                pushed_at = parse_timestamp(provenance.source_modified_at)
                if pushed_at and (remote_modified is None or remote_modified <= pushed_at):
                    result.skipped_own_writes += 1
                    continue

            if self.store.has_field_change(entity_key, name, new):
                result.skipped_duplicates += 1
                continue

            change = FieldChange(
                entity_key=entity_key,
                field_name=name,
                old_value=old,
                new_value=new,
                target_stage=self.fields[name].stage,
                remote_modified_at=modified_at,
                detection_run_id=result.run_id,
            )
            self.store.record_field_change(change)
            if modified_at:
                self.store.note_remote_modified(entity_key, name, modified_at)
            result.changes.append(change)
            recorded += 1
            logger.debug(f"{entity_key}.{name}: {old!r} -> {new!r}")

        return recorded
