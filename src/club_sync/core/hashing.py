"""
Content-addressed change detection.

Payloads are serialized deterministically (object keys sorted, array order
kept, ``None`` treated as absent) and digested with SHA-256. Two payloads
with the same digest need no remote write.
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any, Iterable, Mapping, Sequence

from club_sync.errors import SerializationError


def _canonical(value: Any, path: str = "$") -> Any:
    """Return a JSON-ready copy of ``value`` with None-valued keys dropped."""
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise SerializationError(f"Non-finite number at {path}")
        return value
    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise SerializationError(f"Non-string key {key!r} at {path}")
            if item is None:
                continue
            result[key] = _canonical(item, f"{path}.{key}")
        return result
    if isinstance(value, (list, tuple)):
        return [_canonical(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise SerializationError(
        f"Value of type {type(value).__name__} at {path} is not JSON-representable"
    )


def stable_serialize(value: Any) -> str:
    """
    Serialize ``value`` so that semantically equal payloads produce equal text.

    Object keys are sorted recursively, array order is preserved and keys
    whose value is None are omitted.
    """
    return json.dumps(
        _canonical(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def compute_hash(value: Any) -> str:
    """SHA-256 hex digest of the stable serialization of ``value``."""
    return hashlib.sha256(stable_serialize(value).encode("utf-8")).hexdigest()


def compute_content_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw file content."""
    return hashlib.sha256(data).hexdigest()


def compute_source_hash(key: Sequence[str], payload: Mapping[str, Any]) -> str:
    """Hash a tracked entity's natural key together with its payload."""
    return compute_hash({"key": list(key), "data": payload})


class ChangeDetector:
    """
    Field-level comparison of payloads.

    Example:
        detector = ChangeDetector(["email", "mobile"])
        if detector.fields_hash(remote) != detector.fields_hash(local):
            changed = detector.changed_fields(local, remote)
    """

    def __init__(self, fields: Iterable[str]) -> None:
        self.fields = list(fields)

    def extract(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Project ``record`` onto the tracked fields, normalizing blanks to None."""
        return {name: normalize_value(record.get(name)) for name in self.fields}

    def fields_hash(self, record: Mapping[str, Any]) -> str:
        return compute_hash(self.extract(record))

    def changed_fields(
        self,
        old: Mapping[str, Any],
        new: Mapping[str, Any],
    ) -> dict[str, tuple[Any, Any]]:
        """
        Compare tracked fields of two records.

        Returns:
            Mapping of field name to ``(old_value, new_value)`` for each
            field whose normalized value differs.
        """
        before = self.extract(old)
        after = self.extract(new)
        return {
            name: (before[name], after[name])
            for name in self.fields
            if before[name] != after[name]
        }


def normalize_value(value: Any) -> Any:
    """Treat empty strings as absent and trim surrounding whitespace."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value
