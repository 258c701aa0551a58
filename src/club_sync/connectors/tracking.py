"""
Tracking Store.

Embedded SQLite store holding one row per tracked entity:
- natural key (one or two components) and optional position in a remote list
- remote id assigned by the target
- source hash and last synced hash
- seen/synced/created timestamps

It also keeps the imported source snapshots, pending reverse-sync field
changes, field provenance stamps and cached mailing-list field definitions.

A single store handle is created per run and passed to every component.
"""

from __future__ import annotations

import json
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Iterable, Sequence

from club_sync.core.hashing import compute_source_hash, stable_serialize
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)

NaturalKey = tuple[str, ...]

_TABLE_NAME = re.compile(r"^[a-z][a-z0-9_]*$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SourceRow:
    """Current source state of one entity, as derived from a snapshot."""

    key: NaturalKey
    payload: dict[str, Any]

    @property
    def source_hash(self) -> str:
        return compute_source_hash(self.key, self.payload)


@dataclass
class TrackedEntity:
    """One row of an entity table."""

    entity_type: str
    key: NaturalKey
    payload: dict[str, Any]
    source_hash: str
    remote_id: str | None = None
    remote_position: int | None = None
    last_synced_hash: str | None = None
    last_seen_at: str | None = None
    last_synced_at: str | None = None
    created_at: str | None = None

    @property
    def needs_sync(self) -> bool:
        return self.last_synced_hash is None or self.last_synced_hash != self.source_hash

    @property
    def label(self) -> str:
        return "/".join(self.key)


@dataclass
class FieldChange:
    """A field edited on the directory that must be pushed back to the source."""

    entity_key: str
    field_name: str
    new_value: Any
    target_stage: str
    old_value: Any = None
    id: int | None = None
    detected_at: str | None = None
    remote_modified_at: str | None = None
    detection_run_id: str | None = None
    synced_at: str | None = None


@dataclass
class FieldProvenance:
    """When a field was last written to the source and seen modified remotely."""

    entity_key: str
    field_name: str
    source_modified_at: str | None = None
    remote_modified_at: str | None = None


@dataclass
class TrackingCounts:
    """Per-entity-type counts for status reporting."""

    entity_type: str
    total: int = 0
    synced: int = 0
    pending: int = 0
    never_synced: int = 0
    extra: dict[str, int] = field(default_factory=dict)


_ENTITY_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS "{table}" (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    natural_key TEXT NOT NULL,
    sub_key TEXT NOT NULL DEFAULT '',
    remote_id TEXT,
    remote_position INTEGER,
    payload TEXT NOT NULL,
    source_hash TEXT NOT NULL,
    last_synced_hash TEXT,
    last_seen_at TEXT NOT NULL,
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (natural_key, sub_key)
)
"""

_SHARED_SCHEMA = """
CREATE TABLE IF NOT EXISTS source_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    captured_at TEXT NOT NULL,
    document TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_source_snapshots_captured
    ON source_snapshots (captured_at);

CREATE TABLE IF NOT EXISTS pending_field_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_key TEXT NOT NULL,
    field_name TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    target_stage TEXT NOT NULL,
    detected_at TEXT NOT NULL,
    remote_modified_at TEXT,
    detection_run_id TEXT,
    synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_pending_field_changes_entity
    ON pending_field_changes (entity_key, synced_at);

CREATE TABLE IF NOT EXISTS field_provenance (
    entity_key TEXT NOT NULL,
    field_name TEXT NOT NULL,
    source_modified_at TEXT,
    remote_modified_at TEXT,
    PRIMARY KEY (entity_key, field_name)
);

CREATE TABLE IF NOT EXISTS detection_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_detection_at TEXT
);

CREATE TABLE IF NOT EXISTS mailing_list_fields (
    field_id TEXT PRIMARY KEY,
    tag TEXT,
    name TEXT,
    datatype TEXT,
    required INTEGER NOT NULL DEFAULT 0,
    definition TEXT NOT NULL,
    captured_at TEXT NOT NULL
);
"""


def _split_key(key: Sequence[str]) -> tuple[str, str]:
    if not key or len(key) > 2:
        raise ValueError(f"Natural key must have one or two components: {key!r}")
    return str(key[0]), str(key[1]) if len(key) > 1 else ""


def _join_key(natural_key: str, sub_key: str) -> NaturalKey:
    return (natural_key, sub_key) if sub_key else (natural_key,)


class TrackingStore:
    """
    SQLite-backed tracking store.

    Entity tables are created on first use, one per entity type.

    Example:
        with TrackingStore(Path("club-sync.sqlite")) as store:
            store.upsert_many("member", rows)
            for entity in store.get_needing_sync("member"):
                ...
    """

    def __init__(
        self,
        path: Path | str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the store.

        Args:
            path: Database file (created if missing) or ":memory:"
            clock: Source of timestamps, injectable for tests
        """
        self.path = path if str(path) == ":memory:" else Path(path)
        self.clock = clock
        self._connection: sqlite3.Connection | None = None
        self._tables: set[str] = set()

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper cleanup."""
        if self._connection is None:
            self._connection = self._create_connection()

        try:
            yield self._connection
        except Exception:
            self._connection.rollback()
            raise

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a block as one transaction: all statements commit or none do."""
        with self.connection() as conn:
            with conn:
                yield conn

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection and ensure the shared schema."""
        if isinstance(self.path, Path):
            self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            check_same_thread=False,
            timeout=30.0,
        )

        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.executescript(_SHARED_SCHEMA)
        conn.commit()

        return conn

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
            self._tables.clear()

    def __enter__(self) -> "TrackingStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _now(self) -> str:
        return self.clock().isoformat()

    def _table(self, entity_type: str) -> str:
        """Return the table for ``entity_type``, creating it on first use."""
        if entity_type not in self._tables:
            if not _TABLE_NAME.match(entity_type):
                raise ValueError(f"Invalid entity type name: {entity_type!r}")
            with self.connection() as conn:
                conn.execute(_ENTITY_TABLE_SQL.format(table=entity_type))
                conn.execute(
                    f'CREATE INDEX IF NOT EXISTS "idx_{entity_type}_remote_id" '
                    f'ON "{entity_type}" (remote_id)'
                )
                conn.commit()
            self._tables.add(entity_type)
        return entity_type

    def _to_entity(self, entity_type: str, row: sqlite3.Row) -> TrackedEntity:
        return TrackedEntity(
            entity_type=entity_type,
            key=_join_key(row["natural_key"], row["sub_key"]),
            payload=json.loads(row["payload"]),
            source_hash=row["source_hash"],
            remote_id=row["remote_id"],
            remote_position=row["remote_position"],
            last_synced_hash=row["last_synced_hash"],
            last_seen_at=row["last_seen_at"],
            last_synced_at=row["last_synced_at"],
            created_at=row["created_at"],
        )

    # =========================================================================
    # Entity rows
    # =========================================================================

    def upsert_many(self, entity_type: str, rows: Iterable[SourceRow]) -> int:
        """
        Insert or refresh source state for many rows in one transaction.

        On conflict only ``payload``, ``source_hash`` and ``last_seen_at`` are
        refreshed. Remote id, position and last synced hash belong to sync
        state and are never touched here.

        Returns:
            Number of rows written
        """
        table = self._table(entity_type)
        now = self._now()

        # Serialize everything up front so a bad row fails before any write.
        params = []
        for row in rows:
            natural_key, sub_key = _split_key(row.key)
            params.append(
                (
                    natural_key,
                    sub_key,
                    stable_serialize(row.payload),
                    row.source_hash,
                    now,
                    now,
                )
            )

        if not params:
            return 0

        with self.transaction() as conn:
            conn.executemany(
                f"""
                INSERT INTO "{table}"
                    (natural_key, sub_key, payload, source_hash, last_seen_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (natural_key, sub_key) DO UPDATE SET
                    payload = excluded.payload,
                    source_hash = excluded.source_hash,
                    last_seen_at = excluded.last_seen_at
                """,
                params,
            )

        logger.debug(f"Upserted {len(params)} {entity_type} rows")
        return len(params)

    def get_needing_sync(self, entity_type: str, force: bool = False) -> list[TrackedEntity]:
        """Rows never synced, changed since last sync, or all rows when forced."""
        table = self._table(entity_type)
        sql = f'SELECT * FROM "{table}"'
        if not force:
            sql += " WHERE last_synced_hash IS NULL OR last_synced_hash != source_hash"
        sql += " ORDER BY id"

        with self.connection() as conn:
            return [self._to_entity(entity_type, r) for r in conn.execute(sql)]

    def get_not_in_key_set(
        self,
        entity_type: str,
        current_keys: Iterable[Sequence[str]],
    ) -> list[TrackedEntity]:
        """
        Rows whose natural key is absent from ``current_keys``.

        An empty key set returns every row. Callers that do not intend a full
        wipe must guard against an empty snapshot themselves.
        """
        keys = {_split_key(k) for k in current_keys}
        return [
            entity
            for entity in self.all(entity_type)
            if _split_key(entity.key) not in keys
        ]

    def update_sync_state(
        self,
        entity_type: str,
        key: Sequence[str],
        synced_hash: str | None,
        remote_id: str | None,
        position: int | None = None,
    ) -> bool:
        """
        Record the outcome of a remote write.

        Passing ``None`` for both hash and remote id resets the row to the
        never-synced state, which is how a vanished remote object is healed.

        Returns:
            True if the row exists
        """
        table = self._table(entity_type)
        natural_key, sub_key = _split_key(key)
        synced_at = self._now() if synced_hash is not None else None

        with self.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE "{table}"
                SET last_synced_hash = ?, remote_id = ?, remote_position = ?,
                    last_synced_at = ?
                WHERE natural_key = ? AND sub_key = ?
                """,
                (synced_hash, remote_id, position, synced_at, natural_key, sub_key),
            )
            return cursor.rowcount > 0

    def delete(self, entity_type: str, key: Sequence[str]) -> bool:
        """Remove a tracked row."""
        table = self._table(entity_type)
        natural_key, sub_key = _split_key(key)

        with self.transaction() as conn:
            cursor = conn.execute(
                f'DELETE FROM "{table}" WHERE natural_key = ? AND sub_key = ?',
                (natural_key, sub_key),
            )
            return cursor.rowcount > 0

    def get(self, entity_type: str, key: Sequence[str]) -> TrackedEntity | None:
        table = self._table(entity_type)
        natural_key, sub_key = _split_key(key)

        with self.connection() as conn:
            row = conn.execute(
                f'SELECT * FROM "{table}" WHERE natural_key = ? AND sub_key = ?',
                (natural_key, sub_key),
            ).fetchone()
        return self._to_entity(entity_type, row) if row else None

    def all(self, entity_type: str) -> list[TrackedEntity]:
        table = self._table(entity_type)
        with self.connection() as conn:
            cursor = conn.execute(f'SELECT * FROM "{table}" ORDER BY id')
            return [self._to_entity(entity_type, r) for r in cursor]

    def remote_ids(self, entity_type: str) -> set[str]:
        """Remote ids currently known for an entity type."""
        table = self._table(entity_type)
        with self.connection() as conn:
            cursor = conn.execute(
                f'SELECT remote_id FROM "{table}" WHERE remote_id IS NOT NULL'
            )
            return {row["remote_id"] for row in cursor}

    def find_by_remote_id(self, entity_type: str, remote_id: str) -> TrackedEntity | None:
        table = self._table(entity_type)
        with self.connection() as conn:
            row = conn.execute(
                f'SELECT * FROM "{table}" WHERE remote_id = ? ORDER BY id LIMIT 1',
                (str(remote_id),),
            ).fetchone()
        return self._to_entity(entity_type, row) if row else None

    def find_by_payload_field(
        self,
        entity_type: str,
        field_name: str,
        value: str,
    ) -> list[TrackedEntity]:
        """Rows whose payload field equals ``value`` (case-insensitive)."""
        table = self._table(entity_type)
        with self.connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT * FROM "{table}"
                WHERE lower(json_extract(payload, ?)) = lower(?)
                ORDER BY id
                """,
                (f"$.{field_name}", value),
            )
            return [self._to_entity(entity_type, r) for r in cursor]

    def counts(self, entity_type: str) -> TrackingCounts:
        table = self._table(entity_type)
        with self.connection() as conn:
            row = conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    SUM(last_synced_hash = source_hash) AS synced,
                    SUM(last_synced_hash IS NULL) AS never_synced
                FROM "{table}"
                """
            ).fetchone()

        total = row["total"] or 0
        synced = row["synced"] or 0
        return TrackingCounts(
            entity_type=entity_type,
            total=total,
            synced=synced,
            pending=total - synced,
            never_synced=row["never_synced"] or 0,
        )

    # =========================================================================
    # Source snapshots
    # =========================================================================

    def save_snapshot(
        self,
        document: dict[str, Any] | str,
        captured_at: str | None = None,
    ) -> int:
        """Store a raw snapshot document and return its id."""
        if not isinstance(document, str):
            document = json.dumps(document, ensure_ascii=False)
        if captured_at is None:
            captured_at = self._now()

        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO source_snapshots (captured_at, document) VALUES (?, ?)",
                (captured_at, document),
            )
            return int(cursor.lastrowid)

    def latest_snapshot(self) -> str | None:
        """Most recent snapshot document by capture time, or None."""
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT document FROM source_snapshots
                ORDER BY captured_at DESC, id DESC
                LIMIT 1
                """
            ).fetchone()
        return row["document"] if row else None

    # =========================================================================
    # Reverse-sync field changes
    # =========================================================================

    def record_field_change(self, change: FieldChange) -> int:
        detected_at = change.detected_at or self._now()
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pending_field_changes
                    (entity_key, field_name, old_value, new_value, target_stage,
                     detected_at, remote_modified_at, detection_run_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    change.entity_key,
                    change.field_name,
                    json.dumps(change.old_value),
                    json.dumps(change.new_value),
                    change.target_stage,
                    detected_at,
                    change.remote_modified_at,
                    change.detection_run_id,
                ),
            )
        change.id = int(cursor.lastrowid)
        change.detected_at = detected_at
        return change.id

    def has_field_change(self, entity_key: str, field_name: str, new_value: Any) -> bool:
        """True if an identical change is already waiting to be pushed."""
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM pending_field_changes
                WHERE entity_key = ? AND field_name = ? AND new_value = ?
                  AND synced_at IS NULL
                LIMIT 1
                """,
                (entity_key, field_name, json.dumps(new_value)),
            ).fetchone()
        return row is not None

    def get_unsynced_changes(self, entity_key: str | None = None) -> list[FieldChange]:
        sql = "SELECT * FROM pending_field_changes WHERE synced_at IS NULL"
        params: tuple[Any, ...] = ()
        if entity_key is not None:
            sql += " AND entity_key = ?"
            params = (entity_key,)
        sql += " ORDER BY id"

        with self.connection() as conn:
            return [
                FieldChange(
                    id=r["id"],
                    entity_key=r["entity_key"],
                    field_name=r["field_name"],
                    old_value=json.loads(r["old_value"]) if r["old_value"] else None,
                    new_value=json.loads(r["new_value"]) if r["new_value"] else None,
                    target_stage=r["target_stage"],
                    detected_at=r["detected_at"],
                    remote_modified_at=r["remote_modified_at"],
                    detection_run_id=r["detection_run_id"],
                    synced_at=r["synced_at"],
                )
                for r in conn.execute(sql, params)
            ]

    def mark_entity_pushed(
        self,
        entity_key: str,
        change_ids: Sequence[int],
        fields: Iterable[str],
    ) -> None:
        """
        Mark an entity's changes synced and stamp source provenance.

        Both updates happen in one transaction so a crash can never leave
        changes marked synced without the provenance that suppresses their
        re-detection.
        """
        now = self._now()
        with self.transaction() as conn:
            conn.executemany(
                "UPDATE pending_field_changes SET synced_at = ? WHERE id = ?",
                [(now, change_id) for change_id in change_ids],
            )
            conn.executemany(
                """
                INSERT INTO field_provenance (entity_key, field_name, source_modified_at)
                VALUES (?, ?, ?)
                ON CONFLICT (entity_key, field_name) DO UPDATE SET
                    source_modified_at = excluded.source_modified_at
                """,
                [(entity_key, name, now) for name in set(fields)],
            )

    def get_provenance(self, entity_key: str, field_name: str) -> FieldProvenance | None:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM field_provenance
                WHERE entity_key = ? AND field_name = ?
                """,
                (entity_key, field_name),
            ).fetchone()
        if row is None:
            return None
        return FieldProvenance(
            entity_key=row["entity_key"],
            field_name=row["field_name"],
            source_modified_at=row["source_modified_at"],
            remote_modified_at=row["remote_modified_at"],
        )

    def note_remote_modified(self, entity_key: str, field_name: str, modified_at: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO field_provenance (entity_key, field_name, remote_modified_at)
                VALUES (?, ?, ?)
                ON CONFLICT (entity_key, field_name) DO UPDATE SET
                    remote_modified_at = excluded.remote_modified_at
                """,
                (entity_key, field_name, modified_at),
            )

    def last_detection_at(self) -> str | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT last_detection_at FROM detection_state WHERE id = 1"
            ).fetchone()
        return row["last_detection_at"] if row else None

    def set_last_detection_at(self, timestamp: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO detection_state (id, last_detection_at) VALUES (1, ?)
                ON CONFLICT (id) DO UPDATE SET last_detection_at = excluded.last_detection_at
                """,
                (timestamp,),
            )

    # =========================================================================
    # Mailing-list field definitions
    # =========================================================================

    def replace_list_fields(self, fields: Sequence[dict[str, Any]]) -> int:
        """Replace the cached mailing-list field definitions."""
        now = self._now()
        with self.transaction() as conn:
            conn.execute("DELETE FROM mailing_list_fields")
            conn.executemany(
                """
                INSERT INTO mailing_list_fields
                    (field_id, tag, name, datatype, required, definition, captured_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        str(f.get("field_id")),
                        f.get("tag"),
                        f.get("name"),
                        f.get("datatype"),
                        1 if f.get("required") else 0,
                        json.dumps(f, ensure_ascii=False),
                        now,
                    )
                    for f in fields
                ],
            )
        return len(fields)

    def list_fields(self) -> list[dict[str, Any]]:
        with self.connection() as conn:
            cursor = conn.execute("SELECT definition FROM mailing_list_fields ORDER BY field_id")
            return [json.loads(r["definition"]) for r in cursor]
