"""
Sync Engine - Main orchestration for sync operations.

Coordinates all components for one forward run:
- Snapshot decoding and row derivation
- Tracking store upserts
- Reconciler per entity type
- Orphan resolver (tracked-but-absent per type, untracked-remote per listing)
- Relationship linking after parents are synced

and for the reverse direction:
- Field change detection on the directory
- Reverse sync to the source portal
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from club_sync.config import Settings
from club_sync.connectors.collaborators import (
    RemoteClients,
    RemoteCollaborator,
    create_collaborators,
    supports_listing,
)
from club_sync.connectors.tracking import TrackingStore, utcnow
from club_sync.core.concurrency import CancellationToken, RateLimiter, gather_optional
from club_sync.core.field_changes import DetectionResult, FieldChangeDetector
from club_sync.core.orphans import OrphanResolver, OrphanResult
from club_sync.core.reconciler import ProgressCallback, Reconciler, SyncResult
from club_sync.core.relationships import RelationshipLinker, RelationshipStore, parent_link_hook
from club_sync.core.retry import RetryPolicy, retry_async
from club_sync.core.reverse_sync import ReverseSyncEngine, ReverseSyncResult, SourcePortal
from club_sync.entities import ENTITY_TYPES, SYNC_ORDER, derive_rows, listing_groups
from club_sync.errors import ConfigurationError, SnapshotUnavailableError
from club_sync.snapshot import Snapshot, decode_snapshot
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)

TARGETS = ("directory", "mailing_list", "helpdesk")


@dataclass
class RunResult:
    """Statistics for one forward run."""

    entity_types: list[str] = field(default_factory=list)
    results: dict[str, SyncResult] = field(default_factory=dict)
    untracked: list[OrphanResult] = field(default_factory=list)
    list_fields: int | None = None
    cancelled: bool = False
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def error_count(self) -> int:
        return sum(r.failed for r in self.results.values()) + sum(
            len(o.errors) for o in self.untracked
        )

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    @property
    def duration_seconds(self) -> float:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_types": self.entity_types,
            "results": {name: r.to_dict() for name, r in self.results.items()},
            "untracked_deleted": {o.scope: o.deleted for o in self.untracked},
            "list_fields": self.list_fields,
            "cancelled": self.cancelled,
            "errors": self.error_count,
        }


class SyncEngine:
    """
    Main sync engine coordinating all operations.

    Example:
        store = TrackingStore(settings.tracking_db)
        engine = SyncEngine(settings, store)

        result = await engine.run(
            entity_filter=["member"],
            on_progress=lambda r: print(f"{r.entity_type}: {r.synced}/{r.total}"),
        )

        detection = await engine.detect_changes()
        pushed = await engine.push_changes(portal)
    """

    def __init__(
        self,
        settings: Settings,
        store: TrackingStore,
        clients: RemoteClients | None = None,
        collaborators: dict[str, RemoteCollaborator] | None = None,
        relationships: RelationshipStore | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        """
        Initialize sync engine.

        Args:
            settings: Application settings
            store: Tracking store shared by every component
            clients: HTTP clients; created from settings per run when omitted
            collaborators: Collaborators per entity type; built from the
                clients when omitted
            relationships: Person relationship endpoint for parent linking;
                defaults to the directory client
            cancel_token: Token checked between entities
        """
        self.settings = settings
        self.store = store
        self.clients = clients
        self.collaborators = collaborators
        self.relationships = relationships
        self.cancel_token = cancel_token or CancellationToken()
        self.retry = RetryPolicy.from_config(settings.retry)

    # =========================================================================
    # Snapshots
    # =========================================================================

    def import_snapshot(self, document: dict[str, Any] | str | bytes) -> Snapshot:
        """Validate a snapshot document and store it as the latest."""
        snapshot = decode_snapshot(document)
        raw = document.decode("utf-8") if isinstance(document, bytes) else document
        captured_at = snapshot.captured_at.isoformat() if snapshot.captured_at else None
        snapshot_id = self.store.save_snapshot(raw, captured_at=captured_at)
        logger.info(
            f"Stored snapshot {snapshot_id}: {len(snapshot.members)} members, "
            f"{len(snapshot.teams)} teams, {len(snapshot.committees)} committees"
        )
        return snapshot

    def load_snapshot(self) -> Snapshot:
        raw = self.store.latest_snapshot()
        if raw is None:
            raise SnapshotUnavailableError("No source snapshot has been imported")
        return decode_snapshot(raw)

    # =========================================================================
    # Forward sync
    # =========================================================================

    def select_entity_types(self, entity_filter: list[str] | None = None) -> list[str]:
        """
        Entity types for this run, in sync order.

        An explicit filter requires credentials for every target it touches.
        Without one, types whose target is not configured are skipped.
        """
        requested = list(entity_filter or self.settings.sync.entity_types)
        unknown = sorted(set(requested) - set(ENTITY_TYPES))
        if unknown:
            raise ConfigurationError(
                f"Unknown entity type(s): {', '.join(unknown)}",
                details={"known": list(ENTITY_TYPES)},
            )

        if requested:
            types = [name for name in SYNC_ORDER if name in requested]
            if self.collaborators is None:
                self.settings.require_credentials(
                    sorted({ENTITY_TYPES[name].target for name in types})
                )
            return types

        if self.collaborators is not None:
            return [name for name in SYNC_ORDER if name in self.collaborators]

        self.settings.require_credentials(["directory"])
        configured = {t for t in TARGETS if not self.settings.validate_credentials([t])}
        for target in sorted(set(TARGETS) - configured):
            logger.info(f"Skipping {target} entity types: not configured")
        return [name for name in SYNC_ORDER if ENTITY_TYPES[name].target in configured]

    @asynccontextmanager
    async def _remote(self) -> AsyncIterator[dict[str, RemoteCollaborator]]:
        if self.collaborators is not None:
            yield self.collaborators
            return

        owns_clients = self.clients is None
        if owns_clients:
            self.clients = RemoteClients.from_settings(self.settings)
        try:
            yield create_collaborators(self.clients, self.store, self.settings.sync.photos_dir)
        finally:
            if owns_clients:
                await self.clients.close()
                self.clients = None

    def _on_synced(self, entity_type: str) -> Any:
        if entity_type != "parent":
            return None
        relationships = self.relationships
        if relationships is None and self.clients is not None:
            relationships = self.clients.directory
        if relationships is None:
            return None
        linker = RelationshipLinker(relationships, self.settings.directory.relationship_types)
        return parent_link_hook(self.store, linker)

    async def run(
        self,
        entity_filter: list[str] | None = None,
        force: bool | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> RunResult:
        """
        Run one forward sync.

        Args:
            entity_filter: Entity types to sync (None = all configured)
            force: Sync every row even when hashes match
            on_progress: Optional callback receiving each type's SyncResult

        Returns:
            RunResult with per-type results

        Raises:
            SnapshotUnavailableError: If no snapshot was imported
            SerializationError: If the latest snapshot cannot be decoded
            ConfigurationError: If required credentials are missing
        """
        force = self.settings.sync.force if force is None else force
        entity_types = self.select_entity_types(entity_filter)
        snapshot = self.load_snapshot()
        rows = derive_rows(snapshot, entity_types, photos_dir=self.settings.sync.photos_dir)

        run = RunResult(entity_types=entity_types, start_time=time.time())
        rate_limiter = RateLimiter.from_config(self.settings.rate_limit)
        resolver = OrphanResolver(self.store, self.retry, rate_limiter, self.cancel_token)

        async with self._remote() as collaborators:
            for entity_type in entity_types:
                if self.cancel_token.cancelled:
                    run.cancelled = True
                    break

                collaborator = collaborators.get(entity_type)
                if collaborator is None:
                    logger.warning(f"{entity_type}: no collaborator, skipping")
                    continue

                current = rows[entity_type]
                self.store.upsert_many(entity_type, current)

                reconciler = Reconciler(
                    self.store,
                    collaborator,
                    retry=self.retry,
                    rate_limiter=rate_limiter,
                    cancel_token=self.cancel_token,
                    on_synced=self._on_synced(entity_type),
                )
                result = await reconciler.run(force=force, on_progress=on_progress)
                run.results[entity_type] = result

                if result.cancelled:
                    run.cancelled = True
                    break

                await self._remove_absent(resolver, collaborator, current, result)

            if not run.cancelled and "subscriber" in entity_types:
                await self._capture_list_fields(run)

            if not run.cancelled and self.settings.sync.delete_untracked:
                await self._remove_untracked(resolver, collaborators, entity_types, run)

        run.end_time = time.time()
        logger.info(
            f"Sync finished in {run.duration_seconds:.1f}s with {run.error_count} error(s)"
        )
        return run

    async def _remove_absent(
        self,
        resolver: OrphanResolver,
        collaborator: RemoteCollaborator,
        current: list[Any],
        result: SyncResult,
    ) -> None:
        entity_type = collaborator.entity_type
        if not current and not self.settings.sync.allow_empty_snapshot:
            tracked = self.store.counts(entity_type).total
            if tracked:
                logger.warning(
                    f"{entity_type}: snapshot has no rows but {tracked} are tracked; "
                    "not deleting (set sync.allow_empty_snapshot to allow)"
                )
            return

        orphans = await resolver.remove_absent(collaborator, [row.key for row in current])
        result.deleted += orphans.deleted
        result.errors.extend(orphans.errors)
        if orphans.cancelled:
            result.cancelled = True

    async def _capture_list_fields(self, run: RunResult) -> None:
        if self.clients is None or self.settings.validate_credentials(["mailing_list"]):
            return
        captured = await gather_optional(
            {"list_fields": self.clients.mailing_list.fetch_fields()},
            timeout=self.settings.timeouts.optional_capture,
        )
        fields = captured["list_fields"]
        if fields is not None:
            run.list_fields = self.store.replace_list_fields(fields)

    async def _remove_untracked(
        self,
        resolver: OrphanResolver,
        collaborators: dict[str, RemoteCollaborator],
        entity_types: list[str],
        run: RunResult,
    ) -> None:
        # Known ids come from every type sharing the listing, not only the
        # filtered ones, so syncing members alone never deletes parents.
        all_groups = listing_groups()

        for listing, types in listing_groups(entity_types).items():
            if self.cancel_token.cancelled:
                run.cancelled = True
                return

            collaborator = collaborators.get(types[0])
            if collaborator is None or not supports_listing(collaborator):
                continue

            known_types = all_groups[listing]
            tracked = sum(self.store.counts(name).total for name in known_types)
            if not tracked and not self.settings.sync.allow_empty_snapshot:
                logger.warning(f"{listing}: nothing tracked; skipping untracked cleanup")
                continue

            outcome = await resolver.remove_untracked(collaborator, known_types)
            run.untracked.append(outcome)
            if outcome.cancelled:
                run.cancelled = True

    # =========================================================================
    # Reverse direction
    # =========================================================================

    async def detect_changes(self) -> DetectionResult:
        """
        Record directory edits to reverse-syncable fields as pending changes.

        Only people modified since the previous detection are fetched.
        """
        self.settings.require_credentials(["directory"])
        started_at = utcnow().isoformat()
        since = self.store.last_detection_at()

        async with self._remote():
            directory = self.clients.directory if self.clients else None
            if directory is None:
                raise ConfigurationError("Change detection needs a directory client")
            people = await retry_async(
                lambda: directory.people_modified_since(since),
                self.retry,
                description="people modified since last detection",
            )

        result = FieldChangeDetector(self.store).detect(people)
        self.store.set_last_detection_at(started_at)
        return result

    async def push_changes(
        self,
        portal: SourcePortal,
        entity_keys: list[str] | None = None,
    ) -> ReverseSyncResult:
        """Push pending field changes to the source portal."""
        engine = ReverseSyncEngine(
            self.store,
            portal,
            retry=self.retry,
            rate_limiter=RateLimiter.from_config(self.settings.reverse_rate_limit),
            cancel_token=self.cancel_token,
            auth_marker=self.settings.portal.auth_marker,
        )
        return await engine.run(entity_keys)
