"""
Reconciler - per-entity create/update decisions.

For every tracked row whose source hash differs from its last synced hash
(or every row, when forced):

1. With a remote id: UPDATE. A not-found response clears the row's sync
   state and falls through to CREATE (self-heal).
2. Without a remote id: CREATE and record the assigned id.

Errors are recorded per entity and never abort the batch.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from club_sync.connectors.collaborators import RemoteCollaborator
from club_sync.connectors.tracking import TrackedEntity, TrackingStore
from club_sync.core.concurrency import CancellationToken, RateLimiter
from club_sync.core.retry import RetryPolicy, retry_async
from club_sync.errors import RemoteNotFound, SyncError
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)

SyncedHook = Callable[[TrackedEntity, str], Awaitable[list[str]]]


@dataclass
class EntityError:
    """Structured failure of one entity."""

    key: str
    message: str
    details: Any = None

    def __str__(self) -> str:
        return f"{self.key}: {self.message}"


@dataclass
class SyncResult:
    """Outcome of syncing one entity type. Every entity is counted exactly once."""

    entity_type: str
    total: int = 0
    synced: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    pending: int = 0
    cancelled: bool = False
    errors: list[EntityError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def duration_seconds(self) -> float:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    def add_error(self, key: str, error: Exception) -> None:
        details = getattr(error, "details", None)
        message = getattr(error, "message", None) or str(error)
        self.errors.append(EntityError(key=key, message=message, details=details))

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "total": self.total,
            "synced": self.synced,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "deleted": self.deleted,
            "pending": self.pending,
            "cancelled": self.cancelled,
            "errors": [
                {"key": e.key, "message": e.message, "details": e.details} for e in self.errors
            ],
            "warnings": list(self.warnings),
        }


ProgressCallback = Callable[[SyncResult], None]


class Reconciler:
    """
    Drives one entity type's tracked rows to their remote target.

    Example:
        reconciler = Reconciler(store, collaborator, retry=RetryPolicy())
        result = await reconciler.run(force=False)
        print(result.created, result.updated, result.skipped)
    """

    def __init__(
        self,
        store: TrackingStore,
        collaborator: RemoteCollaborator,
        retry: RetryPolicy | None = None,
        rate_limiter: RateLimiter | None = None,
        cancel_token: CancellationToken | None = None,
        on_synced: SyncedHook | None = None,
    ) -> None:
        self.store = store
        self.collaborator = collaborator
        self.entity_type = collaborator.entity_type
        self.retry = retry or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.cancel_token = cancel_token or CancellationToken()
        self.on_synced = on_synced

    async def run(
        self,
        force: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Reconcile every row that needs syncing."""
        result = SyncResult(entity_type=self.entity_type, start_time=time.time())

        tracked = len(self.store.all(self.entity_type))
        needing = self.store.get_needing_sync(self.entity_type, force=force)
        result.total = tracked
        result.skipped = tracked - len(needing)

        logger.info(
            f"{self.entity_type}: {len(needing)} to sync, {result.skipped} unchanged"
        )
        if on_progress:
            on_progress(result)

        for index, entity in enumerate(needing):
            if self.cancel_token.cancelled:
                result.cancelled = True
                result.pending = len(needing) - index
                logger.warning(
                    f"{self.entity_type}: cancelled with {result.pending} entities pending"
                )
                break

            await self.rate_limiter.pause()
            await self.sync_entity(entity, result)

            if on_progress:
                on_progress(result)

        result.end_time = time.time()
        return result

    async def sync_entity(self, entity: TrackedEntity, result: SyncResult) -> None:
        """Update, self-heal or create one entity and record the outcome."""
        label = entity.label

        if entity.remote_id is not None:
            try:
                await self._call(self.collaborator.update, entity, f"update {label}")
            except RemoteNotFound:
                logger.info(
                    f"{self.entity_type} {label}: remote {entity.remote_id} is gone, recreating"
                )
                self.store.update_sync_state(self.entity_type, entity.key, None, None)
                entity.remote_id = None
                entity.remote_position = None
                entity.last_synced_hash = None
            except SyncError as e:
                logger.error(f"{self.entity_type} {label}: update failed: {e}")
                result.add_error(label, e)
                return
            else:
                self.store.update_sync_state(
                    self.entity_type,
                    entity.key,
                    entity.source_hash,
                    entity.remote_id,
                    entity.remote_position,
                )
                result.updated += 1
                result.synced += 1
                logger.debug(f"{self.entity_type} {label}: updated {entity.remote_id}")
                await self._after_sync(entity, entity.remote_id, result)
                return

        try:
            ref = await self._call(self.collaborator.create, entity, f"create {label}")
        except SyncError as e:
            logger.error(f"{self.entity_type} {label}: create failed: {e}")
            result.add_error(label, e)
            return

        self.store.update_sync_state(
            self.entity_type, entity.key, entity.source_hash, ref.remote_id, ref.position
        )
        entity.remote_id = ref.remote_id
        entity.remote_position = ref.position
        result.created += 1
        result.synced += 1
        logger.debug(f"{self.entity_type} {label}: created {ref.remote_id}")
        await self._after_sync(entity, ref.remote_id, result)

    async def _call(
        self,
        operation: Callable[[TrackedEntity], Awaitable[Any]],
        entity: TrackedEntity,
        description: str,
    ) -> Any:
        return await retry_async(
            lambda: operation(entity),
            self.retry,
            description=f"{self.entity_type} {description}",
        )

    async def _after_sync(self, entity: TrackedEntity, remote_id: str, result: SyncResult) -> None:
        if self.on_synced is None:
            return
        try:
            warnings = await self.on_synced(entity, remote_id)
        except (SyncError, ValueError) as e:
            warnings = [f"{entity.label}: follow-up after sync failed: {e}"]
        for warning in warnings:
            logger.warning(f"{self.entity_type} {warning}")
        result.warnings.extend(warnings)
