"""
Orphan Resolver.

Two passes, both needed:

- tracked-but-absent: rows whose natural key left the source are deleted
  remotely (not-found counts as success) and then locally, regardless of
  the remote outcome
- untracked-remote: the full remote listing is collected first, then every
  object whose id the tracking store does not know is deleted
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from club_sync.connectors.collaborators import ListingCollaborator, RemoteCollaborator
from club_sync.connectors.tracking import TrackingStore
from club_sync.core.concurrency import CancellationToken, RateLimiter
from club_sync.core.reconciler import EntityError
from club_sync.core.retry import RetryPolicy, retry_async
from club_sync.errors import RemoteNotFound, SyncError
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass
class OrphanResult:
    """Deletions performed by one pass."""

    scope: str
    deleted: int = 0
    remote_deleted: int = 0
    already_gone: int = 0
    cancelled: bool = False
    errors: list[EntityError] = field(default_factory=list)


class OrphanResolver:
    """
    Example:
        resolver = OrphanResolver(store, retry=RetryPolicy())
        await resolver.remove_absent(collaborator, current_keys)
        await resolver.remove_untracked(collaborator, ["member", "parent"])
    """

    def __init__(
        self,
        store: TrackingStore,
        retry: RetryPolicy | None = None,
        rate_limiter: RateLimiter | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.store = store
        self.retry = retry or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.cancel_token = cancel_token or CancellationToken()

    async def remove_absent(
        self,
        collaborator: RemoteCollaborator,
        current_keys: Iterable[Sequence[str]],
    ) -> OrphanResult:
        """Delete tracked rows whose natural key is not in ``current_keys``."""
        entity_type = collaborator.entity_type
        result = OrphanResult(scope=entity_type)
        orphans = self.store.get_not_in_key_set(entity_type, current_keys)
        if orphans:
            logger.info(f"{entity_type}: removing {len(orphans)} orphan(s)")

        for entity in orphans:
            if self.cancel_token.cancelled:
                result.cancelled = True
                break

            if entity.remote_id is not None:
                await self.rate_limiter.pause()
                try:
                    await retry_async(
                        lambda: collaborator.delete(entity),
                        self.retry,
                        description=f"{entity_type} delete {entity.label}",
                    )
                    result.remote_deleted += 1
                except RemoteNotFound:
                    result.already_gone += 1
                except SyncError as e:
                    logger.error(f"{entity_type} {entity.label}: remote delete failed: {e}")
                    result.errors.append(
                        EntityError(entity.label, e.message, getattr(e, "details", None))
                    )

            self.store.delete(entity_type, entity.key)
            result.deleted += 1

        return result

    async def remove_untracked(
        self,
        collaborator: ListingCollaborator,
        known_types: Sequence[str],
    ) -> OrphanResult:
        """
        Delete remote objects in the collaborator's listing that no tracked
        row of ``known_types`` points at.

        The listing is read completely before anything is deleted so that
        deletions cannot shift the pages still to be read.
        """
        listing = collaborator.listing or collaborator.entity_type
        result = OrphanResult(scope=listing)

        remote_ids: list[str] = []
        async for page in collaborator.iter_remote_ids():
            remote_ids.extend(page)

        known: set[str] = set()
        for entity_type in known_types:
            known |= self.store.remote_ids(entity_type)

        untracked = [rid for rid in dict.fromkeys(remote_ids) if rid not in known]
        if untracked:
            logger.info(f"{listing}: removing {len(untracked)} untracked remote object(s)")

        for remote_id in untracked:
            if self.cancel_token.cancelled:
                result.cancelled = True
                break

            await self.rate_limiter.pause()
            try:
                await retry_async(
                    lambda: collaborator.delete_remote(remote_id),
                    self.retry,
                    description=f"{listing} delete {remote_id}",
                )
                result.remote_deleted += 1
                result.deleted += 1
            except RemoteNotFound:
                result.already_gone += 1
            except SyncError as e:
                logger.error(f"{listing} {remote_id}: remote delete failed: {e}")
                result.errors.append(
                    EntityError(remote_id, e.message, getattr(e, "details", None))
                )

        return result
