"""
Reverse Sync Engine.

Pushes field edits made on the directory back to the source administration
portal. Per entity, stages run in a fixed order; each stage is navigate,
edit, fill, save, then read every field back and compare.

Fail-fast: the first stage that still fails after its retries aborts the
entity, and none of that entity's changes are marked synced. Stages that
already succeeded are not rolled back; the result reports them in
``stages_completed``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from club_sync.connectors.tracking import FieldChange, TrackingStore
from club_sync.core.concurrency import CancellationToken, RateLimiter
from club_sync.core.retry import RetryPolicy, retry_async
from club_sync.errors import SessionExpiredError, StageError, SyncError, VerificationError
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)

STAGE_ORDER: tuple[str, ...] = ("general", "other", "financial")


@dataclass(frozen=True)
class FieldSpec:
    """A portal field and the stage (page) it is edited on."""

    name: str
    stage: str
    kind: str = "text"


PORTAL_FIELDS: dict[str, FieldSpec] = {
    spec.name: spec
    for spec in (
        FieldSpec("email", "general"),
        FieldSpec("email2", "general"),
        FieldSpec("mobile", "general"),
        FieldSpec("phone", "general"),
        FieldSpec("helpdesk_id", "other"),
        FieldSpec("vog_date", "other"),
        FieldSpec("financial_block", "financial", kind="checkbox"),
    )
}


class SourcePortal(Protocol):
    """
    Browser session on the source administration.

    ``open_stage`` returns the URL the browser landed on, so a redirect to
    the login surface can be detected.
    """

    async def open_stage(self, entity_key: str, stage: str) -> str: ...

    async def authenticate(self) -> None: ...

    async def begin_edit(self, stage: str) -> None: ...

    async def fill(self, stage: str, field: FieldSpec, value: Any) -> None: ...

    async def save(self, stage: str) -> None: ...

    async def read(self, stage: str, field: FieldSpec) -> Any: ...


def parse_checkbox(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on", "checked")
    return bool(value)


def values_match(spec: FieldSpec, expected: Any, actual: Any) -> bool:
    if spec.kind == "checkbox":
        return parse_checkbox(expected) == parse_checkbox(actual)
    return str(expected if expected is not None else "").strip() == str(
        actual if actual is not None else ""
    ).strip()


@dataclass
class EntityPushResult:
    """Outcome of pushing one entity's changes."""

    entity_key: str
    success: bool = False
    stages_completed: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    error: str | None = None
    changes: int = 0


@dataclass
class ReverseSyncResult:
    total: int = 0
    synced: int = 0
    failed: int = 0
    pending: int = 0
    cancelled: bool = False
    entities: list[EntityPushResult] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def errors(self) -> list[EntityPushResult]:
        return [e for e in self.entities if not e.success]


def group_changes(changes: list[FieldChange]) -> dict[str, dict[str, list[FieldChange]]]:
    """Group changes by entity, then by stage in stage order."""
    grouped: dict[str, dict[str, list[FieldChange]]] = {}
    for change in changes:
        by_stage = grouped.setdefault(change.entity_key, {})
        by_stage.setdefault(change.target_stage, []).append(change)

    for entity_key, by_stage in grouped.items():
        unknown = set(by_stage) - set(STAGE_ORDER)
        if unknown:
            raise ValueError(f"Unknown stage(s) {sorted(unknown)} for {entity_key}")
        grouped[entity_key] = {s: by_stage[s] for s in STAGE_ORDER if s in by_stage}
    return grouped


class ReverseSyncEngine:
    """
    Example:
        engine = ReverseSyncEngine(store, portal, retry=RetryPolicy.from_config(settings.retry))
        result = await engine.run()
    """

    def __init__(
        self,
        store: TrackingStore,
        portal: SourcePortal,
        retry: RetryPolicy | None = None,
        rate_limiter: RateLimiter | None = None,
        cancel_token: CancellationToken | None = None,
        auth_marker: str = "/auth/realms/",
        fields: dict[str, FieldSpec] | None = None,
    ) -> None:
        self.store = store
        self.portal = portal
        self.retry = retry or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.cancel_token = cancel_token or CancellationToken()
        self.auth_marker = auth_marker
        self.fields = fields or PORTAL_FIELDS

    async def run(self, entity_keys: list[str] | None = None) -> ReverseSyncResult:
        """Push every unsynced change, one entity at a time."""
        result = ReverseSyncResult(start_time=time.time())
        changes = self.store.get_unsynced_changes()
        if entity_keys:
            changes = [c for c in changes if c.entity_key in entity_keys]

        grouped = group_changes(changes)
        result.total = len(grouped)
        logger.info(f"Reverse sync: {len(changes)} change(s) for {len(grouped)} entities")

        for index, (entity_key, by_stage) in enumerate(grouped.items()):
            if self.cancel_token.cancelled:
                result.cancelled = True
                result.pending = len(grouped) - index
                break

            await self.rate_limiter.pause()
            outcome = await self.push_entity(entity_key, by_stage)
            result.entities.append(outcome)
            if outcome.success:
                result.synced += 1
            else:
                result.failed += 1

        result.end_time = time.time()
        return result

    async def push_entity(
        self,
        entity_key: str,
        by_stage: dict[str, list[FieldChange]],
    ) -> EntityPushResult:
        """Run every stage for one entity; commit tracking only if all pass."""
        outcome = EntityPushResult(
            entity_key=entity_key,
            changes=sum(len(c) for c in by_stage.values()),
        )

        for stage, changes in by_stage.items():
            # Later detections of the same field supersede earlier ones.
            values: dict[str, Any] = {}
            for change in sorted(changes, key=lambda c: c.id or 0):
                values[change.field_name] = change.new_value

            try:
                await retry_async(
                    lambda: self._run_stage(entity_key, stage, values),
                    self.retry,
                    retry_on=(SyncError, TimeoutError),
                    description=f"{entity_key} stage {stage}",
                )
            except (SyncError, TimeoutError) as e:
                outcome.failed_stage = stage
                outcome.error = getattr(e, "message", None) or str(e)
                logger.error(
                    f"{entity_key}: stage {stage} failed, aborting "
                    f"(completed: {', '.join(outcome.stages_completed) or 'none'}): {outcome.error}"
                )
                return outcome
            except Exception as e:
                # Browser automation raises its own types; one entity never stops the run.
                outcome.failed_stage = stage
                outcome.error = f"{type(e).__name__}: {e}"
                logger.exception(f"{entity_key}: stage {stage} failed unexpectedly, aborting")
                return outcome

            outcome.stages_completed.append(stage)

        all_changes = [c for changes in by_stage.values() for c in changes]
        self.store.mark_entity_pushed(
            entity_key,
            [c.id for c in all_changes if c.id is not None],
            [c.field_name for c in all_changes],
        )
        outcome.success = True
        logger.info(f"{entity_key}: pushed {outcome.changes} change(s)")
        return outcome

    async def _run_stage(self, entity_key: str, stage: str, values: dict[str, Any]) -> None:
        await self._navigate(entity_key, stage)
        await self.portal.begin_edit(stage)

        for name, value in values.items():
            await self.portal.fill(stage, self._spec(name, stage), value)
        await self.portal.save(stage)

        for name, value in values.items():
            spec = self._spec(name, stage)
            actual = await self.portal.read(stage, spec)
            if not values_match(spec, value, actual):
                raise VerificationError(name, value, actual, stage=stage)

    async def _navigate(self, entity_key: str, stage: str) -> None:
        url = await self.portal.open_stage(entity_key, stage)
        if self.auth_marker not in url:
            return

        logger.warning(f"Session expired opening {stage} for {entity_key}; logging in again")
        await self.portal.authenticate()
        url = await self.portal.open_stage(entity_key, stage)
        if self.auth_marker in url:
            raise SessionExpiredError(
                f"Still on the login page after re-authenticating ({stage})", stage=stage
            )

    def _spec(self, name: str, stage: str) -> FieldSpec:
        spec = self.fields.get(name)
        if spec is None:
            raise StageError(f"Field {name} is not editable on the portal", stage=stage)
        return spec
