"""Shared fixtures and in-memory remote fakes."""

from __future__ import annotations

import itertools
from pathlib import Path
from typing import Any, AsyncIterator, Iterator

import pytest

from club_sync.config import Settings
from club_sync.connectors.collaborators import RemoteRef
from club_sync.connectors.tracking import TrackedEntity, TrackingStore
from club_sync.core.retry import RetryPolicy
from club_sync.core.reverse_sync import FieldSpec
from club_sync.errors import RemoteApiError, RemoteNotFound, TransientRemoteError


class FakeCollaborator:
    """Remote target kept in a dict of remote id -> payload."""

    def __init__(
        self,
        entity_type: str,
        listing: str | None = None,
        page_size: int = 2,
        first_id: int = 100,
    ) -> None:
        self.entity_type = entity_type
        self.listing = listing
        self.page_size = page_size
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_keys: set[str] = set()
        self.transient_failures = 0
        self._ids = itertools.count(first_id)

    def _check(self, entity: TrackedEntity) -> None:
        if self.transient_failures:
            self.transient_failures -= 1
            raise TransientRemoteError("503 from fake", status=503)
        if entity.label in self.fail_keys:
            raise RemoteApiError(f"rejected {entity.label}", status=400)

    async def create(self, entity: TrackedEntity) -> RemoteRef:
        self._check(entity)
        remote_id = str(next(self._ids))
        self.objects[remote_id] = dict(entity.payload)
        self.calls.append(("create", entity.label))
        return RemoteRef(remote_id)

    async def update(self, entity: TrackedEntity) -> None:
        self._check(entity)
        if entity.remote_id not in self.objects:
            raise RemoteNotFound(f"{entity.remote_id} is gone", status=404)
        self.objects[entity.remote_id] = dict(entity.payload)
        self.calls.append(("update", entity.label))

    async def delete(self, entity: TrackedEntity) -> None:
        self.calls.append(("delete", entity.label))
        if self.objects.pop(entity.remote_id, None) is None:
            raise RemoteNotFound(f"{entity.remote_id} is gone", status=404)

    async def iter_remote_ids(self) -> AsyncIterator[list[str]]:
        ids = list(self.objects)
        for start in range(0, len(ids), self.page_size):
            yield ids[start:start + self.page_size]

    async def delete_remote(self, remote_id: str) -> None:
        self.calls.append(("delete_remote", remote_id))
        if self.objects.pop(remote_id, None) is None:
            raise RemoteNotFound(f"{remote_id} is gone", status=404)

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)


class FakeRelationships:
    """Person relationship fields, keyed by person id."""

    def __init__(self) -> None:
        self.edges: dict[str, list[dict[str, Any]]] = {}
        self.writes = 0

    async def get_relationships(self, person_id: str) -> list[dict[str, Any]]:
        return list(self.edges.get(str(person_id), []))

    async def put_relationships(self, person_id: str, relationships: list[dict[str, Any]]) -> None:
        self.writes += 1
        self.edges[str(person_id)] = list(relationships)


class FakePortal:
    """
    Source portal holding field values per (entity key, field name).

    ``corrupt`` maps a stage to a value that read-back returns instead of
    the saved one. ``expired_opens`` is the number of next navigations that
    land on the login page.
    """

    LOGIN_URL = "https://portal.example/auth/realms/club/login"

    def __init__(self) -> None:
        self.values: dict[tuple[str, str], Any] = {}
        self.corrupt: dict[str, Any] = {}
        self.expired_opens = 0
        self.logins = 0
        self.saved_stages: list[tuple[str, str]] = []
        self._entity: str | None = None
        self._draft: dict[str, Any] = {}

    async def open_stage(self, entity_key: str, stage: str) -> str:
        if self.expired_opens:
            self.expired_opens -= 1
            return self.LOGIN_URL
        self._entity = entity_key
        return f"https://portal.example/members/{entity_key}/{stage}"

    async def authenticate(self) -> None:
        self.logins += 1

    async def begin_edit(self, stage: str) -> None:
        self._draft = {}

    async def fill(self, stage: str, field: FieldSpec, value: Any) -> None:
        self._draft[field.name] = value

    async def save(self, stage: str) -> None:
        for name, value in self._draft.items():
            self.values[(self._entity, name)] = value
        self.saved_stages.append((self._entity, stage))

    async def read(self, stage: str, field: FieldSpec) -> Any:
        if stage in self.corrupt:
            return self.corrupt[stage]
        return self.values.get((self._entity, field.name))


@pytest.fixture
def store(tmp_path: Path) -> Iterator[TrackingStore]:
    """Tracking store in a temporary directory."""
    tracking = TrackingStore(tmp_path / "tracking.sqlite")
    yield tracking
    tracking.close()


@pytest.fixture
def no_wait() -> RetryPolicy:
    """Three attempts without any delay."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every target configured and no pauses."""
    return Settings(
        tracking_db=tmp_path / "tracking.sqlite",
        directory={
            "base_url": "https://club.example",
            "username": "sync",
            "app_password": "secret",
        },
        mailing_list={"api_key": "key", "list_id": "list1"},
        helpdesk={"base_url": "https://help.example", "api_key": "key"},
        retry={"max_attempts": 2, "base_delay": 0.0, "max_delay": 0.0, "jitter": 0.0},
        rate_limit={"min_delay": 0.0, "max_delay": 0.0},
        reverse_rate_limit={"min_delay": 0.0, "max_delay": 0.0},
        sync={"photos_dir": tmp_path / "photos"},
    )


def member_record(member_id: str, first_name: str, last_name: str, **extra: Any) -> dict[str, Any]:
    return {
        "kind": "member",
        "member_id": member_id,
        "first_name": first_name,
        "last_name": last_name,
        **extra,
    }


@pytest.fixture
def snapshot_document() -> dict[str, Any]:
    """Two teams, one committee and three members, two of them siblings."""
    return {
        "captured_at": "2024-03-01T08:00:00+00:00",
        "records": [
            {"kind": "team", "name": "JO11-1", "code": "J11", "gender": "mixed"},
            {"kind": "team", "name": "Heren 1", "code": "H1"},
            {"kind": "committee", "name": "Bestuur", "description": "Board"},
            member_record(
                "M001", "Anna", "Jansen",
                email="anna@example.org",
                birth_date="2014-05-02",
                teams=[{"name": "JO11-1", "role": "Player"}],
                parents=[{"name": "Piet Jansen", "email": "Piet@Example.org"}],
            ),
            member_record(
                "M002", "Bram", "Jansen",
                email="bram@example.org",
                teams=[{"name": "JO11-1"}],
                parents=[{"name": "Piet Jansen", "email": "piet@example.org"}],
            ),
            member_record(
                "M003", "Piet", "Jansen",
                email="piet@example.org",
                mobile="0612345678",
                teams=[{"name": "Heren 1"}],
                committees=[{"name": "Bestuur", "role": "Chair"}],
            ),
        ],
    }
