"""Tests for the orphan resolver."""

import pytest

from club_sync.connectors.tracking import SourceRow, TrackingStore
from club_sync.core.concurrency import CancellationToken
from club_sync.core.orphans import OrphanResolver
from club_sync.core.reconciler import Reconciler
from club_sync.core.retry import RetryPolicy
from club_sync.errors import RemoteApiError

from conftest import FakeCollaborator


async def synced(store: TrackingStore, remote: FakeCollaborator, *keys: str) -> None:
    store.upsert_many(remote.entity_type, [SourceRow((k,), {"name": k}) for k in keys])
    await Reconciler(store, remote, retry=RetryPolicy.none()).run()


class TestRemoveAbsent:
    """Tests for tracked-but-absent cleanup."""

    @pytest.mark.asyncio
    async def test_absent_key_deleted_remotely_and_locally(self, store: TrackingStore) -> None:
        remote = FakeCollaborator("team")
        await synced(store, remote, "A", "B")
        a_before = store.get("team", ("A",))

        result = await OrphanResolver(store).remove_absent(remote, [("A",)])

        assert result.deleted == 1
        assert result.remote_deleted == 1
        assert store.get("team", ("B",)) is None
        assert remote.calls[-1] == ("delete", "B")
        assert store.get("team", ("A",)) == a_before

    @pytest.mark.asyncio
    async def test_remote_not_found_is_success(self, store: TrackingStore) -> None:
        remote = FakeCollaborator("team")
        await synced(store, remote, "A", "B")
        remote.objects.clear()

        result = await OrphanResolver(store).remove_absent(remote, [("A",)])

        assert result.already_gone == 1
        assert result.errors == []
        assert store.get("team", ("B",)) is None

    @pytest.mark.asyncio
    async def test_local_delete_happens_after_remote_failure(self, store: TrackingStore) -> None:
        remote = FakeCollaborator("team")
        await synced(store, remote, "A", "B")

        async def refuse(entity):
            raise RemoteApiError("forbidden", status=403)

        remote.delete = refuse
        result = await OrphanResolver(store, retry=RetryPolicy.none()).remove_absent(remote, [("A",)])

        assert result.deleted == 1
        assert len(result.errors) == 1
        assert store.get("team", ("B",)) is None

    @pytest.mark.asyncio
    async def test_never_synced_rows_only_deleted_locally(self, store: TrackingStore) -> None:
        remote = FakeCollaborator("team")
        store.upsert_many("team", [SourceRow(("A",), {})])

        result = await OrphanResolver(store).remove_absent(remote, [])

        assert result.deleted == 1
        assert result.remote_deleted == 0
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_cancelled(self, store: TrackingStore) -> None:
        remote = FakeCollaborator("team")
        await synced(store, remote, "A", "B")
        token = CancellationToken()
        token.cancel()

        result = await OrphanResolver(store, cancel_token=token).remove_absent(remote, [])

        assert result.cancelled
        assert len(store.all("team")) == 2


class TestRemoveUntracked:
    """Tests for untracked-remote cleanup."""

    @pytest.mark.asyncio
    async def test_unknown_remote_ids_deleted(self, store: TrackingStore) -> None:
        remote = FakeCollaborator("team", listing="teams", page_size=2)
        await synced(store, remote, "A", "B")
        remote.objects.update({"900": {}, "901": {}, "902": {}})

        result = await OrphanResolver(store).remove_untracked(remote, ["team"])

        assert result.deleted == 3
        assert set(remote.objects) == store.remote_ids("team")

    @pytest.mark.asyncio
    async def test_listing_shared_by_several_types(self, store: TrackingStore) -> None:
        """Ids tracked by any type of the listing are kept."""
        people = FakeCollaborator("member", listing="people")
        await synced(store, people, "M1")
        parents = FakeCollaborator("parent", listing="people")
        parents.objects = people.objects
        parents._ids = iter(range(500, 600))
        await synced(store, parents, "P1")

        result = await OrphanResolver(store).remove_untracked(people, ["member", "parent"])

        assert result.deleted == 0
        assert len(people.objects) == 2

    @pytest.mark.asyncio
    async def test_listing_read_completely_before_deleting(self, store: TrackingStore) -> None:
        """Deletions never shift pages that are still to be read."""
        remote = FakeCollaborator("team", listing="teams", page_size=1)
        remote.objects.update({str(i): {} for i in range(5)})
        deleted_while_listing: list[str] = []

        original_delete = remote.delete_remote

        async def delete_remote(remote_id: str) -> None:
            deleted_while_listing.append(remote_id)
            await original_delete(remote_id)

        remote.delete_remote = delete_remote
        pages_seen: list[list[str]] = []
        original_iter = remote.iter_remote_ids

        async def iter_remote_ids():
            async for page in original_iter():
                assert deleted_while_listing == []
                pages_seen.append(page)
                yield page

        remote.iter_remote_ids = iter_remote_ids
        result = await OrphanResolver(store).remove_untracked(remote, ["team"])

        assert len(pages_seen) == 5
        assert result.deleted == 5
        assert remote.objects == {}
