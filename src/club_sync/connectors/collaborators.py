"""
Remote collaborators.

A collaborator adapts one entity type to its remote target using the
create/update/delete contract the reconciler and orphan resolver rely on:

- ``create(entity)`` returns the assigned remote id (and list position for
  positional types)
- ``update(entity)`` raises RemoteNotFound when the remote object is gone
- ``delete(entity)`` may raise RemoteNotFound; callers treat it as success
- ``iter_remote_ids()`` pages through the remote listing, when supported
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Protocol

from club_sync.config import Settings
from club_sync.connectors.directory import DirectoryClient
from club_sync.connectors.helpdesk import HelpdeskClient
from club_sync.connectors.mailing_list import MailingListClient, classify_upsert
from club_sync.connectors.tracking import TrackedEntity, TrackingStore
from club_sync.core.relationships import same_identity
from club_sync.errors import RemoteApiError, RemoteNotFound, SyncError
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass
class RemoteRef:
    """Identifier of a created remote object."""

    remote_id: str
    position: int | None = None


class RemoteCollaborator(Protocol):
    entity_type: str
    listing: str | None

    async def create(self, entity: TrackedEntity) -> RemoteRef: ...

    async def update(self, entity: TrackedEntity) -> None: ...

    async def delete(self, entity: TrackedEntity) -> None: ...


class ListingCollaborator(RemoteCollaborator, Protocol):
    def iter_remote_ids(self) -> AsyncIterator[list[str]]: ...

    async def delete_remote(self, remote_id: str) -> None: ...


def supports_listing(collaborator: RemoteCollaborator) -> bool:
    return collaborator.listing is not None and hasattr(collaborator, "iter_remote_ids")


def _remote_int(remote_id: str | None) -> Any:
    if remote_id is not None and remote_id.isdigit():
        return int(remote_id)
    return remote_id


def _member_person_id(store: TrackingStore, member_id: str) -> str:
    member = store.get("member", (member_id,))
    if member is None or member.remote_id is None:
        raise RemoteApiError(f"Member {member_id} has no remote id yet")
    return member.remote_id


def _acf_date(value: str | None) -> str:
    """ISO date to the ACF storage format (YYYYMMDD); blank when absent."""
    return value.replace("-", "") if value else ""


# =============================================================================
# Directory
# =============================================================================


class DirectoryResource:
    """Posts of one directory resource, rendered from the tracked payload."""

    def __init__(
        self,
        client: DirectoryClient,
        entity_type: str,
        resource: str,
        render: Callable[[TrackedEntity], dict[str, Any]],
        listing: str | None = None,
    ) -> None:
        self.client = client
        self.entity_type = entity_type
        self.resource = resource
        self.render = render
        self.listing = listing

    async def create(self, entity: TrackedEntity) -> RemoteRef:
        created = await self.client.create(self.resource, self.render(entity))
        return RemoteRef(str(created["id"]))

    async def update(self, entity: TrackedEntity) -> None:
        await self.client.update(self.resource, entity.remote_id, self.render(entity))

    async def delete(self, entity: TrackedEntity) -> None:
        await self.client.delete(self.resource, entity.remote_id)

    async def iter_remote_ids(self) -> AsyncIterator[list[str]]:
        async for page in self.client.iter_pages(self.resource, {"_fields": "id"}):
            yield [str(item["id"]) for item in page]

    async def delete_remote(self, remote_id: str) -> None:
        await self.client.delete(self.resource, remote_id)


def render_team(entity: TrackedEntity) -> dict[str, Any]:
    p = entity.payload
    return {
        "title": p["name"],
        "status": "publish",
        "acf": {
            "team_code": p.get("code") or "",
            "gender": p.get("gender") or "",
            "activity": p.get("activity") or "",
        },
    }


def render_committee(entity: TrackedEntity) -> dict[str, Any]:
    p = entity.payload
    return {
        "title": p["name"],
        "status": "publish",
        "content": p.get("description") or "",
    }


def render_member(entity: TrackedEntity) -> dict[str, Any]:
    p = entity.payload
    name = " ".join(x for x in (p.get("first_name"), p.get("infix"), p.get("last_name")) if x)
    return {
        "title": name,
        "status": "publish",
        "acf": {
            "member_id": p["member_id"],
            "first_name": p.get("first_name") or "",
            "infix": p.get("infix") or "",
            "last_name": p.get("last_name") or "",
            "gender": p.get("gender") or "",
            "birth_date": _acf_date(p.get("birth_date")),
            "member_since": _acf_date(p.get("member_since")),
            "email": p.get("email") or "",
            "email2": p.get("email2") or "",
            "mobile": p.get("mobile") or "",
            "phone": p.get("phone") or "",
            "vog_date": _acf_date(p.get("vog_date")),
            "financial_block": bool(p.get("financial_block")),
            "helpdesk_id": p.get("helpdesk_id") or "",
        },
    }


class ParentCollaborator(DirectoryResource):
    """
    Parents live in the people listing next to members.

    A parent who is also a member (same email and same full name) is not
    created twice: the member's person is reused, and neither updated nor
    deleted on the parent's behalf.
    """

    def __init__(self, client: DirectoryClient, store: TrackingStore) -> None:
        super().__init__(client, "parent", "people", self.render_parent, listing="people")
        self.store = store

    @staticmethod
    def render_parent(entity: TrackedEntity) -> dict[str, Any]:
        p = entity.payload
        first, _, last = p["name"].partition(" ")
        return {
            "title": p["name"],
            "status": "publish",
            "acf": {
                "first_name": first,
                "last_name": last,
                "email": p["email"],
                "phone": p.get("phone") or "",
                "is_parent": True,
            },
        }

    def matching_member(self, entity: TrackedEntity) -> TrackedEntity | None:
        email = entity.payload["email"]
        for member in self.store.find_by_payload_field("member", "email", email):
            full_name = " ".join(
                x for x in (
                    member.payload.get("first_name"),
                    member.payload.get("infix"),
                    member.payload.get("last_name"),
                ) if x
            )
            if member.remote_id and same_identity(
                member.payload.get("email"), full_name, email, entity.payload["name"]
            ):
                return member
        return None

    def _is_member_person(self, remote_id: str | None) -> bool:
        return remote_id is not None and self.store.find_by_remote_id("member", remote_id) is not None

    async def create(self, entity: TrackedEntity) -> RemoteRef:
        member = self.matching_member(entity)
        if member is not None:
            logger.debug(f"Parent {entity.label} is member {member.label}; reusing person")
            return RemoteRef(member.remote_id)
        return await super().create(entity)

    async def update(self, entity: TrackedEntity) -> None:
        if self._is_member_person(entity.remote_id):
            return
        await super().update(entity)

    async def delete(self, entity: TrackedEntity) -> None:
        if self._is_member_person(entity.remote_id):
            return
        await super().delete(entity)


class ImportantDateCollaborator(DirectoryResource):
    """Important dates point at the member's person post."""

    def __init__(self, client: DirectoryClient, store: TrackingStore) -> None:
        super().__init__(
            client, "important_date", "important-dates", self.render_date,
            listing="important_dates",
        )
        self.store = store

    def render_date(self, entity: TrackedEntity) -> dict[str, Any]:
        p = entity.payload
        person_id = _member_person_id(self.store, p["member_id"])
        return {
            "title": p["title"],
            "status": "publish",
            "acf": {
                "date_value": p["date"],
                "date_type": [p["date_type"]],
                "related_people": [_remote_int(person_id)],
            },
        }


class WorkHistoryCollaborator:
    """
    Entries in a person's ``acf.work_history`` list, addressed by position.

    The remote id is the person's id; the position is the entry's index.
    Removing an assignment ends the entry instead of deleting it, so the
    positions of other tracked entries stay valid.
    """

    entity_type = "work_history"
    listing = None
    positional = True

    def __init__(
        self,
        client: DirectoryClient,
        store: TrackingStore,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.client = client
        self.store = store
        self.today = today

    def _person_id(self, entity: TrackedEntity) -> str:
        return _member_person_id(self.store, entity.payload["member_id"])

    def _group_id(self, entity: TrackedEntity) -> str:
        kind = entity.payload["kind"]
        group = self.store.get(kind, (entity.payload["name"],))
        if group is None or group.remote_id is None:
            raise RemoteApiError(f"{kind.capitalize()} {entity.payload['name']} has no remote id yet")
        return group.remote_id

    def _job_title(self, entity: TrackedEntity) -> str:
        role = entity.payload.get("role")
        if role:
            return role
        return "Player" if entity.payload["kind"] == "team" else "Member"

    async def _history(self, person_id: str) -> list[dict[str, Any]]:
        person = await self.client.get("people", person_id)
        return list((person.get("acf") or {}).get("work_history") or [])

    async def _save(self, person_id: str, history: list[dict[str, Any]]) -> None:
        await self.client.update("people", person_id, {"acf": {"work_history": history}})

    async def create(self, entity: TrackedEntity) -> RemoteRef:
        person_id = self._person_id(entity)
        group_id = _remote_int(self._group_id(entity))
        history = await self._history(person_id)

        position = next(
            (i for i, e in enumerate(history) if e.get("team") == group_id and e.get("is_current")),
            None,
        )
        if position is None:
            history.append(
                {
                    "job_title": self._job_title(entity),
                    "is_current": True,
                    "start_date": _acf_date(entity.payload.get("start_date")),
                    "end_date": "",
                    "team": group_id,
                }
            )
            position = len(history) - 1
        else:
            history[position] = {**history[position], "job_title": self._job_title(entity)}

        await self._save(person_id, history)
        return RemoteRef(person_id, position)

    async def update(self, entity: TrackedEntity) -> None:
        person_id = self._person_id(entity)
        if person_id != entity.remote_id:
            raise RemoteNotFound(f"Person for {entity.label} was recreated")

        history = await self._history(person_id)
        position = entity.remote_position
        if position is None or not 0 <= position < len(history):
            raise RemoteNotFound(f"Work history entry {position} of person {person_id} is gone")

        history[position] = {
            **history[position],
            "job_title": self._job_title(entity),
            "is_current": True,
            "end_date": "",
            "team": _remote_int(self._group_id(entity)),
        }
        await self._save(person_id, history)

    async def delete(self, entity: TrackedEntity) -> None:
        history = await self._history(entity.remote_id)
        position = entity.remote_position
        if position is None or not 0 <= position < len(history):
            raise RemoteNotFound(f"Work history entry {position} of person {entity.remote_id} is gone")

        history[position] = {
            **history[position],
            "is_current": False,
            "end_date": self.today().strftime("%Y%m%d"),
        }
        await self._save(entity.remote_id, history)


class PhotoCollaborator:
    """
    A member's photo, attached to the member's person.

    The remote id is the person's id. An upload replaces the current photo,
    so create and update send the same request; when the person was
    recreated the update reports not-found and the photo is uploaded to the
    new person.
    """

    entity_type = "photo"
    listing = None

    def __init__(self, client: DirectoryClient, store: TrackingStore, photos_dir: Path) -> None:
        self.client = client
        self.store = store
        self.photos_dir = photos_dir

    def _content(self, entity: TrackedEntity) -> bytes:
        path = self.photos_dir / entity.payload["filename"]
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise SyncError(f"Photo file {path} disappeared before upload") from None

    async def _upload(self, person_id: str, entity: TrackedEntity) -> None:
        await self.client.upload_photo(person_id, entity.payload["filename"], self._content(entity))

    async def create(self, entity: TrackedEntity) -> RemoteRef:
        person_id = _member_person_id(self.store, entity.payload["member_id"])
        await self._upload(person_id, entity)
        return RemoteRef(person_id)

    async def update(self, entity: TrackedEntity) -> None:
        person_id = _member_person_id(self.store, entity.payload["member_id"])
        if person_id != entity.remote_id:
            raise RemoteNotFound(f"Person for photo {entity.label} was recreated")
        await self._upload(person_id, entity)

    async def delete(self, entity: TrackedEntity) -> None:
        await self.client.delete_photo(entity.remote_id)


# =============================================================================
# Helpdesk
# =============================================================================


class HelpdeskCustomerCollaborator:
    """Helpdesk customers. The listing also holds non-members, so it is never swept."""

    entity_type = "helpdesk_customer"
    listing = None

    def __init__(self, client: HelpdeskClient) -> None:
        self.client = client

    @staticmethod
    def render(entity: TrackedEntity) -> dict[str, Any]:
        p = entity.payload
        return {
            "firstName": p["first_name"],
            "lastName": p["last_name"],
            "emails": [{"value": e, "type": "home"} for e in p.get("emails", [])],
            "phones": [{"value": n, "type": "mobile"} for n in p.get("phones", [])],
        }

    async def create(self, entity: TrackedEntity) -> RemoteRef:
        return RemoteRef(await self.client.create_customer(self.render(entity)))

    async def update(self, entity: TrackedEntity) -> None:
        await self.client.update_customer(entity.remote_id, self.render(entity))

    async def delete(self, entity: TrackedEntity) -> None:
        await self.client.delete_customer(entity.remote_id)


# =============================================================================
# Mailing list
# =============================================================================


class SubscriberCollaborator:
    """Mailing-list members keyed by email."""

    entity_type = "subscriber"
    listing = "subscribers"

    def __init__(self, client: MailingListClient) -> None:
        self.client = client

    @staticmethod
    def custom_fields(entity: TrackedEntity) -> dict[str, Any]:
        p = entity.payload
        return {
            "first_name": p.get("first_name"),
            "last_name": p.get("last_name"),
            "member_ids": p.get("member_ids", []),
            "teams": p.get("teams", []),
        }

    async def create(self, entity: TrackedEntity) -> RemoteRef:
        member = await self.client.upsert_member(entity.payload["email"], self.custom_fields(entity))
        logger.debug(f"Subscriber {entity.label} {classify_upsert(member)}")
        return RemoteRef(str(member["member_id"]))

    async def update(self, entity: TrackedEntity) -> None:
        await self.client.update_member(
            entity.remote_id, entity.payload["email"], self.custom_fields(entity)
        )

    async def delete(self, entity: TrackedEntity) -> None:
        await self.client.delete_member(entity.remote_id)

    async def iter_remote_ids(self) -> AsyncIterator[list[str]]:
        members = await self.client.list_members()
        if members:
            yield [str(m["member_id"]) for m in members]

    async def delete_remote(self, remote_id: str) -> None:
        await self.client.delete_member(remote_id)


# =============================================================================
# Factory
# =============================================================================


@dataclass
class RemoteClients:
    """HTTP clients for every configured target; closed together."""

    directory: DirectoryClient
    mailing_list: MailingListClient
    helpdesk: HelpdeskClient

    @classmethod
    def from_settings(cls, settings: Settings) -> "RemoteClients":
        return cls(
            directory=DirectoryClient(settings.directory, settings.timeouts),
            mailing_list=MailingListClient(settings.mailing_list, settings.timeouts),
            helpdesk=HelpdeskClient(settings.helpdesk, settings.timeouts),
        )

    async def close(self) -> None:
        await self.directory.close()
        await self.mailing_list.close()
        await self.helpdesk.close()


def create_collaborators(
    clients: RemoteClients,
    store: TrackingStore,
    photos_dir: Path = Path("photos"),
) -> dict[str, RemoteCollaborator]:
    """Collaborator for every entity type."""
    directory = clients.directory
    return {
        "team": DirectoryResource(directory, "team", "teams", render_team, listing="teams"),
        "committee": DirectoryResource(
            directory, "committee", "commissies", render_committee, listing="committees"
        ),
        "member": DirectoryResource(directory, "member", "people", render_member, listing="people"),
        "parent": ParentCollaborator(directory, store),
        "work_history": WorkHistoryCollaborator(directory, store),
        "important_date": ImportantDateCollaborator(directory, store),
        "photo": PhotoCollaborator(directory, store, photos_dir),
        "helpdesk_customer": HelpdeskCustomerCollaborator(clients.helpdesk),
        "subscriber": SubscriberCollaborator(clients.mailing_list),
    }
