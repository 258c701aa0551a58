"""
Entity types and payload derivation.

Every tracked entity type is described once here: its natural key, the remote
target it is written to and the remote listing it shares with other types.
``derive_rows`` turns a decoded snapshot into the current source rows of
every type; these rows are what the tracking store is upserted with.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable

from club_sync.connectors.tracking import SourceRow
from club_sync.core.hashing import compute_content_hash
from club_sync.snapshot import MemberRecord, Snapshot


@dataclass(frozen=True)
class EntityType:
    """Static description of a tracked entity type."""

    name: str
    target: str
    key_parts: tuple[str, ...]
    listing: str | None = None
    positional: bool = False
    description: str = ""


ENTITY_TYPES: dict[str, EntityType] = {
    t.name: t
    for t in (
        EntityType("team", "directory", ("team",), listing="teams", description="Teams"),
        EntityType(
            "committee", "directory", ("committee",), listing="committees",
            description="Committees",
        ),
        EntityType("member", "directory", ("member_id",), listing="people", description="Members"),
        EntityType(
            "parent", "directory", ("email", "name"), listing="people",
            description="Parents and guardians",
        ),
        EntityType(
            "work_history", "directory", ("member_id", "assignment"), positional=True,
            description="Team and committee assignments",
        ),
        EntityType(
            "important_date", "directory", ("member_id", "date_type"),
            listing="important_dates", description="Birthdays",
        ),
        EntityType("photo", "directory", ("member_id",), description="Member photos"),
        EntityType(
            "helpdesk_customer", "helpdesk", ("member_id",),
            description="Helpdesk customers",
        ),
        EntityType(
            "subscriber", "mailing_list", ("email",), listing="subscribers",
            description="Mailing-list subscribers",
        ),
    )
}

# Processing order: referenced objects (teams, members) before the rows that
# point at their remote ids (work history, dates, parent links).
SYNC_ORDER: list[str] = list(ENTITY_TYPES)

PHOTO_EXTENSIONS = ("jpg", "jpeg", "png", "webp", "gif")


def listing_groups(entity_types: list[str] | None = None) -> dict[str, list[str]]:
    """Remote listing name -> entity types whose objects live in it."""
    groups: dict[str, list[str]] = {}
    for name in entity_types or SYNC_ORDER:
        listing = ENTITY_TYPES[name].listing
        if listing:
            groups.setdefault(listing, []).append(name)
    return groups


def normalize_name(name: str) -> str:
    return " ".join(name.lower().split())


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _surname(member: MemberRecord) -> str:
    return " ".join(p for p in (member.infix, member.last_name) if p)


# =============================================================================
# Payload builders
# =============================================================================


def member_payload(member: MemberRecord) -> dict[str, Any]:
    return {
        "member_id": member.member_id,
        "first_name": member.first_name,
        "infix": member.infix,
        "last_name": member.last_name,
        "gender": member.gender,
        "birth_date": _iso(member.birth_date),
        "member_since": _iso(member.member_since),
        "email": member.email,
        "email2": member.email2,
        "mobile": member.mobile,
        "phone": member.phone,
        "vog_date": _iso(member.vog_date),
        "financial_block": member.financial_block,
        "helpdesk_id": member.helpdesk_id,
    }


def derive_teams(snapshot: Snapshot) -> list[SourceRow]:
    return [
        SourceRow(
            key=(team.name,),
            payload={
                "name": team.name,
                "code": team.code,
                "gender": team.gender,
                "activity": team.activity,
            },
        )
        for team in snapshot.teams
    ]


def derive_committees(snapshot: Snapshot) -> list[SourceRow]:
    return [
        SourceRow(
            key=(committee.name,),
            payload={"name": committee.name, "description": committee.description},
        )
        for committee in snapshot.committees
    ]


def derive_members(snapshot: Snapshot) -> list[SourceRow]:
    return [SourceRow(key=(m.member_id,), payload=member_payload(m)) for m in snapshot.members]


def derive_parents(snapshot: Snapshot) -> list[SourceRow]:
    """
    One row per (email, normalized name).

    Parents listed on several children collapse into one row carrying every
    child's member id. The same email with a different name is a different
    person and gets its own row.
    """
    parents: dict[tuple[str, str], dict[str, Any]] = {}
    for member in snapshot.members:
        for contact in member.parents:
            if not contact.email:
                continue
            key = (contact.email, normalize_name(contact.name))
            entry = parents.setdefault(
                key,
                {"email": contact.email, "name": contact.name, "phone": None, "children": []},
            )
            if entry["phone"] is None and contact.phone:
                entry["phone"] = contact.phone
            if member.member_id not in entry["children"]:
                entry["children"].append(member.member_id)

    rows = []
    for key, payload in parents.items():
        payload["children"] = sorted(payload["children"])
        rows.append(SourceRow(key=key, payload=payload))
    return rows


def derive_work_history(snapshot: Snapshot) -> list[SourceRow]:
    rows = []
    for member in snapshot.members:
        for kind, seats in (("team", member.teams), ("committee", member.committees)):
            for seat in seats:
                rows.append(
                    SourceRow(
                        key=(member.member_id, f"{kind}:{seat.name}"),
                        payload={
                            "member_id": member.member_id,
                            "kind": kind,
                            "name": seat.name,
                            "role": seat.role,
                            "start_date": _iso(seat.start_date),
                        },
                    )
                )
    return rows


def derive_important_dates(snapshot: Snapshot) -> list[SourceRow]:
    return [
        SourceRow(
            key=(m.member_id, "birth_date"),
            payload={
                "member_id": m.member_id,
                "date_type": "birth_date",
                "date": m.birth_date.isoformat(),
                "title": f"{m.full_name} - Birthday",
            },
        )
        for m in snapshot.members
        if m.birth_date is not None
    ]


def find_photo(photos_dir: Path, member_id: str) -> Path | None:
    """The downloaded photo of a member, stored as ``<member_id>.<ext>``."""
    for ext in PHOTO_EXTENSIONS:
        path = photos_dir / f"{member_id}.{ext}"
        if path.is_file():
            return path
    return None


def derive_photos(snapshot: Snapshot, photos_dir: Path | None = None) -> list[SourceRow]:
    """
    One row per member with a downloaded photo.

    The payload carries a digest of the file bytes, so a replaced photo is
    uploaded again and an unchanged one is skipped. A member whose file is
    gone drops out and the remote photo is deleted.
    """
    if photos_dir is None or not photos_dir.is_dir():
        return []

    rows = []
    for m in snapshot.members:
        path = find_photo(photos_dir, m.member_id)
        if path is None:
            continue
        rows.append(
            SourceRow(
                key=(m.member_id,),
                payload={
                    "member_id": m.member_id,
                    "filename": path.name,
                    "content_hash": compute_content_hash(path.read_bytes()),
                },
            )
        )
    return rows


def derive_helpdesk_customers(snapshot: Snapshot) -> list[SourceRow]:
    rows = []
    for m in snapshot.members:
        if not m.email:
            continue
        rows.append(
            SourceRow(
                key=(m.member_id,),
                payload={
                    "member_id": m.member_id,
                    "first_name": m.first_name,
                    "last_name": _surname(m),
                    "emails": [e for e in (m.email, m.email2) if e],
                    "phones": [p for p in (m.mobile, m.phone) if p],
                },
            )
        )
    return rows


def derive_subscribers(snapshot: Snapshot) -> list[SourceRow]:
    """One subscriber per email; members sharing an address are merged."""
    by_email: dict[str, list[MemberRecord]] = {}
    for m in snapshot.members:
        if m.email:
            by_email.setdefault(m.email.strip().lower(), []).append(m)

    rows = []
    for email, members in by_email.items():
        members.sort(key=lambda m: m.member_id)
        primary = members[0]
        teams = sorted({seat.name for m in members for seat in m.teams})
        rows.append(
            SourceRow(
                key=(email,),
                payload={
                    "email": email,
                    "first_name": primary.first_name,
                    "last_name": _surname(primary),
                    "member_ids": [m.member_id for m in members],
                    "teams": teams,
                },
            )
        )
    return rows


DERIVATIONS: dict[str, Callable[[Snapshot], list[SourceRow]]] = {
    "team": derive_teams,
    "committee": derive_committees,
    "member": derive_members,
    "parent": derive_parents,
    "work_history": derive_work_history,
    "important_date": derive_important_dates,
    "photo": derive_photos,
    "helpdesk_customer": derive_helpdesk_customers,
    "subscriber": derive_subscribers,
}


def derive_rows(
    snapshot: Snapshot,
    entity_types: list[str] | None = None,
    photos_dir: Path | None = None,
) -> dict[str, list[SourceRow]]:
    """Current source rows for each requested entity type, in sync order."""
    derivations = {**DERIVATIONS, "photo": partial(derive_photos, photos_dir=photos_dir)}
    return {name: derivations[name](snapshot) for name in (entity_types or SYNC_ORDER)}
