"""
Source snapshot decoding.

A snapshot is the JSON document produced by one scrape of the club
administration. Every record carries a ``kind`` tag and is decoded into one
explicit model per entity shape. Unknown kinds or unknown fields are rejected
with SerializationError rather than silently defaulted.

Example:
    snapshot = decode_snapshot(store.latest_snapshot())
    for member in snapshot.members:
        print(member.member_id, member.full_name)
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from club_sync.errors import SerializationError


class _Record(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ParentContact(_Record):
    """Parent or guardian listed on a member's record."""

    name: str
    email: str | None = None
    phone: str | None = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        return v or None


class Membership(_Record):
    """A member's seat in a team or committee."""

    name: str
    role: str | None = None
    start_date: date | None = None


class MemberRecord(_Record):
    kind: Literal["member"]
    member_id: str
    first_name: str
    infix: str | None = None
    last_name: str
    email: str | None = None
    email2: str | None = None
    mobile: str | None = None
    phone: str | None = None
    birth_date: date | None = None
    gender: str | None = None
    member_since: date | None = None
    vog_date: date | None = None
    financial_block: bool = False
    helpdesk_id: str | None = None
    teams: list[Membership] = Field(default_factory=list)
    committees: list[Membership] = Field(default_factory=list)
    parents: list[ParentContact] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.infix, self.last_name]
        return " ".join(p for p in parts if p)


class TeamRecord(_Record):
    kind: Literal["team"]
    name: str
    code: str | None = None
    gender: str | None = None
    activity: str | None = None


class CommitteeRecord(_Record):
    kind: Literal["committee"]
    name: str
    description: str | None = None


SourceRecord = Annotated[
    Union[MemberRecord, TeamRecord, CommitteeRecord],
    Field(discriminator="kind"),
]


class Snapshot(BaseModel):
    """Decoded source snapshot."""

    model_config = ConfigDict(extra="forbid")

    captured_at: datetime | None = None
    records: list[SourceRecord] = Field(default_factory=list)

    @property
    def members(self) -> list[MemberRecord]:
        return [r for r in self.records if isinstance(r, MemberRecord)]

    @property
    def teams(self) -> list[TeamRecord]:
        return [r for r in self.records if isinstance(r, TeamRecord)]

    @property
    def committees(self) -> list[CommitteeRecord]:
        return [r for r in self.records if isinstance(r, CommitteeRecord)]


def decode_snapshot(document: dict[str, Any] | str | bytes) -> Snapshot:
    """
    Decode a raw snapshot document.

    Raises:
        SerializationError: If the document is not valid JSON or any record
            does not match a known shape.
    """
    try:
        if isinstance(document, (str, bytes)):
            return Snapshot.model_validate_json(document)
        return Snapshot.model_validate(document)
    except ValidationError as e:
        raise SerializationError(
            f"Snapshot does not match any known record shape ({e.error_count()} errors)",
            details=e.errors(include_url=False),
        ) from e
