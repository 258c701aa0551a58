"""
Relationship Linker.

Maintains bidirectional person relationships (parent/child/sibling) stored
in the directory's ``acf.relationships`` field. Edges are only ever added:
existing edges, including ones curated by hand, are written back untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Protocol

from club_sync.connectors.tracking import TrackedEntity, TrackingStore
from club_sync.entities import normalize_name
from club_sync.errors import RemoteError
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)


class RelationshipStore(Protocol):
    """Remote side of relationship edges (implemented by DirectoryClient)."""

    async def get_relationships(self, person_id: str) -> list[dict[str, Any]]: ...

    async def put_relationships(self, person_id: str, relationships: list[dict[str, Any]]) -> None: ...


@dataclass(frozen=True)
class Relationship:
    """An edge to ``related_id`` of relationship term ``type_id``."""

    related_id: str
    type_id: int

    @classmethod
    def from_raw(cls, raw: Any) -> "Relationship | None":
        """
        Parse a stored edge, or None when it is not one this linker manages.

        The directory returns the type as ``[9]``, ``9`` or a term object,
        and the person as an id or a post object. Edges edited by hand may
        hold anything else; those are left alone.
        """
        if not isinstance(raw, dict):
            return None
        related = _term_id(raw.get("related_person"), "ID")
        kind = raw.get("relationship_type")
        if isinstance(kind, list):
            kind = kind[0] if kind else None
        type_id = _term_id(kind, "term_id")
        if related is None or type_id is None or not type_id.isdigit():
            return None
        return cls(related, int(type_id))

    def to_raw(self) -> dict[str, Any]:
        related: Any = int(self.related_id) if self.related_id.isdigit() else self.related_id
        return {
            "related_person": related,
            "relationship_type": [self.type_id],
            "relationship_label": "",
        }


def _term_id(value: Any, id_field: str) -> str | None:
    if isinstance(value, dict):
        value = value.get(id_field, value.get("id"))
    if isinstance(value, bool) or value in (None, ""):
        return None
    if isinstance(value, (int, str)):
        return str(value).strip() or None
    return None


@dataclass
class LinkResult:
    added: int = 0
    inverse_added: int = 0
    warnings: list[str] = field(default_factory=list)


class RelationshipLinker:
    """
    Merge relationship edges without replacing existing ones.

    Example:
        linker = RelationshipLinker(directory, {"parent": 8, "child": 9})
        await linker.link(parent_id, child_ids, kind="child", inverse_kind="parent")
    """

    def __init__(self, remote: RelationshipStore, relationship_types: dict[str, int]) -> None:
        self.remote = remote
        self.relationship_types = relationship_types

    def type_id(self, kind: str) -> int:
        try:
            return self.relationship_types[kind]
        except KeyError:
            raise ValueError(f"Unknown relationship kind: {kind}") from None

    async def merge(self, target_id: str, kind: str, related_ids: Iterable[str]) -> int:
        """
        Add ``kind`` edges from ``target_id`` to each related id.

        Edges already present (same related id and kind) and self-references
        are skipped. Nothing is written when there is nothing new.

        Returns:
            Number of edges added
        """
        target_id = str(target_id)
        type_id = self.type_id(kind)

        existing_raw = await self.remote.get_relationships(target_id)
        existing = {
            edge for edge in (Relationship.from_raw(r) for r in existing_raw) if edge
        }

        new_edges: list[Relationship] = []
        for related_id in dict.fromkeys(str(r) for r in related_ids):
            edge = Relationship(related_id, type_id)
            if related_id == target_id or edge in existing:
                continue
            new_edges.append(edge)

        if not new_edges:
            return 0

        await self.remote.put_relationships(
            target_id,
            list(existing_raw) + [edge.to_raw() for edge in new_edges],
        )
        logger.debug(f"Added {len(new_edges)} '{kind}' relationship(s) to person {target_id}")
        return len(new_edges)

    async def link(
        self,
        source_id: str,
        related_ids: Iterable[str],
        kind: str,
        inverse_kind: str,
    ) -> LinkResult:
        """
        Link both directions: source -> related as ``kind``, related -> source
        as ``inverse_kind``.

        A failure on one related person is reported in ``warnings`` and the
        others are still linked. A failure on the source itself propagates.
        """
        related = [str(r) for r in related_ids if str(r) != str(source_id)]
        result = LinkResult()
        result.added = await self.merge(source_id, kind, related)
        for related_id in related:
            try:
                result.inverse_added += await self.merge(related_id, inverse_kind, [source_id])
            except RemoteError as e:
                result.warnings.append(f"'{inverse_kind}' link on person {related_id} failed: {e}")
        return result

    async def link_group(self, person_ids: Iterable[str], kind: str) -> LinkResult:
        """Link every person to every other one with a symmetric ``kind``."""
        people = list(dict.fromkeys(str(p) for p in person_ids))
        result = LinkResult()
        for person_id in people:
            try:
                result.added += await self.merge(person_id, kind, people)
            except RemoteError as e:
                result.warnings.append(f"'{kind}' link on person {person_id} failed: {e}")
        return result


def same_identity(
    email_a: str | None,
    name_a: str | None,
    email_b: str | None,
    name_b: str | None,
) -> bool:
    """
    True only when both the email (case-insensitive) and the full name match.

    A shared address alone is not enough: families often share one mailbox.
    """
    if not email_a or not email_b or not name_a or not name_b:
        return False
    return (
        email_a.strip().lower() == email_b.strip().lower()
        and normalize_name(name_a) == normalize_name(name_b)
    )


def parent_link_hook(
    store: TrackingStore,
    linker: RelationshipLinker,
) -> Callable[[TrackedEntity, str], Awaitable[list[str]]]:
    """
    Build the reconciler hook that links a synced parent to its children.

    Children without a remote id yet are reported as warnings and picked up
    on a later run. Children sharing the parent are linked as siblings when
    a sibling relationship type is configured.
    """

    async def link_children(entity: TrackedEntity, remote_id: str) -> list[str]:
        warnings: list[str] = []
        child_ids: list[str] = []
        for member_id in entity.payload.get("children", []):
            child = store.get("member", (member_id,))
            if child is None or child.remote_id is None:
                warnings.append(f"child {member_id} of {entity.label} has no remote id yet")
                continue
            child_ids.append(child.remote_id)

        if child_ids:
            linked = await linker.link(remote_id, child_ids, kind="child", inverse_kind="parent")
            warnings.extend(linked.warnings)
        if len(child_ids) > 1 and "sibling" in linker.relationship_types:
            siblings = await linker.link_group(child_ids, kind="sibling")
            warnings.extend(siblings.warnings)
        return warnings

    return link_children
