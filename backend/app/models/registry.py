"""Record types stored in the document store and their sensitive fields."""
from __future__ import annotations

from dataclasses import dataclass


class UnknownCollectionError(Exception):
    """Raised when a collection name is not declared in COLLECTIONS."""


@dataclass(frozen=True, slots=True)
class CollectionSpec:
    name: str
    resource: str  # audit resource name, e.g. "CLIENT"
    sensitive_fields: tuple[str, ...] = ()
    blind_index_fields: tuple[str, ...] = ()
    backed_up: bool = True


COLLECTIONS: dict[str, CollectionSpec] = {
    spec.name: spec
    for spec in (
        CollectionSpec(
            name="clients",
            resource="CLIENT",
            sensitive_fields=("name", "phone", "email", "address", "notes"),
            blind_index_fields=("name", "phone", "email"),
        ),
        CollectionSpec(
            name="tasks",
            resource="TASK",
            sensitive_fields=("title", "description", "observations"),
            blind_index_fields=("title", "description"),
        ),
        CollectionSpec(name="categories", resource="CATEGORY"),
        # Team members and users are never part of a backup
        CollectionSpec(name="team_members", resource="TEAM_MEMBER", backed_up=False),
        CollectionSpec(
            name="users",
            resource="USER",
            sensitive_fields=("email",),
            blind_index_fields=("email",),
            backed_up=False,
        ),
    )
}


def get_collection(name: str) -> CollectionSpec:
    try:
        return COLLECTIONS[name]
    except KeyError:
        raise UnknownCollectionError(f"Unknown collection: {name!r}") from None


def backed_up_collections() -> list[CollectionSpec]:
    return [spec for spec in COLLECTIONS.values() if spec.backed_up]
