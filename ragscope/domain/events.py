from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


MutationKind = Literal["created", "updated", "deleted", "restored", "bulk"]


@dataclass(frozen=True)
class CollectionMutated:
    # A scope fingerprint of None means the mutation may touch every scope of the collection.
    collection: str
    scope_fingerprint: str | None = None
    kind: MutationKind = "updated"


@dataclass(frozen=True)
class PrincipalChanged:
    principal_id: str


InvalidationEvent = CollectionMutated | PrincipalChanged
