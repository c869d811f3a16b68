"""ReferenceGrants allowing a gateway to use objects in other namespaces."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from knetgw.types import Ingress, OwnerReference

_LONGEST = 63
_MD5_LEN = 32
_HEAD = _LONGEST - _MD5_LEN


@dataclass
class ObjectRef:
    """Type and object metadata of a referenced object."""

    name: str = ""
    namespace: str = ""
    kind: str = ""
    api_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    def group(self) -> str:
        """The API group of ``api_version``; empty for the core group."""
        parts = self.api_version.split("/")
        if len(parts) == 1:
            return ""
        if len(parts) == 2:
            return parts[0]
        return ""


@dataclass
class ReferenceGrantFrom:
    """The objects allowed to refer."""

    group: str
    kind: str
    namespace: str


@dataclass
class ReferenceGrantTo:
    """The objects that may be referred to."""

    group: str
    kind: str
    name: str | None = None


@dataclass
class ReferenceGrant:
    """A ReferenceGrant resource."""

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    grant_from: list[ReferenceGrantFrom] = field(default_factory=list)
    grant_to: list[ReferenceGrantTo] = field(default_factory=list)


def _md5_hex(text: str) -> str:
    return hashlib.md5(text.encode(), usedforsecurity=False).hexdigest()


def child_name(parent: str, suffix: str) -> str:
    """A name of at most 63 characters for a child of ``parent``, hashed when too long."""
    if len(parent) <= _LONGEST - len(suffix):
        return parent + suffix
    if _HEAD - len(suffix) <= 0:
        digest = _md5_hex(parent + suffix)
        result = parent[:_HEAD] + digest
        remaining = _LONGEST - len(result)
        if remaining > 0:
            result += suffix[:remaining]
        return result.rstrip("-")
    return parent[: _HEAD - len(suffix)] + _md5_hex(parent) + suffix


def make_reference_grant(ing: Ingress, to: ObjectRef, from_: ObjectRef) -> ReferenceGrant:
    """Grant ``from_`` access to ``to``."""
    return ReferenceGrant(
        name=child_name(ing.name, f"-{to.name}-{from_.namespace}"),
        namespace=to.namespace,
        labels=to.labels,
        annotations=to.annotations,
        owner_references=[ing.controller_ref()],
        grant_from=[
            ReferenceGrantFrom(group=from_.group(), kind=from_.kind, namespace=from_.namespace)
        ],
        grant_to=[ReferenceGrantTo(group=to.group(), kind=to.kind, name=to.name)],
    )