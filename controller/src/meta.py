from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from kubernetes.client import V1OwnerReference


class InvalidKeyError(ValueError):
    """Raised when a work queue key is not of the form ``namespace/name``."""


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone delivered on delete when the final object state was not observed.

    Produced by the informer when a re-list shows that an object vanished
    while the watch was disconnected.  ``obj`` is the last state held in the
    cache, which may be stale.
    """

    key: str
    obj: Any


def object_metadata(obj: Any) -> Any | None:
    """Return ``obj.metadata`` when it looks like Kubernetes object metadata."""
    metadata = getattr(obj, "metadata", None)
    if metadata is None or not getattr(metadata, "name", None):
        return None
    return metadata


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` key for an object (``name`` when cluster scoped).

    Tombstones carry their key already, so it is returned verbatim.
    """
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key

    metadata = object_metadata(obj)
    if metadata is None:
        raise InvalidKeyError(f"object has no metadata.name: {obj!r}")

    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{metadata.name}"
    return str(metadata.name)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key into its parts.

    A key without a slash is treated as a cluster-scoped name and yields an
    empty namespace.
    """
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise InvalidKeyError(f"unexpected key format: {key!r}")


def get_controller_of(obj: Any) -> V1OwnerReference | None:
    """Return the owner reference flagged ``controller: true``, if any."""
    metadata = getattr(obj, "metadata", None)
    for ref in getattr(metadata, "owner_references", None) or []:
        if getattr(ref, "controller", False):
            return ref
    return None


def is_controlled_by(obj: Any, owner: Any) -> bool:
    ref = get_controller_of(obj)
    if ref is None:
        return False
    return ref.uid == owner.metadata.uid


def new_controller_ref(owner: Any, api_version: str, kind: str) -> V1OwnerReference:
    """Build a controller owner reference pointing at *owner*.

    ``block_owner_deletion`` keeps foreground deletion of the owner waiting
    on the dependent, matching what the built-in controllers stamp.
    """
    return V1OwnerReference(
        api_version=api_version,
        kind=kind,
        name=owner.metadata.name,
        uid=owner.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )
