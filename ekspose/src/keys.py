from __future__ import annotations

from dataclasses import dataclass
from typing import Any

KEY_DELIMITER = "/"


class InvalidKeyError(ValueError):
    """Raised when a work item cannot be decoded into a :class:`WorkloadRef`."""


@dataclass(frozen=True)
class WorkloadRef:
    """Namespace/name identity of a watched Deployment."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}{KEY_DELIMITER}{self.name}"


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` queue key for a Kubernetes object.

    Only namespaced objects are supported; an object missing either part of
    its identity raises :class:`InvalidKeyError`.
    """
    metadata = getattr(obj, "metadata", None)
    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not namespace or not name:
        raise InvalidKeyError(f"object has incomplete identity: namespace={namespace!r} name={name!r}")
    return f"{namespace}{KEY_DELIMITER}{name}"


def split_meta_namespace_key(key: Any) -> WorkloadRef:
    """Decode a ``namespace/name`` key into a :class:`WorkloadRef`."""
    if not isinstance(key, str):
        raise InvalidKeyError(f"unexpected key type {type(key).__name__}")
    parts = key.split(KEY_DELIMITER)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidKeyError(f"unexpected key format: {key!r}")
    return WorkloadRef(namespace=parts[0], name=parts[1])
