"""
Resource Store - interface to the store holding custom resources.

Resources are generic attribute maps shaped like Kubernetes objects::

    {
        "apiVersion": "...",
        "kind": "...",
        "metadata": {"namespace": "...", "name": "...", "resourceVersion": "7"},
        "spec": {...},
        "status": {...},
    }

Writes use optimistic concurrency: ``update`` is only accepted if the
version token still matches the stored one.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple


class StoreError(Exception):
    """A resource store operation failed."""


class ConflictError(StoreError):
    """The resource changed since the version token was read."""


class NotFoundError(StoreError):
    """The resource does not exist in the store."""


class AlreadyExistsError(StoreError):
    """A resource with the same identity already exists."""


def resource_identity(resource: Dict[str, Any]) -> Tuple[str, str]:
    """Return the (namespace, name) identity of a resource map."""
    metadata = resource.get("metadata") or {}
    return metadata.get("namespace") or "", metadata.get("name") or ""


def resource_version(resource: Dict[str, Any]) -> str:
    """Return the version token stamped on a resource map, or ''."""
    metadata = resource.get("metadata") or {}
    return str(metadata.get("resourceVersion") or "")


class ResourceStore(ABC):
    """Abstract get/update access to custom resources."""

    @abstractmethod
    async def get(self, namespace: str, name: str) -> Tuple[Dict[str, Any], str]:
        """
        Fetch a resource and its current version token.

        Raises:
            NotFoundError: If the resource does not exist
            StoreError: On any other failure
        """
        pass

    @abstractmethod
    async def update(self, resource: Dict[str, Any], version: str) -> Dict[str, Any]:
        """
        Write a resource if its stored version still equals ``version``.

        Returns:
            The stored resource, stamped with its new version token

        Raises:
            ConflictError: If the stored version differs
            NotFoundError: If the resource no longer exists
            StoreError: On any other failure
        """
        pass
