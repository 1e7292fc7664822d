"""
Database Manager - PostgreSQL-backed resource store.

Stores custom resources keyed by (namespace, name). Every write bumps
``resource_version``; status writes are compare-and-swap on it.
"""

import asyncpg
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from migrate import run_migrations
from store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceStore,
    StoreError,
    resource_identity,
    resource_version,
)

logger = logging.getLogger(__name__)

RESOURCE_API_VERSION = "playbooks.operator.io/v1alpha1"
RESOURCE_KIND = "PlaybookResource"


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class DatabaseManager(ResourceStore):
    """Manages PostgreSQL storage of custom resources."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== ResourceStore interface ====================

    async def get(self, namespace: str, name: str) -> Tuple[Dict[str, Any], str]:
        """Fetch a resource and its version token."""
        self._ensure_connected()
        try:
            resource = await self.get_resource(namespace, name)
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to read {namespace}/{name}: {e}") from e

        if resource is None:
            raise NotFoundError(f"Resource {namespace}/{name} not found")
        return resource, resource_version(resource)

    async def update(self, resource: Dict[str, Any], version: str) -> Dict[str, Any]:
        """Write spec, labels and status if the stored version is ``version``."""
        self._ensure_connected()
        namespace, name = resource_identity(resource)
        try:
            expected = int(version)
        except (TypeError, ValueError):
            raise ConflictError(f"Invalid version token {version!r} for {namespace}/{name}")

        status = resource.get("status")
        labels = (resource.get("metadata") or {}).get("labels") or {}

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE custom_resources
                    SET spec = $3,
                        status = $4,
                        labels = $5,
                        generation = CASE
                            WHEN spec <> $3::jsonb THEN generation + 1
                            ELSE generation
                        END,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2 AND resource_version = $6
                    RETURNING *
                    """,
                    namespace,
                    name,
                    json.dumps(resource.get("spec") or {}),
                    json.dumps(status) if status is not None else None,
                    json.dumps(labels),
                    expected,
                )
                if row:
                    return self._parse_resource_row(row)

                current = await conn.fetchval(
                    "SELECT resource_version FROM custom_resources "
                    "WHERE namespace = $1 AND name = $2",
                    namespace,
                    name,
                )
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to update {namespace}/{name}: {e}") from e

        if current is None:
            raise NotFoundError(f"Resource {namespace}/{name} not found")
        raise ConflictError(
            f"Resource {namespace}/{name} is at version {current}, not {version}"
        )

    # ==================== Resource Methods ====================

    async def create_resource(
        self,
        namespace: str,
        name: str,
        spec: Optional[Dict[str, Any]] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a new resource.

        Args:
            namespace: Resource namespace
            name: Resource name
            spec: Resource specification
            labels: Optional labels

        Raises:
            AlreadyExistsError: If (namespace, name) is taken
        """
        if spec is None:
            spec = {}

        if labels is None:
            labels = {}

        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO custom_resources (namespace, name, spec, labels)
                    VALUES ($1, $2, $3, $4)
                    RETURNING *
                    """,
                    namespace,
                    name,
                    json.dumps(spec),
                    json.dumps(labels),
                )
            except asyncpg.UniqueViolationError:
                raise AlreadyExistsError(f"Resource {namespace}/{name} already exists")

            logger.info(f"Created resource {namespace}/{name}")
            return self._parse_resource_row(row)

    async def get_resource(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Get a resource by namespace and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM custom_resources WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_resource_row(row)

    async def list_resources(
        self,
        namespace: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """List resources, optionally restricted to one namespace."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    """
                    SELECT * FROM custom_resources
                    WHERE namespace = $1
                    ORDER BY name
                    LIMIT $2
                    """,
                    namespace,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM custom_resources
                    ORDER BY namespace, name
                    LIMIT $1
                    """,
                    limit,
                )
            return [self._parse_resource_row(row) for row in rows]

    async def replace_spec(
        self,
        namespace: str,
        name: str,
        spec: Dict[str, Any],
        version: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Replace a resource's spec, keeping its status.

        Args:
            namespace: Resource namespace
            name: Resource name
            spec: The new specification
            version: If given, only replace when the stored version matches

        Returns:
            Tuple of (old resource, new resource)

        Raises:
            NotFoundError: If the resource does not exist
            ConflictError: If ``version`` is given and stale
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    """
                    SELECT * FROM custom_resources
                    WHERE namespace = $1 AND name = $2
                    FOR UPDATE
                    """,
                    namespace,
                    name,
                )
                if not current:
                    raise NotFoundError(f"Resource {namespace}/{name} not found")

                if version is not None and str(current["resource_version"]) != str(
                    version
                ):
                    raise ConflictError(
                        f"Resource {namespace}/{name} is at version "
                        f"{current['resource_version']}, not {version}"
                    )

                row = await conn.fetchrow(
                    """
                    UPDATE custom_resources
                    SET spec = $3,
                        generation = CASE
                            WHEN spec <> $3::jsonb THEN generation + 1
                            ELSE generation
                        END,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                    RETURNING *
                    """,
                    namespace,
                    name,
                    json.dumps(spec),
                )

        new = self._parse_resource_row(row)
        logger.info(
            f"Replaced spec of {namespace}/{name} "
            f"(generation {new['metadata']['generation']})"
        )
        return self._parse_resource_row(current), new

    async def delete_resource(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Delete a resource, returning its last stored state."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                DELETE FROM custom_resources
                WHERE namespace = $1 AND name = $2
                RETURNING *
                """,
                namespace,
                name,
            )
            if not row:
                return None

            logger.info(f"Deleted resource {namespace}/{name}")
            return self._parse_resource_row(row)

    def _parse_resource_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Convert a custom_resources row into a resource attribute map.

        JSON columns are parsed into Python objects. ``status`` is only
        present in the map when the controller has written one.

        Args:
            row: An asyncpg.Record from a database query

        Returns:
            The resource as a Kubernetes-style attribute map
        """
        data = dict(row)
        resource = {
            "apiVersion": RESOURCE_API_VERSION,
            "kind": RESOURCE_KIND,
            "metadata": {
                "namespace": data["namespace"],
                "name": data["name"],
                "uid": str(data["uid"]) if data.get("uid") else "",
                "resourceVersion": str(data["resource_version"]),
                "generation": data.get("generation", 1),
                "labels": json.loads(data["labels"]) if data.get("labels") else {},
                "creationTimestamp": _format_timestamp(data.get("created_at")),
            },
            "spec": json.loads(data["spec"]) if data.get("spec") else {},
        }
        if data.get("status") is not None:
            resource["status"] = json.loads(data["status"])
        return resource
