"""
HTTP Input Plugin - REST API for custom resources.

Creates, replaces and deletes resources in the store and publishes the
matching lifecycle event so the controller runs the right workflow. The
status sub-document is owned by the controller and is read-only here.
"""

import asyncio
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from events import EventBus, EventType, ResourceEvent
from plugins.inputs.base import InputPlugin
from store import AlreadyExistsError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_SPEC_SIZE = 1024 * 1024  # 1MB max for spec


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_json_size(value: Dict[str, Any], field_name: str) -> Dict[str, Any]:
    """Validate that JSON data doesn't exceed size limits."""
    if len(json.dumps(value)) > MAX_SPEC_SIZE:
        raise ValueError(f"{field_name} exceeds maximum size of {MAX_SPEC_SIZE} bytes")
    return value


class ResourceCreate(BaseModel):
    """Request model for creating a resource."""

    name: str = Field(..., description="Resource name", examples=["web-cache"])
    spec: Dict[str, Any] = Field(
        default_factory=dict, description="Resource specification"
    )
    labels: Optional[Dict[str, str]] = Field(
        default=None, description="Resource labels"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")


class ResourceUpdate(BaseModel):
    """Request model for replacing a resource's spec."""

    model_config = ConfigDict(populate_by_name=True)

    spec: Dict[str, Any] = Field(..., description="Replacement specification")
    resource_version: Optional[str] = Field(
        default=None,
        alias="resourceVersion",
        description="Only replace if the stored resourceVersion still matches",
    )

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")

    @field_validator("resource_version", mode="before")
    @classmethod
    def coerce_resource_version(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class PluginInfo(BaseModel):
    """Response model for a registered plugin."""

    name: str
    version: str


class HTTPInputPlugin(InputPlugin):
    """Input plugin that provides a REST API for custom resources."""

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.log_level: str = "info"
        self.server: Optional[uvicorn.Server] = None
        self._db_manager = None
        self._event_bus: Optional[EventBus] = None

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Create the FastAPI app and its routes."""
        self.host = config.get("host", "0.0.0.0")
        self.port = int(config.get("port", 8000))
        self.log_level = str(config.get("log_level", "info")).lower()

        self.app = FastAPI(
            title="Playbook Operator API",
            description="Custom resources reconciled by playbook workflows",
            version="1.0.0",
        )
        self._setup_routes()

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager) -> None:
        """Set the database manager instance."""
        self._db_manager = db_manager

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for publishing and streaming events."""
        self._event_bus = event_bus

    async def _publish(
        self,
        event_type: EventType,
        resource: Dict[str, Any],
        old_resource: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                ResourceEvent.from_resource(event_type, resource, old_resource)
            )

    def _require_db(self):
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    def _setup_routes(self) -> None:
        """
        Set up the FastAPI routes.

        - Health check: GET /
        - Resources: /api/v1/namespaces/{namespace}/resources[/{name}]
        - All namespaces: GET /api/v1/resources
        - Event stream: GET /api/v1/events
        - Plugin discovery: GET /api/v1/plugins/actions

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        def check_namespace(namespace: str) -> None:
            try:
                validate_name_format(namespace, "namespace")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "playbook-operator"}

        # ==================== Resource Endpoints ====================

        @self.app.post("/api/v1/namespaces/{namespace}/resources", status_code=201)
        async def create_resource(namespace: str, resource: ResourceCreate):
            """Create a resource; the controller provisions it."""
            check_namespace(namespace)
            db = self._require_db()

            try:
                created = await db.create_resource(
                    namespace, resource.name, resource.spec, resource.labels
                )
            except AlreadyExistsError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error creating resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            await self._publish(EventType.ADDED, created)
            return created

        @self.app.get("/api/v1/namespaces/{namespace}/resources")
        async def list_namespaced_resources(
            namespace: str, limit: int = 100
        ) -> List[Dict[str, Any]]:
            """List the resources in one namespace."""
            check_namespace(namespace)
            db = self._require_db()
            try:
                return await db.list_resources(namespace=namespace, limit=limit)
            except Exception as e:
                logger.error(f"Error listing resources: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/resources")
        async def list_all_resources(limit: int = 100) -> List[Dict[str, Any]]:
            """List resources across all namespaces."""
            db = self._require_db()
            try:
                return await db.list_resources(limit=limit)
            except Exception as e:
                logger.error(f"Error listing resources: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/namespaces/{namespace}/resources/{name}")
        async def get_resource(namespace: str, name: str):
            """Get a resource, including its status."""
            db = self._require_db()
            try:
                resource = await db.get_resource(namespace, name)
            except Exception as e:
                logger.error(f"Error getting resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if not resource:
                raise HTTPException(
                    status_code=404, detail=f"Resource {namespace}/{name} not found"
                )
            return resource

        @self.app.put("/api/v1/namespaces/{namespace}/resources/{name}")
        async def replace_resource(namespace: str, name: str, update: ResourceUpdate):
            """Replace a resource's spec; the controller runs the update workflow."""
            db = self._require_db()
            try:
                old, new = await db.replace_spec(
                    namespace, name, update.spec, update.resource_version
                )
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            except ConflictError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error updating resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            await self._publish(EventType.MODIFIED, new, old_resource=old)
            return new

        @self.app.delete("/api/v1/namespaces/{namespace}/resources/{name}")
        async def delete_resource(namespace: str, name: str):
            """Delete a resource; the controller deprovisions it."""
            db = self._require_db()
            try:
                deleted = await db.delete_resource(namespace, name)
            except Exception as e:
                logger.error(f"Error deleting resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if not deleted:
                raise HTTPException(
                    status_code=404, detail=f"Resource {namespace}/{name} not found"
                )

            await self._publish(EventType.DELETED, deleted)
            return {
                "message": "Resource deleted",
                "namespace": namespace,
                "name": name,
            }

        # Plugin discovery endpoints
        @self.app.get("/api/v1/plugins/actions", response_model=List[PluginInfo])
        async def list_action_plugins():
            """List available action plugins."""
            from plugins.registry import get_registry

            registry = get_registry()
            plugins = []
            for plugin_name in registry.list_action_plugins():
                info = registry.get_action_plugin_info(plugin_name)
                if info:
                    plugins.append(PluginInfo(**info))
            return plugins

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_events(namespace: Optional[str] = None):
            """SSE stream of resource events, optionally for one namespace."""
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            if namespace:
                watched = namespace

                def filter_fn(event: ResourceEvent) -> bool:
                    return event.namespace == watched

            else:
                filter_fn = None

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self) -> None:
        """Start the HTTP server."""
        if not self.app:
            raise RuntimeError("App not initialized")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> Tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
