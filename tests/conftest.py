"""Pytest configuration and fixtures."""

import asyncio
import copy
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry

from metrics import ControllerMetrics
from plugins.actions.base import ActionPlugin
from plugins.base import ExecutionResult, Parameters, Workflow
from store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceStore,
    StoreError,
    resource_identity,
    resource_version,
)


def make_resource(
    name: str = "web-cache",
    namespace: str = "team-a",
    spec: Optional[Dict[str, Any]] = None,
    status: Optional[Dict[str, Any]] = None,
    version: str = "1",
) -> Dict[str, Any]:
    """Build a resource attribute map shaped like the ones the store returns."""
    resource = {
        "apiVersion": "playbooks.operator.io/v1alpha1",
        "kind": "PlaybookResource",
        "metadata": {
            "namespace": namespace,
            "name": name,
            "resourceVersion": version,
            "generation": 1,
            "labels": {},
        },
        "spec": {"namespace": "cache", "size": 3} if spec is None else spec,
    }
    if status is not None:
        resource["status"] = status
    return resource


class InMemoryStore(ResourceStore):
    """
    Resource store kept in a dict, with optimistic concurrency.

    ``conflicts`` makes that many upcoming updates fail with ConflictError
    after a simulated concurrent write bumps the stored version.
    ``concurrent_writer`` is applied to the stored resource during that
    simulated write. ``fail_with`` makes every get raise the given error.
    """

    def __init__(self):
        self.resources: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.conflicts = 0
        self.concurrent_writer: Optional[Callable[[Dict[str, Any]], None]] = None
        self.fail_with: Optional[StoreError] = None
        self.get_calls = 0
        self.update_calls = 0
        self.written_statuses: List[Dict[str, Any]] = []

    def add(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(resource)
        stored["metadata"].setdefault("resourceVersion", "1")
        self.resources[resource_identity(stored)] = stored
        return copy.deepcopy(stored)

    def stored(self, namespace: str, name: str) -> Dict[str, Any]:
        return self.resources[(namespace, name)]

    def _bump(self, resource: Dict[str, Any]) -> None:
        metadata = resource["metadata"]
        metadata["resourceVersion"] = str(int(metadata["resourceVersion"]) + 1)

    async def get(self, namespace: str, name: str) -> Tuple[Dict[str, Any], str]:
        self.get_calls += 1
        if self.fail_with:
            raise self.fail_with
        if (namespace, name) not in self.resources:
            raise NotFoundError(f"Resource {namespace}/{name} not found")
        resource = copy.deepcopy(self.resources[(namespace, name)])
        return resource, resource_version(resource)

    async def update(self, resource: Dict[str, Any], version: str) -> Dict[str, Any]:
        self.update_calls += 1
        key = resource_identity(resource)
        if key not in self.resources:
            raise NotFoundError(f"Resource {key[0]}/{key[1]} not found")

        current = self.resources[key]
        if self.conflicts > 0:
            self.conflicts -= 1
            if self.concurrent_writer:
                self.concurrent_writer(current)
            self._bump(current)

        if current["metadata"]["resourceVersion"] != version:
            raise ConflictError(
                f"Resource {key[0]}/{key[1]} is at version "
                f"{current['metadata']['resourceVersion']}, not {version}"
            )

        stored = copy.deepcopy(resource)
        stored["metadata"]["resourceVersion"] = version
        self._bump(stored)
        self.resources[key] = stored
        if "status" in stored:
            self.written_statuses.append(copy.deepcopy(stored["status"]))
        return copy.deepcopy(stored)

    # DatabaseManager-compatible methods used by the HTTP input plugin

    async def create_resource(self, namespace, name, spec=None, labels=None):
        if (namespace, name) in self.resources:
            raise AlreadyExistsError(f"Resource {namespace}/{name} already exists")
        resource = make_resource(name=name, namespace=namespace, spec=spec or {})
        resource["metadata"]["labels"] = labels or {}
        return self.add(resource)

    async def get_resource(self, namespace, name):
        resource = self.resources.get((namespace, name))
        return copy.deepcopy(resource) if resource else None

    async def list_resources(self, namespace=None, limit=100):
        found = [
            copy.deepcopy(resource)
            for (ns, _), resource in sorted(self.resources.items())
            if namespace is None or ns == namespace
        ]
        return found[:limit]

    async def replace_spec(self, namespace, name, spec, version=None):
        if (namespace, name) not in self.resources:
            raise NotFoundError(f"Resource {namespace}/{name} not found")
        current = self.resources[(namespace, name)]
        if version is not None and current["metadata"]["resourceVersion"] != version:
            raise ConflictError(f"Resource {namespace}/{name} changed")
        old = copy.deepcopy(current)
        current["spec"] = copy.deepcopy(spec)
        self._bump(current)
        return old, copy.deepcopy(current)

    async def delete_resource(self, namespace, name):
        return self.resources.pop((namespace, name), None)


class FakeActionPlugin(ActionPlugin):
    """
    Action plugin that records its calls and returns scripted results.

    Results are popped from ``results`` in order; once empty, ``default``
    is returned. Setting ``gate`` makes runs wait until it is set.
    """

    def __init__(self, results: Optional[List[ExecutionResult]] = None):
        self.results = list(results or [])
        self.default = ExecutionResult(succeeded=True, output="ok")
        self.calls: List[Tuple[Workflow, Parameters]] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.raise_error: Optional[Exception] = None
        self.running = 0
        self.max_running = 0

    @property
    def name(self) -> str:
        return "fake"

    @property
    def version(self) -> str:
        return "0.0.1"

    async def initialize(self, config: Dict[str, Any]) -> None:
        pass

    async def run(self, workflow: Workflow, parameters: Parameters) -> ExecutionResult:
        self.calls.append((workflow, list(parameters)))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if self.raise_error:
                raise self.raise_error
            return self.results.pop(0) if self.results else self.default
        finally:
            self.running -= 1


@pytest.fixture
def store():
    """An empty in-memory resource store."""
    return InMemoryStore()


@pytest.fixture
def action_plugin():
    """A scripted action plugin that succeeds by default."""
    return FakeActionPlugin()


@pytest.fixture
def metrics():
    """Controller metrics on an isolated registry."""
    return ControllerMetrics(registry=CollectorRegistry())


@pytest.fixture
def sample_resource():
    """A resource with the default recognized spec fields."""
    return make_resource()


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn
