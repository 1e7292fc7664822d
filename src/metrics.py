"""
Controller Metrics - Prometheus counters for lifecycle handling.

A ControllerMetrics instance is passed to the controller explicitly, so
tests can use an isolated registry instead of process-wide globals.
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

METRICS_NAMESPACE = "playbook_operator"


class ControllerMetrics:
    """Counters and gauges emitted by the reconciliation controller."""

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        namespace: str = METRICS_NAMESPACE,
    ):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.events = Counter(
            "events",
            "Lifecycle events observed by the controller",
            namespace=namespace,
            registry=self.registry,
        )
        self.created_resources = Counter(
            "created_resources",
            "Resources provisioned successfully",
            namespace=namespace,
            registry=self.registry,
        )
        self.updated_resources = Counter(
            "updated_resources",
            "Resources updated successfully",
            namespace=namespace,
            registry=self.registry,
        )
        self.deleted_resources = Counter(
            "deleted_resources",
            "Resources deprovisioned successfully",
            namespace=namespace,
            registry=self.registry,
        )
        self.managed_resources = Gauge(
            "managed_resources",
            "Resources currently managed by the controller",
            namespace=namespace,
            registry=self.registry,
        )
        self.create_failures = Counter(
            "create_failures",
            "Failed provision attempts",
            namespace=namespace,
            registry=self.registry,
        )
        self.update_failures = Counter(
            "update_failures",
            "Failed update attempts",
            namespace=namespace,
            registry=self.registry,
        )
        self.delete_failures = Counter(
            "delete_failures",
            "Failed deprovision attempts",
            namespace=namespace,
            registry=self.registry,
        )

    def start_server(self, port: int) -> None:
        """Expose this registry over HTTP for Prometheus to scrape."""
        start_http_server(port, registry=self.registry)
        logger.info(f"Serving metrics on port {port}")
