"""
Reconciliation Controller - turns lifecycle events into workflow runs.

Each handler runs at most one workflow for one resource. For adds and
updates the outcome is recorded in the resource's status sub-document
through a read-modify-write loop against the resource store.

Callers must not run two handlers for the same resource identity at the
same time; ``dispatcher.LifecycleDispatcher`` provides that ordering.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from events import EventBus, EventType, ResourceEvent
from metrics import ControllerMetrics
from parameters import ParameterError, derive_parameters
from plugins.actions.base import ActionPlugin
from plugins.base import ExecutionRequest, ExecutionResult, Workflow
from status import (
    ConditionReason,
    ReconciliationStatus,
    ResourcePhase,
    set_phase,
    status_for,
    to_attribute_map,
)
from store import ConflictError, ResourceStore, StoreError, resource_identity

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "[output truncated]\n"


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    status_update_attempts: int = 5
    max_status_message_length: int = 32768
    parameter_schema: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.status_update_attempts < 1:
            raise ValueError("status_update_attempts must be at least 1")
        if self.max_status_message_length <= len(TRUNCATION_MARKER):
            raise ValueError(
                f"max_status_message_length must exceed {len(TRUNCATION_MARKER)}"
            )


class PersistenceError(Exception):
    """A status write could not be persisted to the resource store."""

    def __init__(self, namespace: str, name: str, attempts: int, message: str):
        super().__init__(message)
        self.namespace = namespace
        self.name = name
        self.attempts = attempts


class ReconciliationController:
    """
    Handles added/updated/deleted events for custom resources.

    Adds run the provision workflow, updates the update workflow and
    deletes the deprovision workflow. Failures are not retried; the next
    event for the resource triggers a new attempt.
    """

    def __init__(
        self,
        store: ResourceStore,
        action_plugin: ActionPlugin,
        metrics: Optional[ControllerMetrics] = None,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.action_plugin = action_plugin
        self.metrics = metrics or ControllerMetrics()
        self.config = config or ControllerConfig()
        self._event_bus = event_bus

    async def on_added(self, resource: Dict[str, Any]) -> ReconciliationStatus:
        """
        Provision a newly added resource.

        Returns:
            The final status written to the resource

        Raises:
            PersistenceError: If the status could not be written
        """
        self.metrics.events.inc()
        namespace, name = resource_identity(resource)
        logger.info(f"Resource added: {namespace}/{name}")

        return await self._apply(
            resource, Workflow.PROVISION, ConditionReason.CUSTOM_RESOURCE_ADDED
        )

    async def on_updated(
        self, old_resource: Dict[str, Any], new_resource: Dict[str, Any]
    ) -> ReconciliationStatus:
        """
        Run the update workflow for a modified resource.

        Every update event triggers a run, even when the spec did not
        change. ``old_resource`` is accepted but not compared.

        Returns:
            The final status written to the resource

        Raises:
            PersistenceError: If the status could not be written
        """
        self.metrics.events.inc()
        namespace, name = resource_identity(new_resource)
        logger.info(f"Resource updated: {namespace}/{name}")

        return await self._apply(
            new_resource, Workflow.UPDATE, ConditionReason.CUSTOM_RESOURCE_UPDATED
        )

    async def on_deleted(self, resource: Dict[str, Any]) -> ExecutionResult:
        """
        Deprovision a deleted resource.

        Never writes to the store: the resource may already be gone.
        Failures are only visible in metrics and logs.
        """
        self.metrics.events.inc()
        namespace, name = resource_identity(resource)
        logger.info(f"Resource deleted: {namespace}/{name}")

        try:
            parameters = derive_parameters(resource, self.config.parameter_schema)
        except ParameterError as e:
            self.metrics.delete_failures.inc()
            logger.error(f"Not deprovisioning {namespace}/{name}: {e}")
            return ExecutionResult(succeeded=False, detail=str(e))

        request = ExecutionRequest(Workflow.DEPROVISION, parameters)
        try:
            result = await self._execute(request, namespace, name)
        except asyncio.CancelledError:
            logger.warning(f"Deprovision of {namespace}/{name} interrupted")
            raise

        if not result.succeeded:
            self.metrics.delete_failures.inc()
            logger.error(
                f"Failed to deprovision {namespace}/{name}: {result.detail}\n"
                f"{result.output}"
            )
            return result

        self.metrics.deleted_resources.inc()
        self.metrics.managed_resources.dec()
        logger.info(f"Deprovisioned {namespace}/{name}")
        return result

    async def _apply(
        self,
        resource: Dict[str, Any],
        workflow: Workflow,
        reason: ConditionReason,
    ) -> ReconciliationStatus:
        """Derive, mark Applying, run the workflow, record the outcome."""
        namespace, name = resource_identity(resource)
        if workflow is Workflow.PROVISION:
            failures = self.metrics.create_failures
        else:
            failures = self.metrics.update_failures

        try:
            parameters = derive_parameters(resource, self.config.parameter_schema)
        except ParameterError as e:
            failures.inc()
            logger.error(
                f"Not running {workflow.value} workflow for {namespace}/{name}: {e}"
            )
            return await self._persist_status(
                namespace,
                name,
                ResourcePhase.FAILED,
                ConditionReason.APPLY_FAILED,
                str(e),
                publish=True,
            )

        # Applying must be visible before the workflow starts
        try:
            await self._persist_status(
                namespace,
                name,
                ResourcePhase.APPLYING,
                reason,
                f"Running {workflow.value} workflow",
            )
        except PersistenceError:
            failures.inc()
            raise

        request = ExecutionRequest(workflow, parameters)
        try:
            result = await self._execute(request, namespace, name)
        except asyncio.CancelledError:
            failures.inc()
            await self._record_after_cancel(
                namespace,
                name,
                ResourcePhase.FAILED,
                f"{workflow.value} workflow interrupted: controller shutting down",
            )
            raise

        if result.succeeded:
            phase = ResourcePhase.APPLIED
            final_reason = ConditionReason.APPLY_SUCCESSFUL
            if workflow is Workflow.PROVISION:
                self.metrics.created_resources.inc()
                self.metrics.managed_resources.inc()
            else:
                self.metrics.updated_resources.inc()
            logger.info(f"Ran {workflow.value} workflow for {namespace}/{name}")
        else:
            phase = ResourcePhase.FAILED
            final_reason = ConditionReason.APPLY_FAILED
            failures.inc()
            logger.error(
                f"Failed to run {workflow.value} workflow for {namespace}/{name}: "
                f"{result.detail}\n{result.output}"
            )

        message = self._status_message(result)
        try:
            return await self._persist_status(
                namespace, name, phase, final_reason, message, publish=True
            )
        except asyncio.CancelledError:
            # The workflow already ran; record what it did, not an interruption
            logger.warning(
                f"Cancelled while writing {phase.value} status of {namespace}/{name}"
            )
            await self._record_after_cancel(
                namespace, name, phase, message, final_reason
            )
            raise

    async def _execute(
        self, request: ExecutionRequest, namespace: str, name: str
    ) -> ExecutionResult:
        """Run a workflow once; plugin crashes count as failed runs."""
        logger.info(
            f"Running {request.workflow.value} workflow for {namespace}/{name} "
            f"with {len(request.parameters)} parameter(s)"
        )
        try:
            return await self.action_plugin.run(request.workflow, request.parameters)
        except Exception as e:
            logger.error(
                f"Action plugin '{self.action_plugin.name}' crashed: {e}",
                exc_info=True,
            )
            return ExecutionResult(
                succeeded=False,
                detail=f"{self.action_plugin.name} plugin error: {e}",
            )

    def _status_message(self, result: ExecutionResult) -> str:
        """Status message for a run: failure detail first, then the output tail."""
        limit = self.config.max_status_message_length
        output = result.output
        room = limit - len(result.detail) - 1 if result.detail else limit
        if len(output) > room:
            keep = max(room - len(TRUNCATION_MARKER), 0)
            output = TRUNCATION_MARKER + output[len(output) - keep :]
        return "\n".join(part for part in (result.detail, output) if part)[:limit]

    async def _persist_status(
        self,
        namespace: str,
        name: str,
        phase: ResourcePhase,
        reason: ConditionReason,
        message: str,
        publish: bool = False,
    ) -> ReconciliationStatus:
        """
        Write a phase transition to the resource's status.

        Reads the current resource, applies the transition to its stored
        status and writes it back with the version token just read. On a
        version conflict the cycle repeats, up to the configured number of
        attempts. Only the status changes; nothing is re-derived or re-run.

        Raises:
            PersistenceError: If attempts run out, the resource is gone, or
                the store fails otherwise
        """
        attempts = self.config.status_update_attempts
        last_conflict: Optional[ConflictError] = None

        for attempt in range(1, attempts + 1):
            try:
                current, version = await self.store.get(namespace, name)
                status = set_phase(status_for(current), phase, reason, message)
                updated = copy.deepcopy(current)
                updated["status"] = to_attribute_map(status)
                stored = await self.store.update(updated, version)
            except ConflictError as e:
                last_conflict = e
                logger.warning(
                    f"Conflict writing status of {namespace}/{name} "
                    f"(attempt {attempt}/{attempts}): {e}"
                )
                continue
            except StoreError as e:
                logger.error(f"Could not write status of {namespace}/{name}: {e}")
                raise PersistenceError(
                    namespace,
                    name,
                    attempt,
                    f"Could not write {phase.value} status of {namespace}/{name}: {e}",
                ) from e

            logger.debug(
                f"Status of {namespace}/{name} is now {phase.value}/{reason.value}"
            )
            if publish and self._event_bus:
                await self._event_bus.publish(
                    ResourceEvent.from_resource(EventType.RECONCILED, stored)
                )
            return status

        logger.error(
            f"Gave up writing status of {namespace}/{name} after {attempts} "
            f"conflicting attempts"
        )
        raise PersistenceError(
            namespace,
            name,
            attempts,
            f"Could not write {phase.value} status of {namespace}/{name}: "
            f"{attempts} attempts conflicted",
        ) from last_conflict

    async def _record_after_cancel(
        self,
        namespace: str,
        name: str,
        phase: ResourcePhase,
        message: str,
        reason: ConditionReason = ConditionReason.APPLY_FAILED,
    ) -> None:
        """
        Best-effort status write for a handler that is being cancelled.

        The cancellation has been delivered already, so this write runs to
        completion unless the task is cancelled again. Any failure leaves
        the resource in Applying, which is logged with the outcome that
        could not be recorded.
        """
        summary = message.splitlines()[0] if message else ""
        lost = (
            f"{namespace}/{name} may be left in phase "
            f"{ResourcePhase.APPLYING.value}; could not record "
            f"{phase.value}/{reason.value} ({summary})"
        )
        try:
            await self._persist_status(namespace, name, phase, reason, message)
        except PersistenceError as e:
            logger.error(f"{lost}: {e}")
        except asyncio.CancelledError:
            logger.error(f"{lost}: cancelled again")
            raise
