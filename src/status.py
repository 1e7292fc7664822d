"""
Reconciliation Status - the status sub-document owned by the controller.

A resource's generic attribute map carries its status under the ``status``
key. This module decodes that map into a typed ``ReconciliationStatus``,
applies phase transitions, and encodes the result back for the store.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class ResourcePhase(Enum):
    """Coarse-grained convergence state of a resource."""

    NONE = ""
    APPLYING = "Applying"
    APPLIED = "Applied"
    FAILED = "Failed"


class ConditionReason(Enum):
    """Why the resource is in its current phase."""

    UNKNOWN = "Unknown"
    CUSTOM_RESOURCE_ADDED = "CustomResourceAdded"
    CUSTOM_RESOURCE_UPDATED = "CustomResourceUpdated"
    APPLY_SUCCESSFUL = "ApplySuccessful"
    APPLY_FAILED = "ApplyFailed"


_KNOWN_REASONS = {reason.value for reason in ConditionReason}


class ReconciliationStatus(BaseModel):
    """
    Typed view of a resource's ``status`` sub-document.

    Instances are immutable; use ``set_phase`` to derive a new status.
    Unknown keys in the decoded input are ignored.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    phase: ResourcePhase = ResourcePhase.NONE
    reason: Optional[ConditionReason] = None
    message: str = ""
    last_update_time: Optional[datetime] = Field(default=None, alias="lastUpdateTime")
    last_transition_time: Optional[datetime] = Field(
        default=None, alias="lastTransitionTime"
    )

    @field_validator("phase", mode="before")
    @classmethod
    def _null_phase(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("reason", mode="before")
    @classmethod
    def _unrecognized_reason(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        if isinstance(v, str) and v not in _KNOWN_REASONS:
            return ConditionReason.UNKNOWN
        return v

    @field_validator("message", mode="before")
    @classmethod
    def _null_message(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("last_update_time", "last_transition_time", mode="before")
    @classmethod
    def _empty_timestamp(cls, v: Any) -> Any:
        return None if v == "" else v

    @field_validator("last_update_time", "last_transition_time")
    @classmethod
    def _assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_serializer("last_update_time", "last_transition_time")
    def _format_timestamp(self, v: Optional[datetime]) -> Optional[str]:
        if v is None:
            return None
        return v.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _describe_validation_error(exc: ValidationError) -> str:
    """Flatten a pydantic ValidationError into a single line."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "(root)"
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


def _decoding_failure(message: str) -> ReconciliationStatus:
    return ReconciliationStatus(
        phase=ResourcePhase.FAILED,
        reason=ConditionReason.APPLY_FAILED,
        message=f"invalid status: {message}",
    )


def status_for(resource: Dict[str, Any]) -> ReconciliationStatus:
    """
    Safely return a typed status from a resource's attribute map.

    An absent status decodes to the zero value. A malformed status decodes
    to a ``Failed`` status describing the problem; this never raises.

    Args:
        resource: Generic attribute map of a custom resource

    Returns:
        The decoded ReconciliationStatus
    """
    raw = resource.get("status") if isinstance(resource, dict) else None

    if raw is None:
        return ReconciliationStatus()
    if isinstance(raw, ReconciliationStatus):
        return raw
    if not isinstance(raw, dict):
        return _decoding_failure(
            f"status must be an object, got {type(raw).__name__}"
        )

    try:
        return ReconciliationStatus.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Could not decode resource status: {e.error_count()} error(s)")
        return _decoding_failure(_describe_validation_error(e))


def set_phase(
    status: ReconciliationStatus,
    phase: ResourcePhase,
    reason: ConditionReason,
    message: str,
    now: Optional[datetime] = None,
) -> ReconciliationStatus:
    """
    Return a new status with the given phase, reason and message.

    ``lastUpdateTime`` moves forward on every call. ``lastTransitionTime``
    moves to the same instant only when the phase changes. Neither ever
    goes backwards, even if the clock does.

    Args:
        status: The current status (left untouched)
        phase: The phase to move to
        reason: Reason for the phase
        message: Free text, e.g. captured workflow output
        now: Clock override, mainly for tests

    Returns:
        The updated ReconciliationStatus
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    for previous in (status.last_update_time, status.last_transition_time):
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)

    update: Dict[str, Any] = {
        "phase": phase,
        "reason": reason,
        "message": message,
        "last_update_time": now,
    }
    if phase != status.phase:
        update["last_transition_time"] = now

    return status.model_copy(update=update)


def to_attribute_map(status: ReconciliationStatus) -> Dict[str, Any]:
    """
    Serialize a status to the generic attribute map stored on the resource.

    Empty optional fields are omitted; ``phase`` is always present.
    """
    data = status.model_dump(mode="json", by_alias=True, exclude_none=True)
    if not data.get("message"):
        data.pop("message", None)
    return data
