"""
Core plugin types and dataclasses.

This module contains shared types used across the plugin system.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

# Ordered (key, value) pairs handed to a workflow
Parameters = List[Tuple[str, str]]


class Workflow(Enum):
    """External workflows the controller can invoke."""

    PROVISION = "provision"
    UPDATE = "update"
    DEPROVISION = "deprovision"


@dataclass
class ExecutionRequest:
    """A single workflow invocation derived from a resource."""

    workflow: Workflow
    parameters: Parameters = field(default_factory=list)


@dataclass
class ExecutionResult:
    """Outcome of a single workflow invocation."""

    succeeded: bool = False
    output: str = ""
    detail: str = ""
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0
