"""
Plugin system for the playbook operator.

Action plugins run provision/update/deprovision workflows; input plugins
accept resource changes.
"""

from plugins.base import ExecutionRequest, ExecutionResult, Parameters, Workflow
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "Parameters",
    "Workflow",
    "PluginRegistry",
    "get_registry",
]
