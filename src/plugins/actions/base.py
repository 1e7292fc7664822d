"""
Action Plugin Base - Abstract interface for external workflows.

Action plugins run the side-effecting workflow (provision, update,
deprovision) for a resource. The default shipped plugin is Ansible, which
runs one playbook per workflow.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from plugins.base import ExecutionResult, Parameters, Workflow


class ActionPlugin(ABC):
    """
    Abstract base class for action plugins.

    A plugin makes exactly one attempt per ``run`` call. Expected failures
    (the workflow signalled failure, could not be launched, or timed out)
    are reported through the returned ExecutionResult, not raised.
    Implementations must not leave external processes behind, including
    when the calling task is cancelled.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'ansible')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Called once when the plugin is loaded. Use this to set up
        any persistent state or validate configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def run(self, workflow: Workflow, parameters: Parameters) -> ExecutionResult:
        """
        Run a workflow once with the given ordered parameters.

        Args:
            workflow: Which workflow to run
            parameters: Ordered (key, value) string pairs

        Returns:
            ExecutionResult with captured output and, on failure, a detail
            string identifying the kind of failure.
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Override this method in subclasses to define how the plugin
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}
