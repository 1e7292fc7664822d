"""
Input Plugin Base - Abstract interface for resource input sources.

Input plugins accept resource changes from users, write them to the
resource store and publish the matching lifecycle event (ADDED, MODIFIED,
DELETED) on the event bus, where the dispatcher picks it up.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple


class InputPlugin(ABC):
    """Abstract base class for input plugins."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
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

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self) -> None:
        """
        Start accepting resource changes.

        Runs until the plugin is stopped. For HTTP plugins, this serves the
        API.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> Tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}

    def set_db_manager(self, db_manager: Any) -> None:
        """
        Set the database manager holding the resources.

        Override this method in subclasses that require database access.
        """
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """
        Set the event bus lifecycle events are published on.

        Override this method in subclasses that publish or stream events.
        """
        pass
