"""
Plugin Registry - Registration and instantiation of plugins.

Action plugins run workflows for the controller; input plugins accept
resource changes from users and turn them into lifecycle events. Both kinds
share the same bookkeeping: a registered class, its name/version, the
configuration it read from the environment, and at most one initialized
instance.
"""

import logging
from typing import Any, Dict, List, Optional, Type

from plugins.actions.base import ActionPlugin
from plugins.inputs.base import InputPlugin

logger = logging.getLogger(__name__)


class _PluginSlots:
    """Registered classes and live instances for one kind of plugin."""

    def __init__(self, kind: str):
        self.kind = kind
        self.classes: Dict[str, Type] = {}
        self.info: Dict[str, Dict[str, str]] = {}
        self.env_configs: Dict[str, Dict[str, Any]] = {}
        self.instances: Dict[str, Any] = {}

    def register(self, plugin_class: Type) -> None:
        # name/version are properties, so a throwaway instance is needed
        probe = plugin_class()
        name, version = probe.name, probe.version

        if name in self.classes:
            logger.warning(f"Overwriting existing {self.kind} plugin: {name}")

        self.classes[name] = plugin_class
        self.info[name] = {"name": name, "version": version}
        self.env_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered {self.kind} plugin: {name} v{version}")

    async def instance(self, name: str, overrides: Optional[Dict[str, Any]]):
        if name not in self.classes:
            available = ", ".join(self.classes) or "none"
            raise ValueError(
                f"Unknown {self.kind} plugin: {name}. Available plugins: {available}"
            )

        if name not in self.instances:
            merged = {**self.env_configs.get(name, {}), **(overrides or {})}
            plugin = self.classes[name]()
            await plugin.initialize(merged)
            self.instances[name] = plugin
            logger.info(f"Initialized {self.kind} plugin: {name}")

        return self.instances[name]


class PluginRegistry:
    """Central registry for action and input plugins."""

    def __init__(self):
        self._actions = _PluginSlots("action")
        self._inputs = _PluginSlots("input")

    def register_action_plugin(self, plugin_class: Type[ActionPlugin]) -> None:
        self._actions.register(plugin_class)

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        self._inputs.register(plugin_class)

    async def get_action_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> ActionPlugin:
        """
        Get an initialized action plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Configuration merged over the plugin's env-derived
                configuration before initialize(); ignored once the
                instance exists

        Raises:
            ValueError: If the plugin name is not registered
        """
        return await self._actions.instance(name, config)

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """Get an initialized input plugin instance (see get_action_plugin)."""
        return await self._inputs.instance(name, config)

    def list_action_plugins(self) -> List[str]:
        return list(self._actions.classes)

    def list_input_plugins(self) -> List[str]:
        return list(self._inputs.classes)

    def has_action_plugin(self, name: str) -> bool:
        return name in self._actions.classes

    def has_input_plugin(self, name: str) -> bool:
        return name in self._inputs.classes

    def get_action_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """Name and version of a registered action plugin, or None."""
        return self._actions.info.get(name)

    def get_input_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        return self._inputs.info.get(name)

    def get_action_plugin_config(self, name: str) -> Dict[str, Any]:
        """Env-derived configuration of an action plugin."""
        return self._actions.env_configs.get(name, {})

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        return self._inputs.env_configs.get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """Register the plugins that ship with the operator."""
    from plugins.actions.ansible import AnsiblePlaybookPlugin
    from plugins.inputs.http import HTTPInputPlugin

    registry = get_registry()
    registry.register_action_plugin(AnsiblePlaybookPlugin)
    registry.register_input_plugin(HTTPInputPlugin)
