"""Input plugins accept resource changes and publish lifecycle events."""

from plugins.inputs.base import InputPlugin

__all__ = ["InputPlugin"]
