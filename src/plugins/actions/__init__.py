"""
Action plugins package.

Action plugins run the external workflows (Ansible playbooks, scripts, etc.)
"""

from plugins.actions.base import ActionPlugin

__all__ = ["ActionPlugin"]
