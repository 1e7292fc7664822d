"""Ansible action plugin."""

from plugins.actions.ansible.executor import AnsiblePlaybookPlugin

__all__ = ["AnsiblePlaybookPlugin"]
