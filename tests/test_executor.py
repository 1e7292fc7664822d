"""Tests for the Ansible action plugin, using stand-in playbook binaries."""

import asyncio
import os
import stat
import sys

import pytest

from plugins.actions.ansible import AnsiblePlaybookPlugin
from plugins.base import Workflow

pytestmark = pytest.mark.skipif(
    sys.platform == "win32", reason="requires POSIX process groups"
)


def write_script(directory, body):
    """Write an executable shell script standing in for ansible-playbook."""
    path = directory / "fake-ansible-playbook"
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


async def make_plugin(tmp_path, body, timeout=30):
    plugin = AnsiblePlaybookPlugin()
    await plugin.initialize(
        {
            "playbook_dir": str(tmp_path),
            "binary": write_script(tmp_path, body),
            "timeout": timeout,
        }
    )
    return plugin


class TestConfiguration:
    """Tests for plugin configuration and command building."""

    def test_metadata(self):
        plugin = AnsiblePlaybookPlugin()
        assert plugin.name == "ansible"
        assert plugin.version == "1.0.0"

    def test_load_config_from_env(self, monkeypatch):
        monkeypatch.setenv("PLAYBOOK_DIR", "/srv/playbooks")
        monkeypatch.setenv("ANSIBLE_PLAYBOOK_BIN", "/usr/local/bin/ansible-playbook")
        monkeypatch.setenv("PLAYBOOK_TIMEOUT", "60")

        assert AnsiblePlaybookPlugin.load_config_from_env() == {
            "playbook_dir": "/srv/playbooks",
            "binary": "/usr/local/bin/ansible-playbook",
            "timeout": 60.0,
        }

    @pytest.mark.asyncio
    async def test_zero_timeout_disables_timeout(self, tmp_path):
        plugin = AnsiblePlaybookPlugin()
        await plugin.initialize({"playbook_dir": str(tmp_path), "timeout": 0})
        assert plugin.timeout is None

    def test_build_command(self):
        plugin = AnsiblePlaybookPlugin()
        plugin.playbook_dir = "/opt/playbooks"

        command = plugin.build_command(
            Workflow.PROVISION, [("namespace", "ns1"), ("size", "3")]
        )

        assert command == [
            "ansible-playbook",
            os.path.join("/opt/playbooks", "provision.yml"),
            "-e",
            "namespace=ns1",
            "-e",
            "size=3",
        ]

    @pytest.mark.parametrize(
        "workflow,playbook",
        [
            (Workflow.PROVISION, "provision.yml"),
            (Workflow.UPDATE, "update.yml"),
            (Workflow.DEPROVISION, "deprovision.yml"),
        ],
    )
    def test_playbook_per_workflow(self, workflow, playbook):
        plugin = AnsiblePlaybookPlugin()
        assert plugin.playbook_path(workflow).endswith(playbook)


@pytest.mark.asyncio
class TestRun:
    """Tests for running playbooks as subprocesses."""

    async def test_success_captures_output_and_arguments(self, tmp_path):
        plugin = await make_plugin(tmp_path, 'echo "args: $*"\n')

        result = await plugin.run(Workflow.UPDATE, [("namespace", "ns1")])

        assert result.succeeded
        assert result.exit_code == 0
        assert result.detail == ""
        assert f"{tmp_path}/update.yml -e namespace=ns1" in result.output

    async def test_nonzero_exit_is_failure_with_both_streams(self, tmp_path):
        plugin = await make_plugin(
            tmp_path, "echo to-stdout\necho to-stderr >&2\nexit 3\n"
        )

        result = await plugin.run(Workflow.PROVISION, [])

        assert not result.succeeded
        assert result.exit_code == 3
        assert result.detail == "exit code 3"
        assert "to-stdout" in result.output
        assert "to-stderr" in result.output

    async def test_missing_binary_is_launch_failure(self, tmp_path):
        plugin = AnsiblePlaybookPlugin()
        missing = str(tmp_path / "no-such-binary")
        await plugin.initialize({"playbook_dir": str(tmp_path), "binary": missing})

        result = await plugin.run(Workflow.PROVISION, [])

        assert not result.succeeded
        assert result.exit_code is None
        assert result.detail.startswith(f"failed to launch {missing}")

    async def test_timeout_kills_and_reports(self, tmp_path):
        plugin = await make_plugin(tmp_path, "exec sleep 30\n", timeout=0.2)

        result = await plugin.run(Workflow.PROVISION, [])

        assert not result.succeeded
        assert result.detail == "timed out after 0.2 seconds"
        assert result.duration_seconds < 10

    async def test_timeout_keeps_output_printed_before_hang(self, tmp_path):
        plugin = await make_plugin(
            tmp_path,
            'echo "TASK [Gathering Facts]"\necho "waiting on host" >&2\nexec sleep 30\n',
            timeout=0.5,
        )

        result = await plugin.run(Workflow.PROVISION, [])

        assert result.detail == "timed out after 0.5 seconds"
        assert "TASK [Gathering Facts]" in result.output
        assert "waiting on host" in result.output
        assert result.exit_code is None

    async def test_cancellation_kills_process(self, tmp_path):
        pid_file = tmp_path / "pid"
        plugin = await make_plugin(tmp_path, f'echo $$ > "{pid_file}"\nexec sleep 30\n')

        task = asyncio.create_task(plugin.run(Workflow.PROVISION, []))
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)
        pid = int(pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
