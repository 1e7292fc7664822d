"""
Ansible Action Plugin - Implements ActionPlugin with ansible-playbook.

Each workflow maps to a playbook named after it in the playbook directory
(provision.yml, update.yml, deprovision.yml). Parameters are passed to the
playbook in order as ``-e key=value`` extra vars.
"""

import asyncio
import logging
import os
import signal
import time
from typing import Any, Dict, List, Optional

from plugins.actions.base import ActionPlugin
from plugins.base import ExecutionResult, Parameters, Workflow

logger = logging.getLogger(__name__)


class AnsiblePlaybookPlugin(ActionPlugin):
    """
    Action plugin that runs Ansible playbooks as subprocesses.

    stdout and stderr are captured together. The playbook runs in its own
    process group so that the whole tree can be killed on timeout or when
    the calling task is cancelled.
    """

    def __init__(self):
        self.playbook_dir: str = "/opt/playbooks"
        self.binary: str = "ansible-playbook"
        self.timeout: Optional[float] = 1800  # seconds, None disables

    @property
    def name(self) -> str:
        return "ansible"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load Ansible plugin configuration from environment variables."""
        return {
            "playbook_dir": os.getenv("PLAYBOOK_DIR", "/opt/playbooks"),
            "binary": os.getenv("ANSIBLE_PLAYBOOK_BIN", "ansible-playbook"),
            "timeout": float(os.getenv("PLAYBOOK_TIMEOUT", "1800")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the plugin with configuration."""
        self.playbook_dir = config.get("playbook_dir", self.playbook_dir)
        self.binary = config.get("binary", self.binary)
        timeout = config.get("timeout", self.timeout)
        self.timeout = timeout if timeout and timeout > 0 else None

        if not os.path.isdir(self.playbook_dir):
            logger.warning(f"Playbook directory {self.playbook_dir} does not exist")

        logger.debug(
            f"Ansible plugin initialized: playbook_dir={self.playbook_dir}, "
            f"binary={self.binary}, timeout={self.timeout}"
        )

    def playbook_path(self, workflow: Workflow) -> str:
        """Path of the playbook implementing a workflow."""
        return os.path.join(self.playbook_dir, f"{workflow.value}.yml")

    def build_command(self, workflow: Workflow, parameters: Parameters) -> List[str]:
        """Build the ansible-playbook argv for a workflow invocation."""
        command = [self.binary, self.playbook_path(workflow)]
        for key, value in parameters:
            command.extend(["-e", f"{key}={value}"])
        return command

    async def run(self, workflow: Workflow, parameters: Parameters) -> ExecutionResult:
        """Run the playbook for ``workflow`` once and capture its output."""
        command = self.build_command(workflow, parameters)
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
                env={**os.environ, "ANSIBLE_NOCOLOR": "1"},
            )
        except OSError as e:
            detail = f"failed to launch {self.binary}: {e}"
            logger.error(f"Could not start {workflow.value} playbook: {detail}")
            return ExecutionResult(
                succeeded=False,
                detail=detail,
                duration_seconds=time.monotonic() - started,
            )

        logger.info(f"Started {workflow.value} playbook (pid {process.pid})")

        # Output is buffered as it arrives so a killed run keeps what it printed
        chunks: List[bytes] = []
        reader = asyncio.create_task(self._collect(process.stdout, chunks))

        try:
            await asyncio.wait_for(process.wait(), timeout=self.timeout)
            await reader
        except asyncio.TimeoutError:
            await self._terminate(process)
            await self._finish_reader(reader)
            logger.error(
                f"{workflow.value} playbook timed out after {self.timeout:g}s, killed"
            )
            return ExecutionResult(
                succeeded=False,
                output=_decode(chunks),
                detail=f"timed out after {self.timeout:g} seconds",
                duration_seconds=time.monotonic() - started,
            )
        except asyncio.CancelledError:
            await self._terminate(process)
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            logger.warning(f"{workflow.value} playbook cancelled, killed")
            raise

        output = _decode(chunks)
        result = ExecutionResult(
            succeeded=process.returncode == 0,
            output=output,
            exit_code=process.returncode,
            duration_seconds=time.monotonic() - started,
        )
        if process.returncode < 0:
            result.detail = f"terminated by signal {-process.returncode}"
        elif process.returncode > 0:
            result.detail = f"exit code {process.returncode}"

        logger.info(
            f"{workflow.value} playbook finished in {result.duration_seconds:.1f}s "
            f"(exit code {process.returncode})"
        )
        return result

    @staticmethod
    async def _collect(stream: asyncio.StreamReader, chunks: List[bytes]) -> None:
        """Append everything read from ``stream`` to ``chunks`` until EOF."""
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return
            chunks.append(chunk)

    @staticmethod
    async def _finish_reader(reader: asyncio.Task) -> None:
        """Let the reader drain the killed process's pipe, briefly."""
        # A stray grandchild can hold the pipe open past the kill
        _, pending = await asyncio.wait({reader}, timeout=1.0)
        for task in pending:
            task.cancel()
        await asyncio.gather(reader, return_exceptions=True)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Kill the playbook's process group and reap it."""
        if process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError:
                process.kill()
        await process.wait()


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")
