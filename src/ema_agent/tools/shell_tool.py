"""
Shell Command Tool - foreground and background command execution.

Background processes live in a `BackgroundShellManager` owned by whoever
creates the tools, so separate agents (and tests) never share process state.
"""

import asyncio
import logging
import os
import re
import signal
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .base import Tool, ToolParameter, ToolResult

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 65536


@dataclass
class ShellConfig:
    """Configuration for shell command execution."""

    default_timeout: int = 120
    max_timeout: int = 600
    max_output_chars: int = 50_000
    terminate_grace_seconds: float = 5.0

    blocked_patterns: list[str] = field(default_factory=lambda: [
        r"rm\s+-rf\s+/(\s|$)",
        r"rm\s+-rf\s+~(\s|$)",
        r"mkfs",
        r"dd\s+if=.*of=/dev/",
        r":\(\)\s*\{\s*:\|:&\s*\};:",
    ])

    def clamp_timeout(self, timeout: Optional[int]) -> int:
        if timeout is None or timeout < 1:
            return self.default_timeout
        return min(timeout, self.max_timeout)


@dataclass
class BashOutputResult(ToolResult):
    """Command result with separated stdout and stderr.

    When `content` is empty it is built from the streams, the background
    shell id and a non-zero exit code.
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    bash_id: Optional[str] = None

    def __post_init__(self):
        if self.content:
            return

        output = self.stdout
        if self.stderr:
            output += f"\n[stderr]:\n{self.stderr}"
        if self.bash_id:
            output += f"\n[bash_id]:\n{self.bash_id}"
        if self.exit_code:
            output += f"\n[exit_code]:\n{self.exit_code}"

        self.content = output or "(no output)"


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the shell and every child it spawned."""
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


class BackgroundShell:
    """State and buffered output of one background process."""

    def __init__(self, bash_id: str, command: str, process: asyncio.subprocess.Process):
        self.bash_id = bash_id
        self.command = command
        self.process = process
        self.start_time = time.time()
        self.stdout_lines: list[str] = []
        self.stderr_lines: list[str] = []
        self._stdout_read = 0
        self._stderr_read = 0
        self.status = "running"  # running | completed | failed | terminated | error
        self.exit_code: Optional[int] = None
        self._tasks: list[asyncio.Task] = []

    def get_new_output(self, filter_pattern: Optional[str] = None) -> tuple[list[str], list[str]]:
        """Return lines produced since the last call, optionally regex-filtered."""
        stdout_new = self.stdout_lines[self._stdout_read:]
        stderr_new = self.stderr_lines[self._stderr_read:]
        self._stdout_read = len(self.stdout_lines)
        self._stderr_read = len(self.stderr_lines)

        if filter_pattern:
            try:
                pattern = re.compile(filter_pattern)
            except re.error:
                # Invalid regex, return everything
                return stdout_new, stderr_new
            stdout_new = [line for line in stdout_new if pattern.search(line)]
            stderr_new = [line for line in stderr_new if pattern.search(line)]

        return stdout_new, stderr_new

    def update_status(self, exit_code: Optional[int]) -> None:
        """Record process exit."""
        if self.status == "terminated":
            self.exit_code = exit_code
            return
        self.status = "completed" if exit_code == 0 else "failed"
        self.exit_code = exit_code

    async def terminate(self, grace_seconds: float = 5.0) -> None:
        """SIGTERM the process, then kill it if it outlives the grace period."""
        if self.process.returncode is None:
            _signal_group(self.process, signal.SIGTERM)
            try:
                await asyncio.wait_for(self.process.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                _signal_group(self.process, signal.SIGKILL)
                await self.process.wait()

        # Let the pumps drain whatever the process wrote before exiting
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=grace_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self.status = "terminated"
        self.exit_code = self.process.returncode


class BackgroundShellManager:
    """Registry of background shells, keyed by bash id."""

    def __init__(self, config: Optional[ShellConfig] = None):
        self.config = config or ShellConfig()
        self._shells: dict[str, BackgroundShell] = {}

    def add(self, shell: BackgroundShell) -> None:
        self._shells[shell.bash_id] = shell

    def get(self, bash_id: str) -> Optional[BackgroundShell]:
        return self._shells.get(bash_id)

    def available_ids(self) -> list[str]:
        return list(self._shells.keys())

    async def start(self, command: str, cwd: Path) -> BackgroundShell:
        """Spawn `command` and begin buffering its output."""
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            start_new_session=True,
        )
        shell = BackgroundShell(uuid.uuid4().hex[:8], command, process)
        self.add(shell)
        self._start_monitor(shell)
        logger.info(f"Started background shell {shell.bash_id}: {command}")
        return shell

    def _start_monitor(self, shell: BackgroundShell) -> None:
        async def pump(stream: Optional[asyncio.StreamReader], sink: list[str]) -> None:
            if stream is None:
                return
            # Chunked reads: StreamReader line iteration fails on lines over 64 KiB
            pending = b""
            while chunk := await stream.read(READ_CHUNK_BYTES):
                pending += chunk
                *lines, pending = pending.split(b"\n")
                for raw in lines:
                    line = raw.decode("utf-8", errors="replace").rstrip("\r")
                    if line:
                        sink.append(line)
            line = pending.decode("utf-8", errors="replace").rstrip("\r")
            if line:
                sink.append(line)

        async def watch() -> None:
            try:
                await asyncio.gather(
                    pump(shell.process.stdout, shell.stdout_lines),
                    pump(shell.process.stderr, shell.stderr_lines),
                )
                shell.update_status(await shell.process.wait())
            except Exception as e:
                shell.status = "error"
                shell.stderr_lines.append(f"Monitor error: {e}")

        shell._tasks.append(asyncio.create_task(watch()))

    async def terminate(self, bash_id: str) -> BackgroundShell:
        """Terminate a background shell and forget it.

        Raises:
            LookupError: If no shell has this id
        """
        shell = self.get(bash_id)
        if shell is None:
            raise LookupError(f"Shell not found: {bash_id}")

        await shell.terminate(self.config.terminate_grace_seconds)
        del self._shells[bash_id]
        return shell

    async def shutdown(self) -> None:
        """Terminate every remaining background shell."""
        for bash_id in self.available_ids():
            await self.terminate(bash_id)


class ShellExecutor:
    """Runs foreground commands inside the workspace."""

    def __init__(self, workspace_dir: str, config: Optional[ShellConfig] = None):
        self.config = config or ShellConfig()
        self.workspace = Path(workspace_dir).expanduser().resolve()
        self.workspace.mkdir(parents=True, exist_ok=True)

    def check_command(self, command: str) -> Optional[str]:
        """Return a reason if the command is refused, else None."""
        if not command.strip():
            return "Empty command"
        for pattern in self.config.blocked_patterns:
            if re.search(pattern, command, re.IGNORECASE):
                return "Command contains blocked pattern"
        return None

    def _truncate_output(self, output: str) -> str:
        if len(output) > self.config.max_output_chars:
            return output[:self.config.max_output_chars] + "\n\n... (truncated)"
        return output

    async def execute(self, command: str, timeout: Optional[int] = None) -> BashOutputResult:
        """Execute a shell command and wait for it to finish."""
        timeout = self.config.clamp_timeout(timeout)

        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.workspace),
            start_new_session=True,
        )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            _signal_group(process, signal.SIGKILL)
            await process.wait()
            error = f"Command timed out after {timeout} seconds"
            return BashOutputResult(success=False, error=error, stderr=error, exit_code=-1)

        stdout_str = self._truncate_output(stdout.decode("utf-8", errors="replace"))
        stderr_str = self._truncate_output(stderr.decode("utf-8", errors="replace"))
        exit_code = process.returncode or 0

        error = None
        if exit_code != 0:
            error = f"Command failed with exit code {exit_code}"
            if stderr_str.strip():
                error += f"\n{stderr_str.strip()}"

        return BashOutputResult(
            success=exit_code == 0,
            error=error,
            stdout=stdout_str,
            stderr=stderr_str,
            exit_code=exit_code,
        )


def _shell_not_found(manager: BackgroundShellManager, message: str) -> BashOutputResult:
    available = ", ".join(manager.available_ids()) or "none"
    return BashOutputResult(
        success=False,
        error=f"{message}. Available: {available}",
        stderr=message,
        exit_code=-1,
    )


def create_shell_tools(
    workspace_dir: str,
    manager: Optional[BackgroundShellManager] = None,
    config: Optional[ShellConfig] = None,
) -> list[Tool]:
    """Create `bash`, `bash_output` and `bash_kill` bound to one shell manager."""
    manager = manager or BackgroundShellManager(config)
    executor = ShellExecutor(workspace_dir, config or manager.config)

    async def bash_handler(
        command: str,
        timeout: Optional[int] = None,
        run_in_background: bool = False,
    ) -> ToolResult:
        refused = executor.check_command(command)
        if refused:
            return BashOutputResult(success=False, error=f"Command blocked: {refused}", exit_code=-1)

        try:
            if run_in_background:
                shell = await manager.start(command, executor.workspace)
                message = (
                    f"Command started in background. Use bash_output to monitor "
                    f"(bash_id='{shell.bash_id}')."
                )
                return BashOutputResult(
                    success=True,
                    content=f"{message}\n\nCommand: {command}\nBash ID: {shell.bash_id}",
                    stdout=f"Background command started with ID: {shell.bash_id}",
                    bash_id=shell.bash_id,
                )
            return await executor.execute(command, timeout)
        except Exception as e:
            logger.error(f"Error executing command: {e}")
            return BashOutputResult(success=False, error=str(e), stderr=str(e), exit_code=-1)

    async def bash_output_handler(bash_id: str, filter_str: Optional[str] = None) -> ToolResult:
        shell = manager.get(bash_id)
        if shell is None:
            return _shell_not_found(manager, f"Shell not found: {bash_id}")

        stdout_lines, stderr_lines = shell.get_new_output(filter_str)
        return BashOutputResult(
            success=True,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            exit_code=shell.exit_code or 0,
            bash_id=bash_id,
        )

    async def bash_kill_handler(bash_id: str) -> ToolResult:
        shell = manager.get(bash_id)
        if shell is None:
            return _shell_not_found(manager, f"Shell not found: {bash_id}")

        try:
            terminated = await manager.terminate(bash_id)
        except Exception as e:
            return BashOutputResult(
                success=False,
                error=f"Failed to terminate bash shell: {e}",
                stderr=str(e),
                exit_code=-1,
            )

        stdout_lines, stderr_lines = terminated.get_new_output()
        return BashOutputResult(
            success=True,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            exit_code=terminated.exit_code or 0,
            bash_id=bash_id,
        )

    bash = Tool(
        name="bash",
        description=(
            "Execute bash commands in foreground or background. For terminal operations like "
            "git, npm, docker, etc. Do not use for file operations - use the file tools. "
            "For long-running commands (servers, watchers) set run_in_background=true, then "
            "monitor with bash_output and stop with bash_kill."
        ),
        parameters=[
            ToolParameter(
                name="command",
                param_type="string",
                description="The bash command to execute. Quote file paths with spaces using double quotes.",
                required=True,
            ),
            ToolParameter(
                name="timeout",
                param_type="integer",
                description="Timeout in seconds (default: 120, max: 600). Only applies to foreground commands.",
                required=False,
                default=120,
            ),
            ToolParameter(
                name="run_in_background",
                param_type="boolean",
                description="Set to true to run the command in the background.",
                required=False,
            ),
        ],
        handler=bash_handler,
    )

    bash_output = Tool(
        name="bash_output",
        description=(
            "Retrieve new output from a background bash shell since the last check, "
            "with optional regex filtering of lines."
        ),
        parameters=[
            ToolParameter(
                name="bash_id",
                param_type="string",
                description="The ID returned when the command was started with run_in_background=true",
                required=True,
            ),
            ToolParameter(
                name="filter_str",
                param_type="string",
                description="Optional regular expression; only matching lines are returned",
                required=False,
            ),
        ],
        handler=bash_output_handler,
    )

    bash_kill = Tool(
        name="bash_kill",
        description=(
            "Kill a running background bash shell by its ID (SIGTERM, then SIGKILL if needed) "
            "and return any remaining output."
        ),
        parameters=[
            ToolParameter(
                name="bash_id",
                param_type="string",
                description="The ID of the background shell to terminate",
                required=True,
            ),
        ],
        handler=bash_kill_handler,
    )

    return [bash, bash_output, bash_kill]
