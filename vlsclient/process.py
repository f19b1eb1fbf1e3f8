"""Language server process supervision."""

import asyncio
import logging
import os
import shutil
import sys
from typing import Callable, Dict, List, Optional, Sequence, TypeAlias

from vlsclient.errors import SpawnError

LivenessCallback: TypeAlias = Callable[["ProcessHandle", Optional[int]], None]


def executable_name(name: str, platform: Optional[str] = None) -> str:
    """Append the platform's executable suffix to a program name.

    Args:
        name: Program name without suffix.
        platform: Platform identifier, defaults to ``sys.platform``.

    Returns:
        ``name + ".exe"`` on Windows, ``name`` elsewhere.
    """
    platform = platform or sys.platform
    return name + ".exe" if platform == "win32" else name


def resolve_executable(install_dir: str, name: str, platform: Optional[str] = None) -> str:
    """Resolve a server executable relative to an installation directory.

    Args:
        install_dir: Directory the client was installed into.
        name: Program name without suffix.
        platform: Platform identifier, defaults to ``sys.platform``.

    Returns:
        Absolute path of the executable.
    """
    return os.path.join(os.path.abspath(install_dir), executable_name(name, platform))


class ProcessHandle:
    """A spawned language server process.

    Only the supervisor that created a handle may terminate it; sessions use
    it to reach the standard streams and to check liveness.
    """

    def __init__(self, process: asyncio.subprocess.Process, command: Sequence[str]):
        self.process = process
        self.command = list(command)
        self.terminating = False
        self.returncode: Optional[int] = None
        self._exited = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return not self._exited.is_set() and self.process.returncode is None

    @property
    def stdin(self) -> asyncio.StreamWriter:
        return self.process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self.process.stdout

    async def wait(self) -> Optional[int]:
        """Wait for the process to exit and return its exit code."""
        await self._exited.wait()
        return self.returncode

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} alive={self.alive}>"


class ProcessSupervisor:
    """Spawns, watches and terminates language server processes."""

    def __init__(self):
        self.logger = logging.getLogger("vlsclient.process")
        self.server_logger = logging.getLogger("vlsclient.server")
        self._liveness_callbacks: List[LivenessCallback] = []

    def on_liveness_lost(self, callback: LivenessCallback) -> None:
        """Register a callback for processes that exit without being terminated.

        Args:
            callback: Called with the handle and its exit code, once per handle.
        """
        self._liveness_callbacks.append(callback)

    async def spawn(
        self,
        executable: str,
        arguments: Sequence[str] = (),
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessHandle:
        """Start the server with its standard streams connected to pipes.

        Args:
            executable: Path of the server executable.
            arguments: Command-line arguments.
            cwd: Working directory for the server.
            env: Extra environment variables layered over the current ones.

        Returns:
            A handle for the running process.

        Raises:
            SpawnError: If the executable is missing or cannot be run.
        """
        resolved = executable
        if not os.path.dirname(executable):
            # Bare program names are looked up on PATH
            resolved = shutil.which(executable) or executable

        if not os.path.isfile(resolved):
            raise SpawnError(f"Language server executable not found: {executable}")
        if not os.access(resolved, os.X_OK):
            raise SpawnError(f"Language server executable is not runnable: {executable}")

        command = [resolved, *arguments]
        environment = None
        if env:
            environment = os.environ.copy()
            environment.update(env)

        self.logger.info(f"Starting language server with command: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=environment,
            )
        except OSError as e:
            raise SpawnError(f"Failed to start language server {executable}: {e}") from e

        handle = ProcessHandle(process, command)
        handle._tasks.append(asyncio.create_task(self._watch(handle), name=f"vls-watch-{process.pid}"))
        if process.stderr is not None:
            handle._tasks.append(
                asyncio.create_task(self._drain_stderr(process.stderr), name=f"vls-stderr-{process.pid}")
            )
        self.logger.info(f"Language server started with pid {process.pid}")
        return handle

    async def terminate(self, handle: ProcessHandle, grace_period: float = 2.0) -> bool:
        """Ask the server to exit, killing it if it outlives the grace period.

        Args:
            handle: The process to stop.
            grace_period: Seconds to wait after SIGTERM before SIGKILL.

        Returns:
            True if a signal was sent, False if the process had already exited.
        """
        if handle.terminating or not handle.alive:
            if handle.terminating:
                await handle.wait()
            return False

        handle.terminating = True
        self.logger.info(f"Stopping language server (pid {handle.pid})")
        try:
            handle.process.terminate()
        except ProcessLookupError:
            await handle.wait()
            return False

        try:
            await asyncio.wait_for(handle.wait(), timeout=grace_period)
        except asyncio.TimeoutError:
            self.logger.warning(f"Language server (pid {handle.pid}) did not terminate, forcing kill")
            try:
                handle.process.kill()
            except ProcessLookupError:
                pass
            await handle.wait()

        self.logger.info(f"Language server stopped with exit code {handle.returncode}")
        return True

    async def _watch(self, handle: ProcessHandle) -> None:
        """Record the exit of a process and report it if nobody asked for it."""
        returncode = await handle.process.wait()
        handle.returncode = returncode
        handle._exited.set()

        if handle.terminating:
            return

        self.logger.info(f"Language server (pid {handle.pid}) exited with code {returncode}")
        for callback in list(self._liveness_callbacks):
            try:
                callback(handle, returncode)
            except Exception:
                self.logger.exception("Liveness callback failed")

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        """Forward the server's stderr to the log."""
        while True:
            line = await stream.readline()
            if not line:
                break
            self.server_logger.debug(line.decode("utf-8", errors="replace").rstrip())
