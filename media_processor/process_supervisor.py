"""
Process supervisor.

Spawns the external executable with its final argument list, attaches its
standard streams and owns the child's lifecycle (join, terminate, kill).
"""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import BinaryIO, Dict, List, Optional, Sequence, Union

import psutil

from media_processor.config import EngineConfig
from media_processor.exceptions import LaunchFailure

logger = logging.getLogger(__name__)


class StdinMode(str, Enum):
    """How the child's standard input is attached."""

    NONE = "none"  # inherited from the caller
    INHERIT_NOTHING = "inherit_nothing"
    REDIRECT_FROM_ENGINE = "redirect_from_engine"


class StdoutMode(str, Enum):
    """How the child's standard output is attached."""

    DISCARD = "discard"
    CAPTURE_TO_MEMORY = "capture_to_memory"
    REDIRECT_TO_FILE = "redirect_to_file"


class ProcessState(str, Enum):
    """Child process states."""

    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


@dataclass
class ProcessHandle:
    """A launched child process and its standard-stream endpoints."""

    pid: int
    executable: str
    argv: List[str]
    state: ProcessState
    started_at: datetime
    process: Optional[asyncio.subprocess.Process] = None
    exit_code: Optional[int] = None
    stdout_file: Optional[BinaryIO] = field(default=None, repr=False)

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self.process.stdin if self.process else None

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self.process.stdout if self.process else None

    @property
    def stderr(self) -> Optional[asyncio.StreamReader]:
        return self.process.stderr if self.process else None

    @property
    def finished(self) -> bool:
        return self.state in (ProcessState.EXITED, ProcessState.KILLED)


def split_arguments(arguments: Union[str, Sequence[str]]) -> List[str]:
    """
    Split a finished argument string into an argument list.

    POSIX shell quoting rules apply on POSIX systems. On Windows the string is
    split on whitespace outside double quotes so backslashes in paths such as
    named-pipe paths survive unchanged.
    """
    if not isinstance(arguments, str):
        return [str(arg) for arg in arguments]

    if os.name != "nt":
        return shlex.split(arguments)

    tokens = []
    for token in shlex.split(arguments, posix=False):
        if len(token) >= 2 and token[0] == token[-1] == '"':
            token = token[1:-1]
        tokens.append(token)
    return tokens


class ProcessSupervisor:
    """
    Launches child processes and supervises them until they exit.

    Launch returns as soon as the child exists; waiting is a separate join
    step so feeder and drainer tasks can be started first.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        """
        Initialize process supervisor.

        Args:
            config: Engine configuration (creates default if not provided)
        """
        if config is None:
            from media_processor.config import get_config

            config = get_config()

        self.config = config

    async def launch(
        self,
        executable: str,
        arguments: Union[str, Sequence[str]] = "",
        stdin_mode: StdinMode = StdinMode.INHERIT_NOTHING,
        stdout_mode: StdoutMode = StdoutMode.CAPTURE_TO_MEMORY,
        stdout_path: Optional[str] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessHandle:
        """
        Spawn the executable without waiting for it.

        Args:
            executable: Path or name of the executable
            arguments: Finished argument string or argument list
            stdin_mode: How to attach standard input
            stdout_mode: How to attach standard output
            stdout_path: Target file for StdoutMode.REDIRECT_TO_FILE
            cwd: Working directory (caller's when not provided)
            env: Environment overrides merged over the caller's environment

        Returns:
            ProcessHandle in RUNNING state

        Raises:
            LaunchFailure: If the executable cannot be found or spawned
        """
        argv = [executable, *split_arguments(arguments)]

        stdin = {
            StdinMode.NONE: None,
            StdinMode.INHERIT_NOTHING: subprocess.DEVNULL,
            StdinMode.REDIRECT_FROM_ENGINE: asyncio.subprocess.PIPE,
        }[stdin_mode]

        stdout_file = None
        if stdout_mode == StdoutMode.REDIRECT_TO_FILE:
            if not stdout_path:
                raise LaunchFailure(executable, "stdout_path is required to redirect stdout")
            try:
                stdout_file = open(stdout_path, "wb")
            except OSError as e:
                raise LaunchFailure(executable, f"cannot open {stdout_path}: {e}") from e
            stdout = stdout_file
        elif stdout_mode == StdoutMode.CAPTURE_TO_MEMORY:
            stdout = asyncio.subprocess.PIPE
        else:
            stdout = subprocess.DEVNULL

        child_env = None
        if env is not None:
            child_env = {**os.environ, **env}

        logger.info(f"Launching {executable}")
        logger.debug(f"Command: {' '.join(argv)}")

        started_at = datetime.now()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=stdin,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=child_env,
            )
        except FileNotFoundError as e:
            self._close_stdout_file(stdout_file)
            raise LaunchFailure(executable, "executable not found") from e
        except PermissionError as e:
            self._close_stdout_file(stdout_file)
            raise LaunchFailure(executable, "permission denied") from e
        except OSError as e:
            self._close_stdout_file(stdout_file)
            raise LaunchFailure(executable, str(e)) from e

        handle = ProcessHandle(
            pid=process.pid,
            executable=executable,
            argv=argv,
            state=ProcessState.RUNNING,
            started_at=started_at,
            process=process,
            stdout_file=stdout_file,
        )

        logger.info(f"Process started (PID: {process.pid})")
        return handle

    async def join(self, handle: ProcessHandle, timeout: Optional[float] = None) -> int:
        """
        Wait for the child to exit.

        Args:
            handle: Process handle
            timeout: Seconds to wait (None waits indefinitely)

        Returns:
            Exit code (negative signal number on POSIX if killed by a signal)

        Raises:
            asyncio.TimeoutError: If the child is still running after ``timeout``
        """
        if handle.process is None:
            raise ValueError("Process handle has no process")

        if timeout is None:
            code = await handle.process.wait()
        else:
            code = await asyncio.wait_for(handle.process.wait(), timeout)

        self._mark_exited(handle, code)
        return code

    async def kill(self, handle: ProcessHandle) -> None:
        """Force-terminate the child and any processes it spawned."""
        process = handle.process
        if process is None or process.returncode is not None:
            if process is not None and not handle.finished:
                self._mark_exited(handle, process.returncode)
            return

        logger.warning(f"Force killing process {handle.pid}")
        for child in self._descendants(handle.pid):
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

        try:
            process.kill()
        except ProcessLookupError:
            pass

        try:
            code = await asyncio.wait_for(process.wait(), self.config.kill_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Process {handle.pid} did not exit after kill")
            return

        handle.exit_code = code
        handle.state = ProcessState.KILLED
        self._close_stdout_file(handle.stdout_file)

    async def terminate(self, handle: ProcessHandle) -> bool:
        """
        Terminate the child gracefully, force killing it after kill_timeout.

        Returns:
            True if the child exited on the termination signal alone
        """
        process = handle.process
        if process is None or process.returncode is not None:
            return True

        logger.debug(f"Gracefully terminating process {handle.pid}")
        try:
            process.terminate()
        except ProcessLookupError:
            return True

        try:
            code = await asyncio.wait_for(process.wait(), self.config.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Process {handle.pid} did not terminate gracefully, force killing")
            await self.kill(handle)
            return False

        handle.exit_code = code
        handle.state = ProcessState.KILLED
        self._close_stdout_file(handle.stdout_file)
        return True

    def is_alive(self, handle: ProcessHandle) -> bool:
        """Check whether the child is still running (zombies count as dead)."""
        if handle.process is not None and handle.process.returncode is not None:
            return False
        try:
            return psutil.Process(handle.pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def _descendants(self, pid: int) -> List[psutil.Process]:
        try:
            return psutil.Process(pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def _mark_exited(self, handle: ProcessHandle, code: Optional[int]) -> None:
        handle.exit_code = code
        if handle.state != ProcessState.KILLED:
            handle.state = ProcessState.EXITED
            logger.info(f"Process {handle.pid} exited with code {code}")
        self._close_stdout_file(handle.stdout_file)

    @staticmethod
    def _close_stdout_file(stdout_file: Optional[BinaryIO]) -> None:
        if stdout_file is not None and not stdout_file.closed:
            stdout_file.close()
