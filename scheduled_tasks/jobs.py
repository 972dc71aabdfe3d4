"""
Generic command execution for scheduled tasks.

Executes shell commands with a hard timeout and a bounded read buffer,
and reports every outcome (success, non-zero exit, timeout, spawn failure)
as an ExecutionResult instead of raising.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from typing import List, Optional

from scheduled_tasks.config import DEFAULT_CONFIG, ConfigStore
from scheduled_tasks.models import ExecutionResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5 * 60
MAX_BUFFER_BYTES = 10 * 1024 * 1024  # 10MB per stream

TRUNCATION_MARKER = "\n\n... (output truncated)"

# Exit codes reported when the process never produced one of its own
TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127

_READ_CHUNK = 64 * 1024


class UnsupportedPlatformError(Exception):
    """Raised when no shell family is known for the host platform."""
    pass


def detect_platform(platform: Optional[str] = None) -> str:
    """
    Map ``sys.platform`` to a shell family.

    Returns:
        'windows', 'linux' or 'macos'

    Raises:
        UnsupportedPlatformError: For any other platform
    """
    platform = platform or sys.platform
    if platform.startswith('win'):
        return 'windows'
    if platform.startswith('linux'):
        return 'linux'
    if platform == 'darwin':
        return 'macos'
    raise UnsupportedPlatformError(f"Unsupported platform: {platform}")


def shell_argv(command: str, platform: str) -> List[str]:
    """Wrap a raw command in the platform's shell indirection."""
    if platform == 'windows':
        return ['cmd.exe', '/c', command]
    return ['bash', '-c', command]


def truncate_output(output: Optional[str], max_length: int) -> str:
    """Cap output at max_length characters, appending a marker when cut."""
    if not output or len(output) <= max_length:
        return output or ""
    return output[:max_length] + TRUNCATION_MARKER


class _StreamReader(threading.Thread):
    """Drains one pipe into a buffer capped at max_bytes."""

    def __init__(self, stream, max_bytes: int, on_overflow):
        super().__init__(daemon=True)
        self.stream = stream
        self.max_bytes = max_bytes
        self.on_overflow = on_overflow
        self.buffer = bytearray()
        self.overflowed = False

    def run(self):
        try:
            while True:
                chunk = self.stream.read(_READ_CHUNK)
                if not chunk:
                    break
                room = self.max_bytes - len(self.buffer)
                if len(chunk) > room:
                    self.buffer.extend(chunk[:room])
                    if not self.overflowed:
                        self.overflowed = True
                        self.on_overflow()
                else:
                    self.buffer.extend(chunk)
        except (OSError, ValueError):
            # Pipe closed underneath us after the process was killed
            pass
        finally:
            self.stream.close()

    def text(self) -> str:
        return self.buffer.decode('utf-8', errors='replace')


class CommandExecutor:
    """
    Runs one shell command to completion or timeout.

    This is a generic executor that can run any command - it knows nothing
    about what the command does.
    """

    def __init__(
        self,
        config_store: Optional[ConfigStore] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_buffer: int = MAX_BUFFER_BYTES,
        platform: Optional[str] = None
    ):
        """
        Initialize command executor.

        Args:
            config_store: Source of ``max_output_length`` (defaults apply if None)
            timeout: Hard timeout in seconds
            max_buffer: Read buffer ceiling per stream, in bytes
            platform: Override for ``sys.platform`` (used by tests)
        """
        self.config_store = config_store
        self.timeout = timeout
        self.max_buffer = max_buffer
        self.platform = platform

    def _max_output_length(self) -> int:
        if self.config_store is None:
            return DEFAULT_CONFIG.max_output_length
        max_length = self.config_store.get().max_output_length
        return max_length if max_length and max_length > 0 else DEFAULT_CONFIG.max_output_length

    @staticmethod
    def _kill(process: subprocess.Popen):
        if process.poll() is not None:
            return
        try:
            if os.name == 'posix':
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except (ProcessLookupError, PermissionError):
            process.kill()

    def execute(self, command: str) -> ExecutionResult:
        """
        Execute a shell command.

        Args:
            command: Raw shell command

        Returns:
            ExecutionResult describing the outcome

        Raises:
            UnsupportedPlatformError: If the host has no known shell family
        """
        platform = detect_platform(self.platform)
        argv = shell_argv(command, platform)
        start_time = time.monotonic()

        logger.info(f"Executing command: {command}")

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=(os.name == 'posix'),
            )
        except OSError as e:
            logger.error(f"Command execution failed: {e}")
            return self._result(
                success=False,
                exit_code=SPAWN_FAILURE_EXIT_CODE,
                stdout="",
                stderr=str(e),
                start_time=start_time,
                platform=platform,
            )

        overflow = threading.Event()

        def on_overflow():
            overflow.set()
            self._kill(process)

        stdout_reader = _StreamReader(process.stdout, self.max_buffer, on_overflow)
        stderr_reader = _StreamReader(process.stderr, self.max_buffer, on_overflow)
        stdout_reader.start()
        stderr_reader.start()

        timed_out = False
        try:
            process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            self._kill(process)
            process.wait()

        # Background children can keep the pipes open after the shell exits
        stdout_reader.join(timeout=5)
        stderr_reader.join(timeout=5)
        if os.name == 'posix' and (stdout_reader.is_alive() or stderr_reader.is_alive()):
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass
            stdout_reader.join(timeout=1)
            stderr_reader.join(timeout=1)

        stdout = stdout_reader.text()
        stderr = stderr_reader.text()

        if timed_out:
            logger.error(f"Command timed out after {self.timeout}s: {command}")
            return self._result(
                success=False,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=stdout,
                stderr=stderr,
                start_time=start_time,
                platform=platform,
                notice=f"Command timed out after {self.timeout}s",
            )

        if overflow.is_set():
            logger.error(f"Command output exceeded {self.max_buffer} bytes: {command}")
            return self._result(
                success=False,
                exit_code=process.returncode or 1,
                stdout=stdout,
                stderr=stderr,
                start_time=start_time,
                platform=platform,
                notice=f"Output exceeded {self.max_buffer} bytes",
            )

        if process.returncode != 0:
            logger.warning(f"Command failed with exit code {process.returncode}: {command}")
            return self._result(
                success=False,
                exit_code=process.returncode,
                stdout=stdout,
                stderr=stderr or f"Command failed with exit code {process.returncode}",
                start_time=start_time,
                platform=platform,
            )

        return self._result(
            success=True,
            exit_code=0,
            stdout=stdout,
            stderr=stderr,
            start_time=start_time,
            platform=platform,
        )

    def _result(
        self,
        success: bool,
        exit_code: int,
        stdout: str,
        stderr: str,
        start_time: float,
        platform: str,
        notice: Optional[str] = None
    ) -> ExecutionResult:
        """Build the result; ``notice`` is appended to stderr after truncation."""
        max_length = self._max_output_length()
        duration = int((time.monotonic() - start_time) * 1000)
        stderr_text = truncate_output(stderr, max_length)
        if notice:
            stderr_text = f"{stderr_text.rstrip()}\n{notice}" if stderr_text else notice
        return ExecutionResult(
            success=success,
            exit_code=exit_code,
            stdout=truncate_output(stdout, max_length),
            stderr=stderr_text,
            duration=duration,
            platform=platform,
            truncated=len(stdout) > max_length or len(stderr) > max_length,
        )
