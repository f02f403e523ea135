# vspilot/core/command_executor.py
import logging
import platform
import shlex
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence

from .exceptions import CommandExecutionError, TaskCancelledError
from .project_models import CommandOutput

logger = logging.getLogger(__name__)


class CommandExecutor:
    """
    Runs build and test commands inside the project root.

    Output streams are read on separate threads to avoid pipe deadlocks, and the
    process is polled so that a stop event or a timeout can terminate it
    promptly. A non-zero exit code is a normal result (a failed build), not an
    exception.
    """
    def __init__(self, project_root: str | Path, stop_event: Optional[threading.Event] = None, poll_interval: float = 0.2):
        self.project_root = Path(project_root).resolve()
        if not self.project_root.is_dir():
            raise ValueError(f"Project root '{self.project_root}' is not a directory.")
        self.stop_event = stop_event
        self.poll_interval = poll_interval

    @staticmethod
    def _split_command(command: str | Sequence[str]) -> List[str]:
        if isinstance(command, str):
            parts = shlex.split(command, posix=platform.system() != "Windows")
        else:
            parts = [str(p) for p in command]
        if not parts:
            raise ValueError("Command cannot be empty.")
        return parts

    def run_command(self, command: str | Sequence[str], timeout: Optional[float] = None,
                    stop_event: Optional[threading.Event] = None) -> CommandOutput:
        """
        Executes a command and waits for it to finish.

        Args:
            command: Command line string or argument list.
            timeout: Optional limit in seconds; the process is killed when exceeded.
            stop_event: Overrides the executor's stop event for this call.

        Returns:
            The captured output and exit code.

        Raises:
            ValueError: If the command is empty.
            CommandExecutionError: If the executable cannot be started or the timeout expires.
            TaskCancelledError: If the stop event is set while the command runs.
        """
        command_parts = self._split_command(command)
        command_str = " ".join(shlex.quote(p) for p in command_parts)
        stop_event = stop_event or self.stop_event
        logger.info(f"Executing command: {command_str} in CWD: {self.project_root}")

        creationflags = 0
        if platform.system() == "Windows":
            creationflags = subprocess.CREATE_NO_WINDOW

        try:
            process = subprocess.Popen(
                command_parts, shell=False, cwd=self.project_root,
                stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
                encoding=sys.stdout.encoding or "utf-8", errors="replace", bufsize=1,
                creationflags=creationflags,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error(f"Failed to start command '{command_str}': {e}")
            raise CommandExecutionError(f"Failed to start command '{command_str}': {e}", exit_code=None) from e

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        def read_stream(stream, output_list, log_prefix, log_level):
            try:
                for line in iter(stream.readline, ""):
                    stripped_line = line.rstrip()
                    logger.log(log_level, f"[{log_prefix}] {stripped_line}")
                    output_list.append(stripped_line)
                stream.close()
            except (OSError, ValueError) as e_thread:
                logger.error(f"Error reading stream ({log_prefix}): {e_thread}")

        stdout_thread = threading.Thread(target=read_stream, args=(process.stdout, stdout_lines, "CMD OUT", logging.DEBUG), daemon=True)
        stderr_thread = threading.Thread(target=read_stream, args=(process.stderr, stderr_lines, "CMD ERR", logging.DEBUG), daemon=True)
        stdout_thread.start()
        stderr_thread.start()

        deadline = None if timeout is None else time.monotonic() + timeout
        while process.poll() is None:
            if stop_event is not None and stop_event.is_set():
                logger.warning(f"Stop event received. Terminating process {process.pid} for command: '{command_str}'")
                self._terminate(process)
                raise TaskCancelledError(f"Command execution stopped: {command_str}")
            if deadline is not None and time.monotonic() > deadline:
                logger.error(f"Command '{command_str}' exceeded its {timeout}s timeout. Terminating.")
                self._terminate(process)
                raise CommandExecutionError(
                    f"Command timed out after {timeout} seconds: {command_str}",
                    stdout="\n".join(stdout_lines), stderr="\n".join(stderr_lines),
                )
            time.sleep(self.poll_interval)

        stdout_thread.join(timeout=10)
        stderr_thread.join(timeout=10)

        output = CommandOutput(
            command=command_str,
            stdout="\n".join(stdout_lines).strip(),
            stderr="\n".join(stderr_lines).strip(),
            exit_code=process.returncode,
        )
        if output.exit_code != 0:
            logger.warning(f"Command '{command_str}' exited with code {output.exit_code}.")
        else:
            logger.info(f"Command '{command_str}' completed successfully.")
        return output

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=5)
            logger.info(f"Process {process.pid} terminated gracefully.")
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {process.pid} did not terminate gracefully. Killing.")
            process.kill()
            process.wait()
