"""
Shell command sessions with a tracked working directory.

Each session id owns a working directory and at most one running process.
On POSIX the command runs under bash with a trailer that echoes the final
working directory, so a `cd` inside the command moves the session.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import re
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import DEFAULT_BACKGROUND_GRACE_SECONDS, DEFAULT_COMMAND_TIMEOUT
from .errors import AbortError, TaskExecutionError
from .logs import log, verbose_log
from .registry import CancellationToken

CWD_MARKER = "__ANITA_CWD__:"
BACKGROUND_MESSAGE = "Command started in background..."
LONG_RUNNING_PROGRAMS = {"vite", "serve", "node", "watch"}
LONG_RUNNING_SCRIPTS = {("run", "dev")}
NPM_CLIENTS = {"npm", "yarn", "pnpm"}
COMMAND_PREFIXES = {"npx", "exec", "nohup", "env"}
WATCH_FLAG = "--watch"
SEGMENT_SEPARATOR = re.compile(r"&&|\|\||[;|&\n]")
ENV_ASSIGNMENT_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*=")
CD_PATTERN = re.compile(r"^\s*cd\s+(.+?)\s*$")

POLL_INTERVAL_SECONDS = 0.1
TERMINATE_TIMEOUT_SECONDS = 5

OutputCallback = Callable[[str, str], None]


@dataclass
class CommandResult:
    """Outcome of one command execution."""
    success: bool
    stdout: str = ""
    stderr: str = ""
    error: str = ""
    is_background: bool = False
    exit_code: Optional[int] = None


class OutputCollector:
    """Collects a process stream and tracks its size."""

    def __init__(self):
        self.lines: list[str] = []
        self.bytes_received = 0
        self.line_count = 0

    def add_line(self, line: str) -> None:
        self.lines.append(line)
        self.bytes_received += len(line.encode("utf-8"))
        self.line_count += 1

    def get_output(self) -> str:
        return "".join(self.lines)


def stream_output(
    pipe,
    stream: str,
    collector: OutputCollector,
    session_id: str,
    on_output: Optional[OutputCallback] = None,
) -> None:
    """Stream a subprocess pipe line by line into a collector and callback."""
    try:
        for line in iter(pipe.readline, ""):
            if not line:
                continue
            collector.add_line(line)
            if line.startswith(CWD_MARKER):
                continue
            if on_output:
                on_output(session_id, line)
            verbose_log(f"{stream}: {line.rstrip()}", f"SESSION {session_id}")
    except (OSError, ValueError) as e:
        verbose_log(f"Error streaming {stream}: {e}", "SESSION")
    finally:
        pipe.close()


def _command_words(segment: str) -> list[str]:
    try:
        words = shlex.split(segment)
    except ValueError:
        words = segment.split()
    while words and (ENV_ASSIGNMENT_PATTERN.match(words[0]) or words[0] in COMMAND_PREFIXES):
        words = words[1:]
    return words


def is_long_running(command: str) -> bool:
    """True when any command in a shell line starts a server or watcher.

    Patterns match whole command words: the program name, npm scripts,
    or an exact --watch flag.
    """
    for segment in SEGMENT_SEPARATOR.split(command.lower()):
        words = _command_words(segment)
        if not words:
            continue
        program = os.path.basename(words[0])
        if program in LONG_RUNNING_PROGRAMS:
            return True
        if program in NPM_CLIENTS and tuple(words[1:3]) in LONG_RUNNING_SCRIPTS:
            return True
        if program in NPM_CLIENTS and words[1:2] == ["start"]:
            return True
        if WATCH_FLAG in words:
            return True
    return False


def split_cwd_trailer(stdout: str) -> tuple[str, Optional[str]]:
    """Remove the cwd trailer line from stdout, returning (stdout, cwd)."""
    cwd = None
    kept = []
    for line in stdout.splitlines(keepends=True):
        if line.startswith(CWD_MARKER):
            cwd = line[len(CWD_MARKER):].strip()
        else:
            kept.append(line)
    return "".join(kept), cwd


def close_stdin(process: subprocess.Popen) -> None:
    if process.stdin is None or process.stdin.closed:
        return
    try:
        process.stdin.close()
    except OSError as e:
        verbose_log(f"Error closing stdin of PID {process.pid}: {e}", "SESSION")


def terminate_process(process: subprocess.Popen) -> None:
    if process.poll() is None:
        process.terminate()
        try:
            process.wait(timeout=TERMINATE_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
    close_stdin(process)


class _Session:
    def __init__(self, cwd: str):
        self.cwd = cwd
        self.process: Optional[subprocess.Popen] = None
        self.lock = threading.Lock()


class CommandSessionService:
    """Runs commands per session id and streams their output."""

    def __init__(
        self,
        default_cwd: str,
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        background_grace_seconds: float = DEFAULT_BACKGROUND_GRACE_SECONDS,
        on_output: Optional[OutputCallback] = None,
    ):
        self.default_cwd = os.path.abspath(default_cwd)
        self.command_timeout = command_timeout
        self.background_grace_seconds = background_grace_seconds
        self.on_output = on_output
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    def _session(self, session_id: str) -> _Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = _Session(self.default_cwd)
                self._sessions[session_id] = session
            return session

    def _build_argv(self, command: str) -> list[str]:
        if os.name != "posix":
            return ["cmd", "/c", command]
        script = (
            f"{command}\n"
            "__anita_status=$?\n"
            f"echo \"{CWD_MARKER}$(pwd)\"\n"
            "exit $__anita_status"
        )
        return ["bash", "-c", script]

    def execute(
        self,
        session_id: str,
        command: str,
        token: Optional[CancellationToken] = None,
    ) -> CommandResult:
        """Run a command in the session's working directory.

        Long-running commands are left running once the grace period
        passes. Raises AbortError if the token is cancelled meanwhile.
        """
        session = self._session(session_id)
        if token is not None:
            token.raise_if_cancelled()
        with session.lock:
            if session.process is not None and session.process.poll() is None:
                log(f"Stopping previous process in session {session_id}", "SESSION")
                terminate_process(session.process)
            session.process = None
            cwd = session.cwd

        log(f"$ {command}  (cwd: {cwd})", "SESSION")
        start_time = time.time()
        try:
            process = subprocess.Popen(
                self._build_argv(command),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=cwd,
            )
        except OSError as e:
            return CommandResult(success=False, error=f"Failed to start command: {e}")

        with session.lock:
            session.process = process
        terminate_on_cancel = None
        if token is not None:
            terminate_on_cancel = token.on_cancel(lambda: terminate_process(process))

        stdout_collector = OutputCollector()
        stderr_collector = OutputCollector()
        stdout_thread = threading.Thread(
            target=stream_output,
            args=(process.stdout, "OUT", stdout_collector, session_id, self.on_output),
            daemon=True,
        )
        stderr_thread = threading.Thread(
            target=stream_output,
            args=(process.stderr, "ERR", stderr_collector, session_id, self.on_output),
            daemon=True,
        )
        stdout_thread.start()
        stderr_thread.start()

        background = is_long_running(command)
        left_running = False
        try:
            while process.poll() is None:
                if token is not None and token.cancelled:
                    terminate_process(process)
                    raise AbortError(f"Command cancelled: {command}")
                elapsed = time.time() - start_time
                if background and elapsed >= self.background_grace_seconds:
                    log(f"Left running in background (PID {process.pid}): {command}", "SESSION")
                    left_running = True
                    return CommandResult(
                        success=True,
                        stdout=stdout_collector.get_output() or BACKGROUND_MESSAGE,
                        is_background=True,
                    )
                if elapsed > self.command_timeout:
                    log(f"TIMEOUT after {self.command_timeout}s: {command}", "SESSION")
                    terminate_process(process)
                    stdout_thread.join(timeout=2)
                    stderr_thread.join(timeout=2)
                    return CommandResult(
                        success=False,
                        stdout=split_cwd_trailer(stdout_collector.get_output())[0],
                        stderr=stderr_collector.get_output(),
                        error=f"Command timed out after {self.command_timeout}s",
                        exit_code=-1,
                    )
                time.sleep(POLL_INTERVAL_SECONDS)

            stdout_thread.join(timeout=5)
            stderr_thread.join(timeout=5)
            with session.lock:
                if session.process is process:
                    session.process = None

            if token is not None and token.cancelled:
                raise AbortError(f"Command cancelled: {command}")

            stdout, new_cwd = split_cwd_trailer(stdout_collector.get_output())
            stderr = stderr_collector.get_output()
            if new_cwd and os.path.isdir(new_cwd):
                with session.lock:
                    session.cwd = new_cwd

            exit_code = process.returncode
            if exit_code != 0:
                error = stderr.strip() or stdout.strip() or f"Command exited with code {exit_code}"
                verbose_log(f"Exit code {exit_code} after {time.time() - start_time:.1f}s", "SESSION")
                return CommandResult(
                    success=False, stdout=stdout, stderr=stderr, error=error, exit_code=exit_code
                )
            return CommandResult(success=True, stdout=stdout, stderr=stderr, exit_code=exit_code)
        finally:
            if terminate_on_cancel is not None:
                token.remove_callback(terminate_on_cancel)
            if not left_running:
                # Readers close stdout/stderr at EOF; stdin is ours to close.
                stdout_thread.join(timeout=2)
                stderr_thread.join(timeout=2)
                close_stdin(process)

    def send_input(self, session_id: str, text: str) -> Optional[CommandResult]:
        """Type into the running process, or run the text as a new command."""
        session = self._session(session_id)
        with session.lock:
            process = session.process
        if process is not None and process.poll() is None and process.stdin:
            try:
                process.stdin.write(text + "\n")
                process.stdin.flush()
                return None
            except (BrokenPipeError, OSError) as e:
                verbose_log(f"stdin closed for {session_id}: {e}", "SESSION")

        match = CD_PATTERN.match(text)
        if match:
            target = os.path.expanduser(match.group(1).strip("'\""))
            with session.lock:
                target = os.path.normpath(os.path.join(session.cwd, target))
            if not os.path.isdir(target):
                return CommandResult(success=False, error=f"cd: no such directory: {match.group(1)}")
            with session.lock:
                session.cwd = target
            return CommandResult(success=True)
        return self.execute(session_id, text)

    def get_cwd(self, session_id: str) -> str:
        session = self._session(session_id)
        with session.lock:
            return session.cwd

    def set_cwd(self, session_id: str, path: str) -> None:
        if not os.path.isdir(path):
            raise TaskExecutionError(f"Not a directory: {path}")
        session = self._session(session_id)
        with session.lock:
            session.cwd = os.path.abspath(path)

    def close(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None and session.process is not None:
            terminate_process(session.process)

    def close_all(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            self.close(session_id)
