# tests/test_sessions.py
# Tests for CommandSessionService against a real bash shell.

import os
import subprocess
import threading

import pytest

from anita_orchestrator.errors import AbortError, TaskExecutionError
from anita_orchestrator.registry import CancellationToken
from anita_orchestrator.sessions import (
    BACKGROUND_MESSAGE,
    CommandSessionService,
    is_long_running,
    split_cwd_trailer,
    CWD_MARKER,
)

pytestmark = pytest.mark.skipif(os.name != "posix", reason="bash sessions are POSIX only")


def _service(workspace, **kwargs):
    kwargs.setdefault("background_grace_seconds", 0.3)
    return CommandSessionService(workspace, **kwargs)


def test_execute_captures_output_and_hides_trailer(workspace):
    lines = []
    service = _service(workspace, on_output=lambda sid, line: lines.append(line))
    result = service.execute("s1", "echo hello")
    assert result.success
    assert result.stdout == "hello\n"
    assert lines == ["hello\n"]
    assert CWD_MARKER not in result.stdout


def test_failed_command_reports_error(workspace):
    result = _service(workspace).execute("s1", "echo broken >&2; exit 3")
    assert not result.success
    assert result.exit_code == 3
    assert result.error == "broken"


def test_cd_inside_command_moves_session(workspace):
    os.makedirs(os.path.join(workspace, "app"))
    service = _service(workspace)
    assert service.execute("s1", "cd app && echo in").success
    assert service.get_cwd("s1") == os.path.join(workspace, "app")
    assert service.execute("s1", "pwd").stdout.strip() == os.path.join(workspace, "app")
    assert service.get_cwd("s2") == workspace


def test_failed_cd_keeps_cwd_unchanged_on_error(workspace):
    service = _service(workspace)
    result = service.execute("s1", "cd missing")
    assert not result.success
    assert service.get_cwd("s1") == workspace


def test_long_running_command_returns_background(workspace):
    service = _service(workspace)
    try:
        result = service.execute("s1", "sleep 30 # --watch")
        assert result.success
        assert result.is_background
        assert result.stdout == BACKGROUND_MESSAGE
    finally:
        service.close("s1")


def test_cancel_terminates_foreground_command(workspace):
    service = _service(workspace)
    token = CancellationToken()
    timer = threading.Timer(0.3, token.cancel)
    timer.start()
    try:
        with pytest.raises(AbortError):
            service.execute("s1", "sleep 30", token=token)
    finally:
        timer.cancel()


def test_timeout_fails_command(workspace):
    result = _service(workspace, command_timeout=0).execute("s1", "sleep 5")
    assert not result.success
    assert "timed out" in result.error


def test_send_input_cd_tracks_directory(workspace):
    os.makedirs(os.path.join(workspace, "pkg"))
    service = _service(workspace)
    assert service.send_input("s1", "cd pkg").success
    assert service.get_cwd("s1") == os.path.join(workspace, "pkg")
    assert not service.send_input("s1", "cd nowhere").success


def test_send_input_runs_command_when_idle(workspace):
    result = _service(workspace).send_input("s1", "echo typed")
    assert result.stdout == "typed\n"


def test_set_cwd_rejects_non_directory(workspace):
    path = os.path.join(workspace, "file.txt")
    with open(path, "w") as f:
        f.write("x")
    service = _service(workspace)
    with pytest.raises(TaskExecutionError):
        service.set_cwd("s1", path)


def test_is_long_running_patterns():
    assert is_long_running("npm run dev")
    assert is_long_running("npx vite --port 3000")
    assert is_long_running("node server.js")
    assert not is_long_running("npm install")


def test_split_cwd_trailer():
    stdout, cwd = split_cwd_trailer(f"out\n{CWD_MARKER}/tmp/x\n")
    assert stdout == "out\n"
    assert cwd == "/tmp/x"


def test_long_running_matches_whole_command_words():
    assert is_long_running("npm start")
    assert is_long_running("cd app && npm run dev")
    assert is_long_running("PORT=3000 serve -s build")
    assert is_long_running("tsc --watch")
    assert not is_long_running("pytest tests/test_observer.py")
    assert not is_long_running("npx jest --watchAll=false")
    assert not is_long_running("cat reserved.txt")
    assert not is_long_running("grep invite README.md")
    assert not is_long_running("npm run build")


def test_failing_command_mentioning_a_pattern_is_not_backgrounded(workspace):
    result = _service(workspace).execute("s1", "sleep 1; echo reserve; exit 3")
    assert not result.is_background
    assert not result.success
    assert result.exit_code == 3


def test_execute_releases_pipes_and_cancel_callbacks(workspace, monkeypatch):
    started = []
    real_popen = subprocess.Popen

    def recording_popen(*args, **kwargs):
        process = real_popen(*args, **kwargs)
        started.append(process)
        return process

    monkeypatch.setattr(subprocess, "Popen", recording_popen)
    service = _service(workspace)
    token = CancellationToken()
    for _ in range(10):
        assert service.execute("s1", "true", token=token).success
    assert token.pending_callbacks == 0
    assert len(started) == 10
    for process in started:
        assert process.stdin.closed
        assert process.stdout.closed
        assert process.stderr.closed


def test_failed_command_releases_cancel_callback(workspace):
    token = CancellationToken()
    assert not _service(workspace).execute("s1", "exit 2", token=token).success
    assert token.pending_callbacks == 0
