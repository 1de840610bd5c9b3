# tests/conftest.py
# Shared fakes for the completion and command session services.

import os

import pytest

from anita_orchestrator.completion import UsageTracker
from anita_orchestrator.config import POLICY_AUTO, EngineConfig
from anita_orchestrator.engine import Orchestrator
from anita_orchestrator.errors import TaskExecutionError
from anita_orchestrator.registry import ConversationRegistry
from anita_orchestrator.sessions import CommandResult
from anita_orchestrator.store import BlobStore, PlanStore
from anita_orchestrator.workspace import FileStore


class FakeCompletionService:
    """Returns queued responses; an Exception in the queue is raised instead."""

    def __init__(self, responses=None, chunk_size=8):
        self.responses = list(responses or [])
        self.chunk_size = chunk_size
        self.requests = []
        self.usage = UsageTracker()

    def _next(self, messages, token):
        self.requests.append(messages)
        if token is not None:
            token.raise_if_cancelled()
        if not self.responses:
            raise AssertionError("FakeCompletionService ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def chat(self, messages, model=None, token=None):
        return self._next(messages, token)

    def stream_chat(self, messages, model=None, token=None):
        text = self._next(messages, token)
        for i in range(0, len(text), self.chunk_size):
            if token is not None:
                token.raise_if_cancelled()
            yield text[i:i + self.chunk_size]


class FakeSessionService:
    """Records commands; `results` maps a command to a CommandResult and
    `cd_targets` maps a command to the directory it leaves the session in."""

    def __init__(self, default_cwd, results=None, cd_targets=None):
        self.default_cwd = default_cwd
        self.results = dict(results or {})
        self.cd_targets = dict(cd_targets or {})
        self.executed = []
        self.cwds = {}
        self.closed = []

    def execute(self, session_id, command, token=None):
        if token is not None:
            token.raise_if_cancelled()
        self.executed.append((session_id, command))
        result = self.results.get(command, CommandResult(success=True, stdout="ok\n"))
        if result.success and command in self.cd_targets:
            self.cwds[session_id] = self.cd_targets[command]
        return result

    def send_input(self, session_id, text):
        return self.execute(session_id, text)

    def get_cwd(self, session_id):
        return self.cwds.get(session_id, self.default_cwd)

    def set_cwd(self, session_id, path):
        if not os.path.isdir(path):
            raise TaskExecutionError(f"Not a directory: {path}")
        self.cwds[session_id] = path

    def close(self, session_id):
        self.closed.append(session_id)

    def close_all(self):
        pass


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "ws"
    root.mkdir()
    return str(root.resolve())


@pytest.fixture
def config(workspace, tmp_path):
    return EngineConfig(
        api_key="test-key",
        execution_policy=POLICY_AUTO,
        workspace=workspace,
        state_path=str(tmp_path / "state.yaml"),
    )


@pytest.fixture
def make_engine(config, workspace):
    """Build an Orchestrator around fake services."""

    def _make(responses=None, results=None, cd_targets=None, approve=None, events=None):
        blobs = BlobStore(config.state_path)
        completion = FakeCompletionService(responses)
        sessions = FakeSessionService(workspace, results=results, cd_targets=cd_targets)
        on_event = (lambda name, payload: events.append((name, payload))) if events is not None else None
        return Orchestrator(
            config=config,
            registry=ConversationRegistry(blobs, workspace),
            plan_store=PlanStore(blobs),
            files=FileStore(workspace),
            completion=completion,
            sessions=sessions,
            approve=approve,
            on_event=on_event,
        )

    return _make
