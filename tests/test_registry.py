# tests/test_registry.py
# Unit tests for CancellationToken and ConversationRegistry persistence.

from anita_orchestrator.models import ROLE_ASSISTANT, ROLE_USER, Message
from anita_orchestrator.registry import CancellationToken, ConversationRegistry
from anita_orchestrator.store import CONVERSATIONS_KEY, BlobStore


def test_removed_callback_is_not_run_on_cancel():
    token = CancellationToken()
    calls = []
    kept = token.on_cancel(lambda: calls.append("kept"))
    removed = token.on_cancel(lambda: calls.append("removed"))
    token.remove_callback(removed)
    assert token.pending_callbacks == 1
    token.cancel()
    assert calls == ["kept"]
    token.remove_callback(kept)
    assert token.pending_callbacks == 0


def test_on_cancel_after_cancel_runs_immediately():
    token = CancellationToken()
    token.cancel()
    calls = []
    token.on_cancel(lambda: calls.append(1))
    assert calls == [1]
    assert token.pending_callbacks == 0


def test_close_does_not_persist_in_flight_replies(tmp_path):
    blobs = BlobStore(str(tmp_path / "state.yaml"))
    registry = ConversationRegistry(blobs, str(tmp_path))
    streaming = registry.create("streaming")
    closing = registry.create("closing")
    streaming.messages.append(Message(id="m1", role=ROLE_USER, content="explain"))
    streaming.messages.append(Message(id="m2", role=ROLE_ASSISTANT, content="partial", loading=True))

    assert registry.close(closing.id)

    stored = BlobStore(str(tmp_path / "state.yaml")).get(CONVERSATIONS_KEY)
    assert [c["id"] for c in stored] == [streaming.id]
    assert [m["id"] for m in stored[0]["messages"]] == ["m1"]
