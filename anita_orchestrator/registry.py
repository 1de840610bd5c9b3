"""
Conversation registry: conversations, cancellation tokens and tracked
execution directories.

The registry is owned by the caller and injected into the engine. Tokens
and tracked directories are runtime state and are never persisted.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from __future__ import annotations

import threading
from typing import Callable, Optional

from .errors import AbortError
from .logs import verbose_log
from .models import CONVERSATION_IDLE, Conversation, new_id
from .store import CONVERSATIONS_KEY, BlobStore

DEFAULT_TITLE = "New Chat"
TITLE_LENGTH = 40


class CancellationToken:
    """Cooperative cancellation flag passed through every blocking call."""

    def __init__(self):
        self._event = threading.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                verbose_log(f"Cancel callback failed: {e}", "REGISTRY")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback, run immediately if already cancelled.

        Returns the callback so the caller can pass it to remove_callback
        once the guarded resource is released.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return callback
        callback()
        return callback

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    @property
    def pending_callbacks(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortError("Request cancelled")

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class ConversationRegistry:
    """Thread-safe owner of conversations and their runtime state."""

    def __init__(self, blobs: BlobStore, workspace_root: str):
        self.blobs = blobs
        self.workspace_root = workspace_root
        self._lock = threading.Lock()
        self._conversations: dict[str, Conversation] = {
            c["id"]: Conversation.from_dict(c)
            for c in blobs.get(CONVERSATIONS_KEY, []) or []
            if c.get("id")
        }
        self._tokens: dict[str, CancellationToken] = {}
        self._tracked_dirs: dict[str, str] = {}
        self._executing: set[str] = set()

    # Conversations

    def create(self, title: str = "") -> Conversation:
        conversation = Conversation(id=new_id("chat-"), title=title[:TITLE_LENGTH] or DEFAULT_TITLE)
        with self._lock:
            self._conversations[conversation.id] = conversation
        self.save(conversation)
        return conversation

    def get(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def list(self) -> list[Conversation]:
        with self._lock:
            conversations = list(self._conversations.values())
        return sorted(conversations, key=lambda c: c.created_at, reverse=True)

    def save(self, conversation: Conversation) -> None:
        """Persist all conversations, dropping any in-flight message."""
        with self._lock:
            self._conversations[conversation.id] = conversation
            snapshot = self._snapshot()
        self.blobs.set(CONVERSATIONS_KEY, snapshot)

    def _snapshot(self) -> list[dict]:
        # Caller holds self._lock. In-flight replies are never persisted.
        snapshot = []
        for c in self._conversations.values():
            data = c.to_dict()
            data["messages"] = [m for m in data["messages"] if not m["loading"]]
            snapshot.append(data)
        return snapshot

    def close(self, conversation_id: str) -> bool:
        """Cancel outstanding work and forget the conversation."""
        self.cancel(conversation_id)
        with self._lock:
            removed = self._conversations.pop(conversation_id, None)
            self._tokens.pop(conversation_id, None)
            self._tracked_dirs.pop(conversation_id, None)
            self._executing.discard(conversation_id)
            snapshot = self._snapshot()
        self.blobs.set(CONVERSATIONS_KEY, snapshot)
        return removed is not None

    def set_status(self, conversation_id: str, status: str) -> None:
        conversation = self.get(conversation_id)
        if conversation is not None:
            conversation.status = status
            self.save(conversation)

    # Cancellation tokens

    def new_token(self, conversation_id: str) -> CancellationToken:
        """Issue a fresh token, cancelling the one it replaces."""
        token = CancellationToken()
        with self._lock:
            previous = self._tokens.get(conversation_id)
            self._tokens[conversation_id] = token
        if previous is not None and not previous.cancelled:
            verbose_log(f"Superseding outstanding request for {conversation_id}", "REGISTRY")
            previous.cancel()
        return token

    def token(self, conversation_id: str) -> Optional[CancellationToken]:
        with self._lock:
            return self._tokens.get(conversation_id)

    def cancel(self, conversation_id: str) -> bool:
        token = self.token(conversation_id)
        if token is None or token.cancelled:
            return False
        token.cancel()
        return True

    def cancel_all(self) -> int:
        with self._lock:
            tokens = list(self._tokens.values())
        count = 0
        for token in tokens:
            if not token.cancelled:
                token.cancel()
                count += 1
        return count

    # Tracked execution directories

    def tracked_dir(self, conversation_id: str) -> str:
        with self._lock:
            return self._tracked_dirs.get(conversation_id, self.workspace_root)

    def set_tracked_dir(self, conversation_id: str, path: str) -> None:
        with self._lock:
            self._tracked_dirs[conversation_id] = path

    # Execution flag

    def begin_execution(self, conversation_id: str) -> bool:
        """Claim the conversation for a plan run; False if one is active."""
        with self._lock:
            if conversation_id in self._executing:
                return False
            self._executing.add(conversation_id)
            return True

    def end_execution(self, conversation_id: str) -> None:
        with self._lock:
            self._executing.discard(conversation_id)
        conversation = self.get(conversation_id)
        if conversation is not None and conversation.status != CONVERSATION_IDLE:
            self.set_status(conversation_id, CONVERSATION_IDLE)

    def is_executing(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._executing
