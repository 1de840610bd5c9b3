"""
Conversation, message, plan and task records.

Plans and conversations are persisted as plain dicts in the YAML state
file, so every record converts to and from a dict.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import itertools
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class TaskKind(str, Enum):
    FILE_EDIT = "file_edit"
    TERMINAL = "terminal"
    FOLDER_CREATE = "folder_create"
    SUMMARY = "summary"
    UNKNOWN = "unknown"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FINISHED = "finished"
    ERROR = "error"
    CANCELLED = "cancelled"
    REPAIRED = "repaired"


class PlanStatus(str, Enum):
    AWAITING_APPROVAL = "awaiting_approval"
    RUNNING = "running"
    FINISHED = "finished"
    ERROR = "error"


ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

CONVERSATION_IDLE = "idle"
CONVERSATION_PLANNING = "planning"
CONVERSATION_EXECUTING = "executing"

# Task statuses that count toward a finished plan
COMPLETED_TASK_STATUSES = (TaskStatus.FINISHED, TaskStatus.REPAIRED)

_id_lock = threading.Lock()
_id_counter = itertools.count(1)


def new_id(prefix: str = "") -> str:
    """Return a process-wide monotonically increasing id."""
    with _id_lock:
        n = next(_id_counter)
    return f"{prefix}{int(time.time() * 1000)}-{n}"


def _now() -> str:
    return datetime.now().isoformat()


def _coerce(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass
class Task:
    """One unit of work within a plan."""
    id: str
    description: str
    kind: TaskKind = TaskKind.UNKNOWN
    path: str = ""
    content: str = ""
    command: str = ""
    status: TaskStatus = TaskStatus.PENDING
    last_error: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "type": self.kind.value,
            "path": self.path,
            "content": self.content,
            "command": self.command,
            "status": self.status.value,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            id=str(data.get("id", "")),
            description=data.get("description", ""),
            kind=_coerce(TaskKind, data.get("type", "unknown"), TaskKind.UNKNOWN),
            path=data.get("path", "") or "",
            content=data.get("content", "") or "",
            command=data.get("command", "") or "",
            status=_coerce(TaskStatus, data.get("status", "pending"), TaskStatus.PENDING),
            last_error=data.get("last_error", "") or "",
        )


@dataclass
class Plan:
    """A model-proposed sequence of tasks for one goal."""
    id: str
    conversation_id: str
    goal: str
    description: str
    tasks: list[Task] = field(default_factory=list)
    thoughts: str = ""
    status: PlanStatus = PlanStatus.AWAITING_APPROVAL
    created_at: str = field(default_factory=_now)

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def next_task(self) -> Optional[Task]:
        """First task that is pending, or active from an interrupted run."""
        for task in self.tasks:
            if task.status in (TaskStatus.PENDING, TaskStatus.ACTIVE):
                return task
        return None

    def pending_tasks(self) -> list[Task]:
        return [t for t in self.tasks if t.status == TaskStatus.PENDING]

    def first_failed_task(self) -> Optional[Task]:
        for task in self.tasks:
            if task.status == TaskStatus.ERROR:
                return task
        return None

    def is_complete(self) -> bool:
        return all(t.status in COMPLETED_TASK_STATUSES for t in self.tasks)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "goal": self.goal,
            "plan": self.description,
            "thoughts": self.thoughts,
            "status": self.status.value,
            "created_at": self.created_at,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Plan":
        return cls(
            id=str(data["id"]),
            conversation_id=str(data.get("conversation_id", "")),
            goal=data.get("goal", ""),
            description=data.get("plan", ""),
            thoughts=data.get("thoughts", "") or "",
            status=_coerce(PlanStatus, data.get("status", "awaiting_approval"), PlanStatus.ERROR),
            created_at=data.get("created_at", "") or _now(),
            tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
        )


@dataclass
class Message:
    """A single chat message; the in-flight one is mutated while streaming."""
    id: str
    role: str
    content: str = ""
    reasoning: str = ""
    plan_id: str = ""
    loading: bool = False
    is_error: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "reasoning": self.reasoning,
            "plan_id": self.plan_id,
            "loading": self.loading,
            "is_error": self.is_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=str(data.get("id", "")),
            role=data.get("role", ROLE_USER),
            content=data.get("content", "") or "",
            reasoning=data.get("reasoning", "") or "",
            plan_id=data.get("plan_id", "") or "",
            loading=bool(data.get("loading", False)),
            is_error=bool(data.get("is_error", False)),
        )


@dataclass
class Conversation:
    """An ordered chat with the assistant."""
    id: str
    title: str
    messages: list[Message] = field(default_factory=list)
    status: str = CONVERSATION_IDLE
    created_at: str = field(default_factory=_now)

    def last_assistant_message(self) -> Optional[Message]:
        for message in reversed(self.messages):
            if message.role == ROLE_ASSISTANT:
                return message
        return None

    def history(self) -> list[Message]:
        """Finalized messages, excluding any in-flight placeholder."""
        return [m for m in self.messages if not m.loading]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "created_at": self.created_at,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            status=data.get("status", CONVERSATION_IDLE),
            created_at=data.get("created_at", "") or _now(),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
        )
