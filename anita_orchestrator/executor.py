"""
Serial plan execution.

The persisted plan is the source of truth: every iteration reloads it,
picks the first pending or active task, marks it active, runs it through
the handler for its kind and records the outcome. Failures go to the
repair loop while the run's repair budget allows.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from dataclasses import dataclass
from typing import Callable, Optional

from .config import EngineConfig
from .errors import (
    AbortError,
    AccessDenied,
    AnitaError,
    TaskExecutionError,
    UserDeclined,
)
from .logs import log, verbose_log
from .models import ROLE_ASSISTANT, Message, Plan, PlanStatus, Task, TaskKind, TaskStatus, new_id
from .registry import CancellationToken, ConversationRegistry
from .repair import RepairBudget, RepairLoop
from .store import PlanStore
from .workspace import FileStore

EVENT_TASK_STARTED = "task_started"
EVENT_TASK_FINISHED = "task_finished"
EVENT_TASK_FAILED = "task_failed"
EVENT_SUMMARY = "summary"
EVENT_REFRESH = "refresh"

ApprovalCallback = Callable[[Task], bool]
EventCallback = Callable[[str, dict], None]


def agent_session_id(conversation_id: str) -> str:
    return f"agent-{conversation_id}"


@dataclass
class RunContext:
    """Per-run state shared by the task handlers."""
    conversation_id: str
    session_id: str
    token: CancellationToken


class PlanExecutor:
    """Drains a plan's tasks one at a time for one conversation."""

    def __init__(
        self,
        plan_store: PlanStore,
        registry: ConversationRegistry,
        files: FileStore,
        sessions,
        repair_loop: RepairLoop,
        config: EngineConfig,
        approve: Optional[ApprovalCallback] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.plan_store = plan_store
        self.registry = registry
        self.files = files
        self.sessions = sessions
        self.repair_loop = repair_loop
        self.config = config
        self.approve = approve
        self.on_event = on_event
        self._handlers: dict[TaskKind, Callable[[Plan, Task, RunContext], None]] = {
            TaskKind.FILE_EDIT: self._run_file_edit,
            TaskKind.TERMINAL: self._run_terminal,
            TaskKind.FOLDER_CREATE: self._run_folder_create,
            TaskKind.SUMMARY: self._run_summary,
            TaskKind.UNKNOWN: self._run_unknown,
        }
        missing = set(TaskKind) - set(self._handlers)
        if missing:
            raise ValueError(f"No handler for task kinds: {sorted(k.value for k in missing)}")

    def _emit(self, event: str, **payload) -> None:
        if self.on_event:
            self.on_event(event, payload)

    def _load(self, plan_id: str) -> Plan:
        plan = self.plan_store.load(plan_id)
        if plan is None:
            raise AnitaError(f"Plan not found: {plan_id}")
        return plan

    def _commit(self, plan: Plan, task: Task) -> Plan:
        """Store the task's new state on the persisted plan and return it.

        Edits made to the stored plan while the task ran are kept.
        """
        stored = self.plan_store.load(plan.id) or plan
        for i, existing in enumerate(stored.tasks):
            if existing.id == task.id:
                stored.tasks[i] = task
                break
        else:
            verbose_log(f"Task {task.id} no longer in plan {plan.id}", "EXEC")
        self.plan_store.save(stored)
        return stored

    # ------------------------------------------------------------------
    # Task handlers
    # ------------------------------------------------------------------

    def _run_file_edit(self, plan: Plan, task: Task, run: RunContext) -> None:
        if not task.path:
            raise TaskExecutionError("file_edit task has no path")
        base = self.registry.tracked_dir(run.conversation_id)
        target = self.files.resolve(task.path, base)
        if self.files.exists(target):
            try:
                existing = self.files.read_file(target)
            except (UnicodeDecodeError, IsADirectoryError):
                existing = None
            if existing == task.content:
                log(f"Skipping {task.path}: content unchanged", "EXEC")
                return
        self.files.write_file(target, task.content)
        log(f"Wrote {task.path}", "EXEC")

    def _run_folder_create(self, plan: Plan, task: Task, run: RunContext) -> None:
        if not task.path:
            raise TaskExecutionError("folder_create task has no path")
        base = self.registry.tracked_dir(run.conversation_id)
        created = self.files.create_dir(task.path, base)
        log(f"Created folder {created}", "EXEC")

    def _run_terminal(self, plan: Plan, task: Task, run: RunContext) -> None:
        if not task.command:
            raise TaskExecutionError("terminal task has no command")
        if self.config.requires_approval:
            approved = self.approve(task) if self.approve else False
            if not approved:
                raise UserDeclined(f"Command not approved: {task.command}")

        result = self.sessions.execute(run.session_id, task.command, token=run.token)
        if not result.success:
            raise TaskExecutionError(result.error or f"Command failed: {task.command}")
        if result.is_background:
            log(f"Running in background: {task.command}", "EXEC")

        new_cwd = self.sessions.get_cwd(run.session_id)
        if new_cwd != self.registry.tracked_dir(run.conversation_id):
            verbose_log(f"Tracked directory is now {new_cwd}", "EXEC")
            self.registry.set_tracked_dir(run.conversation_id, new_cwd)

    def _run_summary(self, plan: Plan, task: Task, run: RunContext) -> None:
        text = task.content or task.description
        conversation = self.registry.get(run.conversation_id)
        if conversation is not None:
            conversation.messages.append(Message(
                id=new_id("msg-"), role=ROLE_ASSISTANT, content=text, plan_id=plan.id
            ))
            self.registry.save(conversation)
        self._emit(EVENT_SUMMARY, plan_id=plan.id, content=text)

    def _run_unknown(self, plan: Plan, task: Task, run: RunContext) -> None:
        raise TaskExecutionError(f"Unknown task type for task {task.id}: {task.description}")

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def _prepare_session(self, run: RunContext) -> None:
        tracked = self.registry.tracked_dir(run.conversation_id)
        try:
            self.sessions.set_cwd(run.session_id, tracked)
        except TaskExecutionError:
            log(f"Tracked directory {tracked} is gone, using workspace root", "EXEC")
            self.registry.set_tracked_dir(run.conversation_id, self.files.root)
            self.sessions.set_cwd(run.session_id, self.files.root)

    def _refresh(self) -> None:
        try:
            entries = self.files.read_dir(".")
        except OSError as e:
            log(f"Could not list workspace: {e}", "EXEC")
            entries = []
        self._emit(EVENT_REFRESH, root=self.files.root, entries=entries)

    def execute(self, plan_id: str, conversation_id: str) -> PlanStatus:
        """Run the plan until it finishes, stops on error, or is cancelled.

        Raises AbortError on cancellation, leaving the last committed task
        and plan statuses in place so a later run resumes them.
        """
        token = self.registry.token(conversation_id) or self.registry.new_token(conversation_id)
        run = RunContext(conversation_id, agent_session_id(conversation_id), token)
        budget = RepairBudget(self.config.max_repair_attempts)

        plan = self._load(plan_id)
        plan.status = PlanStatus.RUNNING
        self.plan_store.save(plan)
        self._prepare_session(run)
        log(f"Executing plan {plan.id}: {plan.description} ({len(plan.tasks)} tasks)", "EXEC")

        try:
            while True:
                plan = self._load(plan_id)
                token.raise_if_cancelled()
                task = plan.next_task()
                if task is None:
                    break

                task.status = TaskStatus.ACTIVE
                self.plan_store.save(plan)
                log(f"Task {task.id} [{task.kind.value}]: {task.description}", "EXEC")
                self._emit(EVENT_TASK_STARTED, plan_id=plan.id, task=task)

                try:
                    self._handlers[task.kind](plan, task, run)
                except UserDeclined as e:
                    task.status = TaskStatus.CANCELLED
                    task.last_error = str(e)
                    self._commit(plan, task)
                    log(f"Task {task.id} cancelled: {e}", "EXEC")
                    break
                except (TaskExecutionError, AccessDenied, OSError) as e:
                    task.status = TaskStatus.ERROR
                    task.last_error = str(e)
                    plan = self._commit(plan, task)
                    log(f"Task {task.id} failed: {e}", "EXEC")
                    self._emit(EVENT_TASK_FAILED, plan_id=plan.id, task=task, error=str(e))

                    budget.record_failure()
                    if not budget.can_repair():
                        break
                    if not self.repair_loop.repair(plan, task, automatic=True, token=token):
                        break
                    continue

                task.status = TaskStatus.FINISHED
                task.last_error = ""
                self._commit(plan, task)
                budget.record_success()
                self._emit(EVENT_TASK_FINISHED, plan_id=plan.id, task=task)
        except AbortError:
            log(f"Plan {plan_id} cancelled; progress kept for resume", "EXEC")
            raise
        finally:
            self._refresh()

        plan = self._load(plan_id)
        plan.status = PlanStatus.FINISHED if plan.is_complete() else PlanStatus.ERROR
        self.plan_store.save(plan)
        log(f"Plan {plan.id} {plan.status.value}", "EXEC")
        return plan.status
