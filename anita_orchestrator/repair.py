"""
Repair loop: ask the model for replacement tasks after a failure and
splice them into the plan directly after the failed task.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

from typing import Optional

from .config import DEFAULT_MAX_REPAIR_ATTEMPTS
from .errors import TransportError
from .logs import log, verbose_log
from .models import Plan, PlanStatus, Task, TaskStatus
from .plan_parser import extract_tasks
from .registry import CancellationToken
from .store import PlanStore

REPAIR_SYSTEM_PROMPT = """You are fixing a failed step of an implementation plan.
Reply with STRICT JSON only: {"tasks": [ ... ]}
Each task has "description", "type" (file_edit, terminal, folder_create, summary)
and the fields its type needs ("path", "content", "command").
Only include the tasks needed to fix the failure; the remaining plan runs afterwards."""


class RepairBudget:
    """Consecutive-failure counter that bounds automatic repair in one run."""

    def __init__(self, ceiling: int = DEFAULT_MAX_REPAIR_ATTEMPTS):
        self.ceiling = ceiling
        self.consecutive_failures = 0
        self.is_open = False

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.is_open = False

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.ceiling:
            self.is_open = True
            log(f"Repair budget exhausted after {self.consecutive_failures} consecutive failures", "REPAIR")

    def can_repair(self) -> bool:
        return not self.is_open


def build_repair_prompt(plan: Plan, failed_task: Task) -> str:
    """Build the remediation request for a failed task."""
    pending = [t.description for t in plan.pending_tasks() if t.id != failed_task.id]
    pending_text = "\n".join(f"- {d}" for d in pending) if pending else "(none)"

    details = [f"Description: {failed_task.description}", f"Type: {failed_task.kind.value}"]
    if failed_task.command:
        details.append(f"Command: {failed_task.command}")
    if failed_task.path:
        details.append(f"Path: {failed_task.path}")
    details_text = "\n".join(details)

    return f"""Goal: {plan.goal or plan.description}
Plan: {plan.description}

## Failed Task
{details_text}

## Error
{failed_task.last_error or "(no error text)"}

## Remaining Tasks
{pending_text}

Return the tasks that fix this failure as {{"tasks": [...]}}."""


def splice_repair_tasks(plan: Plan, failed_task_id: str, new_tasks: list[Task]) -> list[Task]:
    """Mark the failed task repaired and insert new tasks right after it."""
    index = next(i for i, t in enumerate(plan.tasks) if t.id == failed_task_id)
    plan.tasks[index].status = TaskStatus.REPAIRED

    used_ids = {t.id for t in plan.tasks}
    suffix = 1
    for offset, task in enumerate(new_tasks, start=1):
        while f"{failed_task_id}.{suffix}" in used_ids:
            suffix += 1
        task.id = f"{failed_task_id}.{suffix}"
        used_ids.add(task.id)
        task.status = TaskStatus.PENDING
        task.last_error = ""
        plan.tasks.insert(index + offset, task)
    return new_tasks


class RepairLoop:
    """Requests and applies fixes for failed tasks."""

    def __init__(self, completion, plan_store: PlanStore, model: Optional[str] = None):
        self.completion = completion
        self.plan_store = plan_store
        self.model = model

    def _fail(self, plan: Plan, reason: str) -> bool:
        log(f"Repair failed for plan {plan.id}: {reason}", "REPAIR")
        plan.status = PlanStatus.ERROR
        self.plan_store.save(plan)
        return False

    def repair(
        self,
        plan: Plan,
        failed_task: Task,
        automatic: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        """Request a fix; True if new tasks were spliced in.

        AbortError from the completion call propagates with the plan untouched.
        """
        mode = "automatic" if automatic else "manual"
        log(f"Requesting {mode} repair for task {failed_task.id}: {failed_task.description}", "REPAIR")
        messages = [
            {"role": "system", "content": REPAIR_SYSTEM_PROMPT},
            {"role": "user", "content": build_repair_prompt(plan, failed_task)},
        ]
        try:
            response = self.completion.chat(messages, model=self.model, token=token)
        except TransportError as e:
            return self._fail(plan, f"transport error: {e}")

        new_tasks = extract_tasks(response)
        if not new_tasks:
            verbose_log(f"Unusable repair response: {response[:200]}", "REPAIR")
            return self._fail(plan, "no valid tasks in response")

        splice_repair_tasks(plan, failed_task.id, new_tasks)
        plan.status = PlanStatus.RUNNING if automatic else PlanStatus.AWAITING_APPROVAL
        self.plan_store.save(plan)
        log(f"Spliced {len(new_tasks)} repair task(s) after {failed_task.id}", "REPAIR")
        return True
