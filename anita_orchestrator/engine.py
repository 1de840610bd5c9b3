"""
Orchestrator: wires classification, completion, plan extraction,
execution and repair together for each conversation.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import re
import threading
from typing import Callable, Optional

from .config import EngineConfig
from .errors import AbortError, AnitaError, ConversationBusy, TransportError
from .executor import (
    ApprovalCallback,
    EventCallback,
    PlanExecutor,
    agent_session_id,
)
from .intent import (
    AFFIRMATIVE_PATTERN,
    HANDOFF_WORD_LIMIT,
    MODE_PLAN,
    USER_MODE_AGENT,
    classify,
    resolve_mode,
    system_prompt,
)
from .logs import log, verbose_log
from .models import (
    CONVERSATION_EXECUTING,
    CONVERSATION_IDLE,
    CONVERSATION_PLANNING,
    ROLE_ASSISTANT,
    ROLE_USER,
    Conversation,
    Message,
    Plan,
    PlanStatus,
    new_id,
)
from .plan_parser import extract_plan
from .registry import DEFAULT_TITLE, TITLE_LENGTH, ConversationRegistry
from .repair import RepairLoop
from .store import PlanStore
from .workspace import FileStore

EVENT_PLAN_PROPOSED = "plan_proposed"

THINK_PATTERN = re.compile(r"<think>(.*?)</think>", re.DOTALL)

ChunkCallback = Callable[[str], None]


def split_reasoning(text: str) -> tuple[str, str]:
    """Separate <think> blocks from the visible reply."""
    reasoning = "\n".join(m.strip() for m in THINK_PATTERN.findall(text))
    return THINK_PATTERN.sub("", text).strip(), reasoning


def plan_goal(conversation: Conversation, fallback: str) -> str:
    """Latest user message that is more than a bare confirmation."""
    for message in reversed(conversation.messages):
        if message.role != ROLE_USER:
            continue
        is_confirmation = (
            AFFIRMATIVE_PATTERN.search(message.content)
            and len(message.content.split()) <= HANDOFF_WORD_LIMIT
        )
        if not is_confirmation:
            return message.content
    return fallback


class Orchestrator:
    """Front door for conversations, plans and their execution."""

    def __init__(
        self,
        config: EngineConfig,
        registry: ConversationRegistry,
        plan_store: PlanStore,
        files: FileStore,
        completion,
        sessions,
        approve: Optional[ApprovalCallback] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.config = config
        self.registry = registry
        self.plan_store = plan_store
        self.files = files
        self.completion = completion
        self.sessions = sessions
        self.on_event = on_event
        self.repair_loop = RepairLoop(completion, plan_store)
        self.executor = PlanExecutor(
            plan_store=plan_store,
            registry=registry,
            files=files,
            sessions=sessions,
            repair_loop=self.repair_loop,
            config=config,
            approve=approve,
            on_event=on_event,
        )

    def _emit(self, event: str, **payload) -> None:
        if self.on_event:
            self.on_event(event, payload)

    def _conversation(self, conversation_id: str) -> Conversation:
        conversation = self.registry.get(conversation_id)
        if conversation is None:
            raise AnitaError(f"Conversation not found: {conversation_id}")
        return conversation

    def _plan(self, plan_id: str) -> Plan:
        plan = self.plan_store.load(plan_id)
        if plan is None:
            raise AnitaError(f"Plan not found: {plan_id}")
        return plan

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def new_conversation(self, title: str = "") -> Conversation:
        return self.registry.create(title)

    def close_conversation(self, conversation_id: str) -> bool:
        self.sessions.close(agent_session_id(conversation_id))
        return self.registry.close(conversation_id)

    def submit(
        self,
        conversation_id: str,
        text: str,
        user_mode: str = USER_MODE_AGENT,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> Message:
        """Send user input and stream the reply into the conversation.

        Returns the finalized assistant message. A proposed plan is stored
        as awaiting approval and linked through the message's plan_id.
        Raises AbortError if the request is cancelled mid-stream; the
        partial reply is discarded.
        """
        if self.registry.is_executing(conversation_id):
            raise ConversationBusy(f"A plan is executing for {conversation_id}")
        conversation = self._conversation(conversation_id)

        history = conversation.history()
        mode = resolve_mode(classify(text, history), user_mode, self.config.auto_upgrade_chat)
        log(f"Mode: {mode} (user mode {user_mode})", "INTENT")

        conversation.messages.append(Message(id=new_id("msg-"), role=ROLE_USER, content=text))
        if conversation.title == DEFAULT_TITLE:
            conversation.title = text[:TITLE_LENGTH]
        if mode == MODE_PLAN:
            conversation.status = CONVERSATION_PLANNING
        self.registry.save(conversation)

        request = [{"role": "system", "content": system_prompt(mode, self.files.root)}]
        request += [
            {"role": m.role, "content": m.content}
            for m in conversation.history()
            if not m.is_error
        ]

        token = self.registry.new_token(conversation_id)
        reply = Message(id=new_id("msg-"), role=ROLE_ASSISTANT, loading=True)
        conversation.messages.append(reply)

        try:
            for chunk in self.completion.stream_chat(request, token=token):
                reply.content += chunk
                if on_chunk:
                    on_chunk(chunk)
        except AbortError:
            conversation.messages.remove(reply)
            conversation.status = CONVERSATION_IDLE
            self.registry.save(conversation)
            log(f"Request cancelled for {conversation_id}; partial reply discarded", "PLANNER")
            raise
        except TransportError as e:
            reply.content = str(e)
            reply.is_error = True
            reply.loading = False
            conversation.status = CONVERSATION_IDLE
            self.registry.save(conversation)
            log(f"Completion failed: {e}", "PLANNER")
            return reply

        reply.loading = False
        reply.content, reply.reasoning = split_reasoning(reply.content)
        plan = extract_plan(
            reply.content, conversation_id=conversation_id, goal=plan_goal(conversation, text)
        )
        if plan is not None:
            self.plan_store.save(plan)
            reply.plan_id = plan.id
            log(f"Plan {plan.id} proposed: {plan.description} ({len(plan.tasks)} tasks)", "PLANNER")
            self._emit(EVENT_PLAN_PROPOSED, plan=plan)
        else:
            verbose_log("Reply carried no plan", "PLANNER")

        conversation.status = CONVERSATION_IDLE
        self.registry.save(conversation)
        return reply

    def cancel(self, conversation_id: str) -> bool:
        """Cancel the outstanding request or plan run for a conversation."""
        cancelled = self.registry.cancel(conversation_id)
        if cancelled:
            log(f"Cancelled outstanding work for {conversation_id}")
        return cancelled

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def list_plans(self, conversation_id: Optional[str] = None) -> list[Plan]:
        return self.plan_store.list(conversation_id)

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self.plan_store.load(plan_id)

    def _claim(self, plan_id: str) -> str:
        conversation_id = self._plan(plan_id).conversation_id
        if not self.registry.begin_execution(conversation_id):
            raise ConversationBusy(f"A plan is already executing for {conversation_id}")
        self.registry.new_token(conversation_id)
        self.registry.set_status(conversation_id, CONVERSATION_EXECUTING)
        return conversation_id

    def _run_claimed(self, plan_id: str, conversation_id: str) -> PlanStatus:
        try:
            return self.executor.execute(plan_id, conversation_id)
        finally:
            self.registry.end_execution(conversation_id)

    def execute_plan(self, plan_id: str) -> PlanStatus:
        """Approve and run a plan in the calling thread."""
        conversation_id = self._claim(plan_id)
        return self._run_claimed(plan_id, conversation_id)

    def approve_plan(self, plan_id: str) -> PlanStatus:
        log(f"Plan {plan_id} approved")
        return self.execute_plan(plan_id)

    def start_plan(self, plan_id: str) -> threading.Thread:
        """Approve and run a plan on its own thread; returns the started thread."""
        conversation_id = self._claim(plan_id)

        def run() -> None:
            try:
                self._run_claimed(plan_id, conversation_id)
            except AbortError:
                log(f"Plan {plan_id} stopped by cancellation")
            except AnitaError as e:
                log(f"Plan {plan_id} stopped: {e}")

        thread = threading.Thread(target=run, name=f"plan-{plan_id}", daemon=True)
        thread.start()
        return thread

    def repair_plan(self, plan_id: str) -> bool:
        """One manual repair attempt for the plan's first failed task.

        Ignores the automatic repair budget. On success the plan waits for
        approval again.
        """
        plan = self._plan(plan_id)
        failed = plan.first_failed_task()
        if failed is None:
            log(f"Plan {plan_id} has no failed task to repair", "REPAIR")
            return False
        if self.registry.is_executing(plan.conversation_id):
            raise ConversationBusy(f"A plan is executing for {plan.conversation_id}")
        token = self.registry.new_token(plan.conversation_id)
        return self.repair_loop.repair(plan, failed, automatic=False, token=token)
