# tests/test_engine.py
# End-to-end tests for the Orchestrator with fake completion and session services.

import json
import os
import threading

import pytest

from anita_orchestrator.config import POLICY_ASK
from anita_orchestrator.engine import EVENT_PLAN_PROPOSED, plan_goal, split_reasoning
from anita_orchestrator.errors import AbortError, ConversationBusy, TransportError
from anita_orchestrator.models import (
    ROLE_ASSISTANT,
    ROLE_USER,
    Conversation,
    Message,
    Plan,
    PlanStatus,
    Task,
    TaskKind,
    TaskStatus,
)

NOTES_PLAN = json.dumps({
    "thoughts": "One file is enough.",
    "plan": "Create notes file",
    "tasks": [
        {"id": 1, "description": "Write notes.txt", "type": "file_edit",
         "path": "notes.txt", "content": "hi"},
    ],
})


def test_end_to_end_notes_file(make_engine, workspace):
    events = []
    engine = make_engine(responses=[NOTES_PLAN], events=events)
    conversation = engine.new_conversation()

    reply = engine.submit(conversation.id, "create a file notes.txt with content 'hi'")
    plan = engine.get_plan(reply.plan_id)
    assert plan.status == PlanStatus.AWAITING_APPROVAL
    assert len(plan.tasks) == 1
    assert plan.tasks[0].kind == TaskKind.FILE_EDIT
    assert plan.goal == "create a file notes.txt with content 'hi'"
    assert any(name == EVENT_PLAN_PROPOSED for name, _ in events)

    assert engine.approve_plan(plan.id) == PlanStatus.FINISHED
    with open(os.path.join(workspace, "notes.txt")) as f:
        assert f.read() == "hi"
    assert engine.get_plan(plan.id).tasks[0].status == TaskStatus.FINISHED


def test_submit_streams_chunks_and_records_messages(make_engine):
    engine = make_engine(responses=["Vite is a frontend build tool."])
    conversation = engine.new_conversation()
    chunks = []
    reply = engine.submit(conversation.id, "what is vite?", on_chunk=chunks.append)
    assert "".join(chunks) == "Vite is a frontend build tool."
    assert reply.plan_id == ""
    assert not reply.loading
    stored = engine.registry.get(conversation.id)
    assert [m.role for m in stored.messages] == [ROLE_USER, ROLE_ASSISTANT]
    assert stored.title == "what is vite?"


def test_request_uses_mode_system_prompt_and_history(make_engine):
    engine = make_engine(responses=["Which framework?", "Summary. Shall I generate the implementation plan now?",
                                    NOTES_PLAN])
    conversation = engine.new_conversation()
    engine.submit(conversation.id, "build me a todo app")
    assert "specific technical questions" in engine.completion.requests[0][0]["content"]

    engine.submit(conversation.id, "use react with local storage and a single page please")
    reply = engine.submit(conversation.id, "yes")

    request = engine.completion.requests[2]
    assert "STRICT JSON" in request[0]["content"]
    assert [m["role"] for m in request[1:]] == ["user", "assistant"] * 2 + ["user"]
    plan = engine.get_plan(reply.plan_id)
    assert plan.goal == "use react with local storage and a single page please"


def test_cancel_mid_stream_discards_partial_reply(make_engine):
    engine = make_engine(responses=[NOTES_PLAN, "A long streamed answer that will be cut off"])
    conversation = engine.new_conversation()
    first = engine.submit(conversation.id, "create a file notes.txt with content 'hi'")
    before = engine.get_plan(first.plan_id)

    def cancel_after_first_chunk(chunk):
        engine.cancel(conversation.id)

    with pytest.raises(AbortError):
        engine.submit(conversation.id, "explain the plan", on_chunk=cancel_after_first_chunk)

    stored = engine.registry.get(conversation.id)
    assert stored.messages[-1].role == ROLE_USER
    assert stored.messages[-1].content == "explain the plan"
    assert all(not m.loading for m in stored.messages)
    after = engine.get_plan(first.plan_id)
    assert after.status == before.status
    assert [t.status for t in after.tasks] == [t.status for t in before.tasks]
    assert len(engine.list_plans()) == 1


def test_transport_error_is_kept_as_error_message(make_engine):
    engine = make_engine(responses=[TransportError("Insufficient credits", status_code=402)])
    conversation = engine.new_conversation()
    reply = engine.submit(conversation.id, "hello")
    assert reply.is_error
    assert reply.content == "Insufficient credits"
    assert engine.registry.get(conversation.id).messages[-1].is_error


def test_submit_while_executing_is_busy(make_engine):
    engine = make_engine()
    conversation = engine.new_conversation()
    engine.registry.begin_execution(conversation.id)
    with pytest.raises(ConversationBusy):
        engine.submit(conversation.id, "hello")


def test_second_execution_is_busy(make_engine):
    engine = make_engine(responses=[NOTES_PLAN])
    conversation = engine.new_conversation()
    plan_id = engine.submit(conversation.id, "create notes.txt").plan_id
    engine.registry.begin_execution(conversation.id)
    with pytest.raises(ConversationBusy):
        engine.approve_plan(plan_id)


def test_start_plan_runs_on_thread(make_engine, workspace):
    engine = make_engine(responses=[NOTES_PLAN])
    conversation = engine.new_conversation()
    plan_id = engine.submit(conversation.id, "create notes.txt").plan_id
    thread = engine.start_plan(plan_id)
    thread.join(timeout=10)
    assert not thread.is_alive()
    assert engine.get_plan(plan_id).status == PlanStatus.FINISHED
    assert not engine.registry.is_executing(conversation.id)


def test_manual_repair_ignores_budget_and_awaits_approval(make_engine, config):
    config.max_repair_attempts = 1
    fix = json.dumps({"tasks": [{"description": "Create dir first", "type": "folder_create", "path": "out"}]})
    engine = make_engine(responses=[fix])
    conversation = engine.new_conversation()
    engine.plan_store.save(Plan(
        id="p1", conversation_id=conversation.id, goal="g", description="d",
        status=PlanStatus.ERROR,
        tasks=[Task(id="1", description="Broken", kind=TaskKind.UNKNOWN,
                    status=TaskStatus.ERROR, last_error="Unknown task type")],
    ))
    assert engine.repair_plan("p1")
    plan = engine.get_plan("p1")
    assert plan.status == PlanStatus.AWAITING_APPROVAL
    assert [t.id for t in plan.tasks] == ["1", "1.1"]

    assert engine.approve_plan("p1") == PlanStatus.FINISHED


def test_repair_plan_without_failure_is_noop(make_engine):
    engine = make_engine()
    conversation = engine.new_conversation()
    engine.plan_store.save(Plan(id="p1", conversation_id=conversation.id, goal="g", description="d",
                                tasks=[Task(id="1", description="ok")]))
    assert not engine.repair_plan("p1")


def test_close_conversation_closes_agent_session(make_engine):
    engine = make_engine()
    conversation = engine.new_conversation()
    assert engine.close_conversation(conversation.id)
    assert engine.sessions.closed == [f"agent-{conversation.id}"]
    assert engine.registry.get(conversation.id) is None


def test_split_reasoning():
    content, reasoning = split_reasoning("<think>pick react</think>Use React.")
    assert content == "Use React."
    assert reasoning == "pick react"


def test_plan_goal_skips_bare_confirmations():
    conversation = Conversation(id="c", title="t", messages=[
        Message(id="1", role=ROLE_USER, content="build a blog"),
        Message(id="2", role=ROLE_ASSISTANT, content="Shall I generate the implementation plan now?"),
        Message(id="3", role=ROLE_USER, content="yes do it"),
    ])
    assert plan_goal(conversation, "fallback") == "build a blog"


def test_concurrent_conversations_keep_separate_tokens_and_directories(make_engine, config, workspace):
    config.execution_policy = POLICY_ASK
    app_dir = os.path.join(workspace, "app")
    os.makedirs(app_dir)
    holding = threading.Event()
    release = threading.Event()

    def approve(task):
        if task.command == "hold":
            holding.set()
            release.wait(timeout=10)
        return True

    engine = make_engine(approve=approve, cd_targets={"cd app": app_dir})
    first = engine.new_conversation("first")
    second = engine.new_conversation("second")
    engine.plan_store.save(Plan(id="pa", conversation_id=first.id, goal="g", description="a", tasks=[
        Task(id="1", description="Enter app", kind=TaskKind.TERMINAL, command="cd app"),
        Task(id="2", description="Write", kind=TaskKind.FILE_EDIT, path="a.txt", content="a"),
    ]))
    engine.plan_store.save(Plan(id="pb", conversation_id=second.id, goal="g", description="b", tasks=[
        Task(id="1", description="Wait", kind=TaskKind.TERMINAL, command="hold"),
        Task(id="2", description="Write", kind=TaskKind.FILE_EDIT, path="b.txt", content="b"),
    ]))

    second_thread = engine.start_plan("pb")
    try:
        assert holding.wait(timeout=10)
        assert engine.cancel(second.id)

        first_thread = engine.start_plan("pa")
        first_thread.join(timeout=10)
        assert engine.get_plan("pa").status == PlanStatus.FINISHED
        assert os.path.exists(os.path.join(app_dir, "a.txt"))
        assert not engine.registry.token(first.id).cancelled
    finally:
        release.set()
        second_thread.join(timeout=10)

    interrupted = engine.get_plan("pb")
    assert interrupted.tasks[0].status == TaskStatus.ACTIVE
    assert not os.path.exists(os.path.join(workspace, "b.txt"))

    assert engine.execute_plan("pb") == PlanStatus.FINISHED
    assert os.path.exists(os.path.join(workspace, "b.txt"))
    assert not os.path.exists(os.path.join(app_dir, "b.txt"))
    assert engine.registry.tracked_dir(first.id) == app_dir
    assert engine.registry.tracked_dir(second.id) == workspace


def test_failed_replies_are_not_sent_back_to_the_model(make_engine):
    engine = make_engine(responses=[TransportError("Insufficient credits", status_code=402), "Hello!"])
    conversation = engine.new_conversation()
    engine.submit(conversation.id, "hello")
    engine.submit(conversation.id, "hello again")
    request = engine.completion.requests[1]
    assert [m["role"] for m in request] == ["system", "user", "user"]
    assert all(m["content"] != "Insufficient credits" for m in request)
