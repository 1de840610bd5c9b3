"""
Command-line front end: `anita`.

    anita ask "build a landing page with a contact form"
    anita run <plan-id> [--yes]
    anita repair <plan-id>
    anita plans | show <plan-id> | conversations | close <id> | usage

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import os
import signal
import sys
from typing import Optional

from . import logs
from .completion import CompletionService, UsageTracker
from .config import DEFAULT_CONFIG_PATH, EngineConfig, load_config, parse_engine_config
from .engine import EVENT_PLAN_PROPOSED, Orchestrator
from .errors import AbortError, AnitaError
from .executor import EVENT_REFRESH, EVENT_SUMMARY, EVENT_TASK_FAILED
from .intent import USER_MODE_AGENT, USER_MODE_CHAT
from .logs import log
from .models import COMPLETED_TASK_STATUSES, Plan, PlanStatus, Task
from .registry import ConversationRegistry
from .sessions import CommandSessionService
from .store import BlobStore, PlanStore
from .workspace import FileStore

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

# Registry of the running command, for signal handling
_active_registry: Optional[ConversationRegistry] = None
_interrupt_count = 0


def handle_signal(signum, frame):
    """First SIGINT cancels outstanding work; a second one exits."""
    global _interrupt_count
    _interrupt_count += 1
    if _interrupt_count > 1 or _active_registry is None:
        log("Interrupted. Exiting.")
        sys.exit(EXIT_INTERRUPTED)
    cancelled = _active_registry.cancel_all()
    log(f"Received SIGINT. Cancelled {cancelled} outstanding request(s); progress is kept.")


def prompt_approval(task: Task) -> bool:
    try:
        answer = input(f"\nRun command `{task.command}`? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def print_event(event: str, payload: dict) -> None:
    if event == EVENT_SUMMARY:
        print(f"\n{payload['content']}\n", flush=True)
    elif event == EVENT_TASK_FAILED:
        print(f"  ! {payload['task'].id}: {payload['error']}", flush=True)
    elif event == EVENT_REFRESH:
        names = [e["name"] + ("/" if e["is_directory"] else "") for e in payload["entries"]]
        logs.verbose_log(f"Workspace: {', '.join(names)}", "FILES")
    elif event == EVENT_PLAN_PROPOSED:
        logs.verbose_log(f"Plan proposed: {payload['plan'].id}", "PLANNER")


def format_plan(plan: Plan) -> str:
    lines = [f"Plan {plan.id} [{plan.status.value}]: {plan.description}"]
    if plan.goal:
        lines.append(f"  Goal: {plan.goal}")
    for task in plan.tasks:
        detail = task.command or task.path
        lines.append(f"  [{task.status.value:>8}] {task.id} ({task.kind.value}) {task.description}"
                     + (f"  -> {detail}" if detail else ""))
        if task.last_error:
            lines.append(f"             error: {task.last_error.splitlines()[0][:120]}")
    return "\n".join(lines)


def build_orchestrator(config: EngineConfig, approve=prompt_approval, on_event=print_event):
    """Wire the concrete services for one workspace."""
    state_path = config.state_path
    if not os.path.isabs(state_path):
        state_path = os.path.join(config.workspace, state_path)
    blobs = BlobStore(state_path)
    registry = ConversationRegistry(blobs, config.workspace)
    completion = CompletionService(
        api_key=config.api_key,
        model=config.model,
        api_base=config.api_base,
        max_retries=config.max_retries,
        backoff_base=config.backoff_base,
        request_timeout=config.request_timeout,
        usage=UsageTracker(blobs),
    )
    sessions = CommandSessionService(
        default_cwd=config.workspace,
        command_timeout=config.command_timeout,
        background_grace_seconds=config.background_grace_seconds,
        on_output=lambda session_id, line: print(f"    {line.rstrip()}", flush=True),
    )
    return Orchestrator(
        config=config,
        registry=registry,
        plan_store=PlanStore(blobs),
        files=FileStore(config.workspace),
        completion=completion,
        sessions=sessions,
        approve=approve,
        on_event=on_event,
    )


def cmd_ask(orchestrator: Orchestrator, args) -> int:
    if not orchestrator.config.api_key:
        print("Error: no API key. Set ANITA_API_KEY or OPENROUTER_API_KEY.")
        return EXIT_ERROR
    conversation_id = args.conversation
    if not conversation_id:
        conversation_id = orchestrator.new_conversation(" ".join(args.text)).id
        log(f"Conversation {conversation_id}")

    reply = orchestrator.submit(
        conversation_id,
        " ".join(args.text),
        user_mode=args.mode,
        on_chunk=lambda chunk: print(chunk, end="", flush=True),
    )
    print()
    if reply.is_error:
        print(f"Error: {reply.content}")
        return EXIT_ERROR
    if reply.plan_id:
        plan = orchestrator.get_plan(reply.plan_id)
        print("\n" + format_plan(plan))
        print(f"\nApprove with: anita run {plan.id}")
    return EXIT_OK


def cmd_run(orchestrator: Orchestrator, args) -> int:
    status = orchestrator.approve_plan(args.plan_id)
    print(format_plan(orchestrator.get_plan(args.plan_id)))
    return EXIT_OK if status == PlanStatus.FINISHED else EXIT_ERROR


def cmd_repair(orchestrator: Orchestrator, args) -> int:
    repaired = orchestrator.repair_plan(args.plan_id)
    print(format_plan(orchestrator.get_plan(args.plan_id)))
    return EXIT_OK if repaired else EXIT_ERROR


def cmd_plans(orchestrator: Orchestrator, args) -> int:
    plans = orchestrator.list_plans(args.conversation)
    if not plans:
        print("No plans.")
    for plan in plans:
        done = sum(1 for t in plan.tasks if t.status in COMPLETED_TASK_STATUSES)
        print(f"{plan.id}  [{plan.status.value}]  {done}/{len(plan.tasks)}  {plan.description}")
    return EXIT_OK


def cmd_show(orchestrator: Orchestrator, args) -> int:
    plan = orchestrator.get_plan(args.plan_id)
    if plan is None:
        print(f"Error: plan not found: {args.plan_id}")
        return EXIT_ERROR
    print(format_plan(plan))
    if plan.thoughts:
        print(f"\nThoughts: {plan.thoughts}")
    return EXIT_OK


def cmd_conversations(orchestrator: Orchestrator, args) -> int:
    conversations = orchestrator.registry.list()
    if not conversations:
        print("No conversations.")
    for conversation in conversations:
        print(f"{conversation.id}  {len(conversation.messages):>3} msgs  {conversation.title}")
    return EXIT_OK


def cmd_close(orchestrator: Orchestrator, args) -> int:
    if not orchestrator.close_conversation(args.conversation_id):
        print(f"Error: conversation not found: {args.conversation_id}")
        return EXIT_ERROR
    print(f"Closed {args.conversation_id}")
    return EXIT_OK


def cmd_usage(orchestrator: Orchestrator, args) -> int:
    print(orchestrator.completion.usage.format_summary())
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="anita",
        description="Plan and execute coding tasks in a workspace with an AI model",
    )
    parser.add_argument(
        "--workspace", "-w",
        default=None,
        help="Workspace root (default: current directory)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to YAML config (default: <workspace>/{DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--model", default=None, help="Model override")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output with detailed tracing",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Send a message and stream the reply")
    ask.add_argument("text", nargs="+")
    ask.add_argument("--conversation", "-c", default=None, help="Continue a conversation")
    ask.add_argument(
        "--mode",
        choices=(USER_MODE_AGENT, USER_MODE_CHAT),
        default=USER_MODE_AGENT,
    )
    ask.set_defaults(func=cmd_ask)

    run = sub.add_parser("run", help="Approve and execute a plan")
    run.add_argument("plan_id")
    run.add_argument("--yes", "-y", action="store_true", help="Run commands without asking")
    run.set_defaults(func=cmd_run)

    repair = sub.add_parser("repair", help="Ask the model to fix a failed plan")
    repair.add_argument("plan_id")
    repair.set_defaults(func=cmd_repair)

    plans = sub.add_parser("plans", help="List plans, newest first")
    plans.add_argument("--conversation", "-c", default=None)
    plans.set_defaults(func=cmd_plans)

    show = sub.add_parser("show", help="Show a plan and its tasks")
    show.add_argument("plan_id")
    show.set_defaults(func=cmd_show)

    conversations = sub.add_parser("conversations", help="List conversations")
    conversations.set_defaults(func=cmd_conversations)

    close = sub.add_parser("close", help="Close a conversation")
    close.add_argument("conversation_id")
    close.set_defaults(func=cmd_close)

    usage = sub.add_parser("usage", help="Show token usage")
    usage.set_defaults(func=cmd_usage)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    global _active_registry
    args = build_parser().parse_args(argv)
    logs.set_verbose(args.verbose)

    workspace = os.path.abspath(args.workspace or os.getcwd())
    config_path = args.config or os.path.join(workspace, DEFAULT_CONFIG_PATH)
    args.workspace = workspace
    config = parse_engine_config(load_config(config_path), args)
    logs.verbose_log(f"Workspace: {config.workspace}, model: {config.model}", "CONFIG")

    orchestrator = build_orchestrator(config)
    _active_registry = orchestrator.registry
    signal.signal(signal.SIGINT, handle_signal)

    try:
        return args.func(orchestrator, args)
    except AbortError:
        log("Cancelled. Run the same command again to resume.")
        return EXIT_INTERRUPTED
    except AnitaError as e:
        print(f"Error: {e}")
        return EXIT_ERROR
    finally:
        orchestrator.sessions.close_all()


if __name__ == "__main__":
    sys.exit(main())
