"""
Intent classification and per-mode system instructions.

The classifier is a pure function of the latest user input and the
conversation so far. Its result selects which system instruction is
prepended to the next completion request.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import re
from typing import Optional, Sequence

from .models import Message, ROLE_ASSISTANT

MODE_CHAT = "chat"
MODE_CLARIFY = "clarify"
MODE_HANDOFF = "handoff"
MODE_PLAN = "plan"
MODES = (MODE_CHAT, MODE_CLARIFY, MODE_HANDOFF, MODE_PLAN)

# User-selectable modes on the composer
USER_MODE_AGENT = "agent"
USER_MODE_CHAT = "chat"

CONFIRMATION_QUESTION = "shall i generate the implementation plan"

AFFIRMATIVE_PATTERN = re.compile(r"\b(?:yes|yep|sure|do it|go ahead)\b", re.IGNORECASE)
REQUIREMENT_CHANGE_PATTERN = re.compile(r"^\s*(?:add|include|change|also|and|with)\b", re.IGNORECASE)
BUILD_INTENT_PATTERN = re.compile(
    r"\b(?:build|create|make|setup|generate|scaffold)\b", re.IGNORECASE
)
CONCRETE_NOUN_PATTERN = re.compile(r"\b(?:page|component|function)s?\b", re.IGNORECASE)

# Inputs at or above this many words are considered detailed enough to plan
CLARIFY_WORD_LIMIT = 15
# Replies to the confirmation question longer than this are treated as new requirements
HANDOFF_WORD_LIMIT = 3

PLAN_JSON_TEMPLATE = """{
  "thoughts": "Brief reasoning...",
  "plan": "Project Strategy Name",
  "tasks": [
    { "id": 1, "description": "Inspect the workspace", "type": "terminal", "command": "ls" },
    { "id": 2, "description": "Create the entry point", "type": "file_edit", "path": "src/App.js", "content": "..." },
    { "id": 3, "description": "Create the assets folder", "type": "folder_create", "path": "src/assets" },
    { "id": 4, "description": "Tell the user what was built", "type": "summary", "content": "..." }
  ]
}"""

SYSTEM_PROMPTS = {
    MODE_CHAT: """You are Anita, an expert AI coding assistant working inside the user's editor.
CORE BEHAVIOR:
- Answer questions accurately and concisely.
- Explain code when asked; give snippets in markdown.
- Do not produce implementation plans or JSON task lists in this mode.
- If the user starts describing something to build, ask about the details first.""",

    MODE_CLARIFY: """The user wants to build something, but the request is too vague to plan.
CORE BEHAVIOR:
- Do not assume requirements.
- Ask 3-4 specific technical questions (framework, styling, data storage, target platform).
- Keep the tone helpful.
- Do not output JSON.""",

    MODE_HANDOFF: """You have enough requirements. Confirm them with the user before planning.
CORE BEHAVIOR:
- Summarize the request in 1-2 sentences.
- End with exactly: "Shall I generate the implementation plan now?"
- Wait for the user to say yes.""",

    MODE_PLAN: f"""You are the lead architect. Generate the implementation plan.
CORE BEHAVIOR:
- Output STRICT JSON only, no prose around it.
- Keep dependencies to a minimum.
- Use paths relative to the current directory; terminal commands may change directory.
- Allowed task types: file_edit, terminal, folder_create, summary.

STRICT JSON TEMPLATE:
{PLAN_JSON_TEMPLATE}""",
}


def _word_count(text: str) -> int:
    return len(text.split())


def _asked_for_confirmation(history: Sequence[Message]) -> bool:
    for message in reversed(history):
        if message.role == ROLE_ASSISTANT:
            return CONFIRMATION_QUESTION in message.content.lower()
    return False


def classify(text: str, history: Sequence[Message]) -> str:
    """Map the latest user input plus recent history onto a conversational mode."""
    if _asked_for_confirmation(history):
        if AFFIRMATIVE_PATTERN.search(text):
            return MODE_PLAN
        if REQUIREMENT_CHANGE_PATTERN.match(text) or _word_count(text) > HANDOFF_WORD_LIMIT:
            return MODE_HANDOFF

    if BUILD_INTENT_PATTERN.search(text):
        if _word_count(text) < CLARIFY_WORD_LIMIT and not CONCRETE_NOUN_PATTERN.search(text):
            return MODE_CLARIFY
        return MODE_HANDOFF

    return MODE_CHAT


def resolve_mode(
    detected: str,
    user_mode: str = USER_MODE_AGENT,
    auto_upgrade_chat: bool = True,
) -> str:
    """Combine the user's selected composer mode with the detected intent.

    In agent mode the detected intent always applies. In chat mode it only
    applies when auto-upgrade is enabled; otherwise the reply stays chat.
    """
    if user_mode == USER_MODE_CHAT and not auto_upgrade_chat:
        return MODE_CHAT
    return detected


def system_prompt(mode: str, workspace: Optional[str] = None) -> str:
    """System instruction for a mode, with the workspace location appended."""
    prompt = SYSTEM_PROMPTS.get(mode, SYSTEM_PROMPTS[MODE_CHAT])
    if workspace:
        prompt += f"\n\nThe user's workspace root is: {workspace}"
    return prompt
