"""
Plan extraction from raw model output.

Models do not reliably return clean JSON, so extraction escalates through
three tiers and stops at the first that succeeds:

    1. strict      - json.loads on the smallest brace span holding a plan/tasks key
    2. normalized  - the same span after a fixed sequence of textual repairs
    3. heuristic   - description-like fields scraped into bare tasks

Each tier is a pure function returning the parsed dict or None, so the
escalation order can be exercised tier by tier. Text without a plan/tasks
keyword is conversation, not a plan, and yields None.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import re
from typing import Callable, Optional

from .errors import PlanParseError
from .logs import verbose_log
from .models import Plan, Task, TaskKind, TaskStatus, new_id

PLAN_KEYS = ("plan", "tasks")
TASK_LIST_KEYS = ("tasks",)

# Keys quoted by the normalization pass when the model leaves them bare
KNOWN_KEYS = (
    "plan", "tasks", "thoughts", "id", "description", "type", "path",
    "content", "command", "task", "name", "label", "status",
)
DESCRIPTION_SYNONYMS = ("task", "name", "label")

DEFAULT_PLAN_DESCRIPTION = "Implementation Plan"
RECOVERED_PLAN_DESCRIPTION = "Recovered Plan"

KIND_ALIASES = {
    TaskKind.FILE_EDIT: (
        "file_edit", "file", "edit", "write", "write_file", "file_write",
        "create_file", "fs_write",
    ),
    TaskKind.TERMINAL: ("terminal", "command", "shell", "run", "bash", "cmd", "exec"),
    TaskKind.FOLDER_CREATE: (
        "folder_create", "folder", "mkdir", "directory", "create_folder", "create_dir",
    ),
    TaskKind.SUMMARY: ("summary", "message", "note", "report"),
}

THINK_BLOCK_PATTERN = re.compile(r"<think>.*?</think>", re.DOTALL)
CODE_FENCE_PATTERN = re.compile(r"```[a-zA-Z0-9_-]*")
LITERAL_PATTERN = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null")
PYTHON_LITERALS = {"True": "true", "False": "false", "None": "null"}

_KEY_ALTERNATION = "|".join(KNOWN_KEYS)
BARE_KEY_PATTERN = re.compile(
    r"([{,]\s*)[\"']?(" + _KEY_ALTERNATION + r")[\"']?\s*[:=]\s*", re.IGNORECASE
)
BARE_VALUE_PATTERN = re.compile(r"(:\s*)(?![\s\"'\[{])([^,\]}\n]+?)(\s*)(?=[,\]}\n]|$)")
TRAILING_COMMA_PATTERN = re.compile(r",(\s*[}\]])")
OBJECT_TASKS_PATTERN = re.compile(r'"tasks"\s*:\s*(\{)\s*\{')
SEGMENT_PATTERN = re.compile(
    r"[\"']?\b(?:description|task|name|label)\b[\"']?\s*[:=]\s*"
    r"(?:\"((?:[^\"\\]|\\.)*)\"|'((?:[^'\\]|\\.)*)'|([^,}\]\n]+))",
    re.IGNORECASE,
)
PLAN_LITERAL_PATTERN = re.compile(
    r"[\"']?\bplan\b[\"']?\s*[:=]\s*(?:\"((?:[^\"\\]|\\.)*)\"|'((?:[^'\\]|\\.)*)'|([^,}\]\n]+))",
    re.IGNORECASE,
)


def _key_pattern(keys: tuple) -> re.Pattern:
    return re.compile(r"[\"']?\b(?:" + "|".join(keys) + r")\b[\"']?\s*[:=]", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Candidate location
# ---------------------------------------------------------------------------

def clean_response(text: str) -> str:
    """Drop <think> reasoning blocks and markdown code fences."""
    text = THINK_BLOCK_PATTERN.sub("", text or "")
    if "<think>" in text:
        text = text.split("<think>")[0]
    text = text.replace("</think>", "")
    return CODE_FENCE_PATTERN.sub("", text).strip()


def _balanced_spans(text: str) -> list[str]:
    """All brace-balanced spans, ignoring braces inside double-quoted strings."""
    spans = []
    stack: list[int] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            stack.append(i)
        elif ch == "}" and stack:
            start = stack.pop()
            spans.append(text[start:i + 1])
    return spans


def _close_open_brackets(text: str) -> str:
    """Append closers for brackets left open by a truncated response."""
    stack = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    if in_string:
        text += '"'
    return text + "".join(reversed(stack))


def find_candidates(text: str, keys: tuple = PLAN_KEYS) -> list[str]:
    """Brace spans holding one of the keys, smallest first."""
    pattern = _key_pattern(keys)
    spans = [s for s in _balanced_spans(text) if pattern.search(s)]
    return sorted(set(spans), key=len)


def _greedy_candidate(text: str, keys: tuple) -> Optional[str]:
    """From the brace before the first keyword to the last closing brace."""
    match = _key_pattern(keys).search(text)
    if not match:
        return None
    start = text.rfind("{", 0, match.start())
    if start == -1:
        return None
    end = text.rfind("}")
    candidate = text[start:end + 1] if end >= match.end() else text[start:]
    return _close_open_brackets(candidate)


def _has_keys(keys: tuple) -> Callable[[object], bool]:
    def accept(data: object) -> bool:
        return isinstance(data, dict) and any(k in data for k in keys)
    return accept


# ---------------------------------------------------------------------------
# Tier 1: strict
# ---------------------------------------------------------------------------

def parse_strict(text: str, keys: tuple = PLAN_KEYS) -> Optional[dict]:
    """Parse the smallest keyword-bearing span as-is."""
    accept = _has_keys(keys)
    for span in find_candidates(text, keys):
        try:
            data = json.loads(span)
        except json.JSONDecodeError:
            continue
        if accept(data):
            return data
    return None


# ---------------------------------------------------------------------------
# Tier 2: normalized repair
# ---------------------------------------------------------------------------

def _tokenize(text: str) -> list[tuple[str, str]]:
    """Split text into ("dq"|"sq"|"other", chunk) tokens and drop comments.

    A single quote only opens a string after a structural character, and
    only closes before one, so apostrophes inside values survive.
    """
    tokens: list[tuple[str, str]] = []
    other: list[str] = []
    i = 0
    n = len(text)

    def flush_other():
        if other:
            tokens.append(("other", "".join(other)))
            other.clear()

    def last_structural() -> str:
        for kind, chunk in reversed(tokens + [("other", "".join(other))]):
            stripped = chunk.rstrip()
            if stripped:
                return stripped[-1] if kind == "other" else '"'
        return ""

    while i < n:
        ch = text[i]
        if ch == '"':
            j = i + 1
            while j < n and text[j] != '"':
                j += 2 if text[j] == "\\" else 1
            flush_other()
            tokens.append(("dq", text[i:j + 1]))
            i = j + 1
        elif ch == "'" and last_structural() in ("", "{", "[", ",", ":", "="):
            j = i + 1
            while j < n:
                if text[j] == "\\":
                    j += 2
                    continue
                if text[j] == "'":
                    rest = text[j + 1:].lstrip(" \t")
                    if not rest or rest[0] in ",}]:\n\r":
                        break
                j += 1
            flush_other()
            tokens.append(("sq", text[i:j + 1]))
            i = j + 1
        elif text.startswith("//", i) and (i == 0 or text[i - 1] not in ":\\"):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        else:
            other.append(ch)
            i += 1
    flush_other()
    return tokens


def _single_to_double(token: str) -> str:
    inner = token[1:-1] if token.endswith("'") and len(token) > 1 else token[1:]
    inner = inner.replace("\\'", "'")
    inner = re.sub(r'(?<!\\)"', r'\\"', inner)
    return f'"{inner}"'


def _quote_bare_value(match: re.Match) -> str:
    prefix, value, spacing = match.group(1), match.group(2).strip(), match.group(3)
    if value in PYTHON_LITERALS:
        return f"{prefix}{PYTHON_LITERALS[value]}{spacing}"
    if LITERAL_PATTERN.fullmatch(value):
        return match.group(0)
    return f"{prefix}{json.dumps(value)}{spacing}"


def _normalize_other(chunk: str) -> str:
    chunk = BARE_KEY_PATTERN.sub(lambda m: f'{m.group(1)}"{m.group(2).lower()}": ', chunk)
    chunk = re.sub(r"^(\s*)=(\s*)", r"\1:\2", chunk)
    chunk = BARE_VALUE_PATTERN.sub(_quote_bare_value, chunk)
    return chunk


def _balanced_end(text: str, start: int) -> int:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _array_shaped_tasks(text: str) -> str:
    """Rewrite "tasks": { {..}, {..} } into "tasks": [ {..}, {..} ]."""
    match = OBJECT_TASKS_PATTERN.search(text)
    if not match:
        return text
    open_idx = match.start(1)
    close_idx = _balanced_end(text, open_idx)
    if close_idx == -1:
        return text
    return text[:open_idx] + "[" + text[open_idx + 1:close_idx] + "]" + text[close_idx + 1:]


def normalize_candidate(span: str) -> str:
    """Apply the fixed sequence of textual repairs to a candidate span."""
    end = span.rfind("}")
    if end != -1:
        span = span[:end + 1]
    pieces = []
    for kind, chunk in _tokenize(span):
        if kind == "sq":
            pieces.append(_single_to_double(chunk))
        elif kind == "dq":
            pieces.append(chunk)
        else:
            pieces.append(_normalize_other(chunk))
    text = "".join(pieces)
    text = TRAILING_COMMA_PATTERN.sub(r"\1", text)
    return _array_shaped_tasks(text)


def parse_normalized(text: str, keys: tuple = PLAN_KEYS) -> Optional[dict]:
    """Retry structured parsing after normalizing each candidate span."""
    accept = _has_keys(keys)
    candidates = find_candidates(text, keys)
    greedy = _greedy_candidate(text, keys)
    if greedy and greedy not in candidates:
        candidates.append(greedy)
    for span in candidates:
        normalized = normalize_candidate(span)
        try:
            data = json.loads(normalized, strict=False)
        except json.JSONDecodeError as e:
            verbose_log(f"Normalized candidate still invalid: {e}", "PARSER")
            continue
        if accept(data):
            return data
    return None


# ---------------------------------------------------------------------------
# Tier 3: heuristic reconstruction
# ---------------------------------------------------------------------------

def _first_group(match: re.Match) -> str:
    for value in match.groups():
        if value is not None:
            return value.strip()
    return ""


def parse_heuristic(text: str) -> Optional[dict]:
    """Scrape description-like fields into bare tasks when "tasks" is present."""
    keyword = re.search(r"\btasks\b", text, re.IGNORECASE)
    if not keyword:
        return None
    region_start = text.rfind("{", 0, keyword.start())
    region = text[region_start if region_start != -1 else keyword.start():]

    tasks = []
    for match in SEGMENT_PATTERN.finditer(region):
        description = _first_group(match).replace("\\'", "'").replace('\\"', '"')
        if description:
            tasks.append({"description": description, "type": TaskKind.UNKNOWN.value})
    if not tasks:
        return None

    plan_match = PLAN_LITERAL_PATTERN.search(text)
    description = _first_group(plan_match) if plan_match else ""
    return {"plan": description or RECOVERED_PLAN_DESCRIPTION, "tasks": tasks}


# ---------------------------------------------------------------------------
# Task normalization
# ---------------------------------------------------------------------------

def resolve_kind(raw_type: object, command: str, path: str, has_content: bool) -> TaskKind:
    """Map a model-supplied type string onto a TaskKind, inferring when missing."""
    if raw_type:
        value = str(raw_type).strip().lower().replace("-", "_").replace(" ", "_")
        for kind, aliases in KIND_ALIASES.items():
            if value in aliases:
                return kind
        return TaskKind.UNKNOWN
    if command:
        return TaskKind.TERMINAL
    if path and has_content:
        return TaskKind.FILE_EDIT
    return TaskKind.UNKNOWN


def _placeholder_description(kind: TaskKind, command: str, path: str, content: str) -> str:
    if kind == TaskKind.TERMINAL and command:
        return f"Run `{command}`"
    if kind == TaskKind.FILE_EDIT and path:
        return f"Write {path}"
    if kind == TaskKind.FOLDER_CREATE and path:
        return f"Create folder {path}"
    if kind == TaskKind.SUMMARY and content:
        return "Summarize the results"
    return ""


def _text_field(item: dict, key: str) -> str:
    value = item.get(key)
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2)
    return str(value)


def coerce_task_list(value: object) -> list:
    """Accept a list, a dict of task dicts, or a single task dict."""
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        if value and all(isinstance(v, dict) for v in value.values()):
            return list(value.values())
        return [value]
    return []


def normalize_tasks(raw_tasks: object) -> list[Task]:
    """Build Task records, assigning ids and fallback descriptions."""
    tasks: list[Task] = []
    seen_ids: set[str] = set()
    for item in coerce_task_list(raw_tasks):
        if isinstance(item, str):
            item = {"description": item}
        if not isinstance(item, dict):
            continue

        description = _text_field(item, "description").strip()
        if not description:
            for synonym in DESCRIPTION_SYNONYMS:
                description = _text_field(item, synonym).strip()
                if description:
                    break

        command = _text_field(item, "command").strip()
        path = (_text_field(item, "path") or _text_field(item, "file")).strip()
        content = _text_field(item, "content")
        kind = resolve_kind(
            item.get("type") or item.get("kind"), command, path, "content" in item
        )
        if not description:
            description = _placeholder_description(kind, command, path, content)
        if not description:
            verbose_log(f"Dropping task without description: {item}", "PARSER")
            continue

        raw_id = item.get("id")
        task_id = str(raw_id).strip() if raw_id not in (None, "") else ""
        if not task_id or task_id in seen_ids:
            task_id = new_id("task-")
        seen_ids.add(task_id)

        tasks.append(Task(
            id=task_id,
            description=description,
            kind=kind,
            path=path,
            content=content,
            command=command,
            status=TaskStatus.PENDING,
        ))
    return tasks


def _plan_description(value: object) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        for key in ("description", "name", "title", "summary"):
            if isinstance(value.get(key), str):
                return value[key].strip()
    if isinstance(value, list):
        return "; ".join(str(v) for v in value)
    return ""


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

PLAN_TIERS = (
    ("strict", parse_strict),
    ("normalized", parse_normalized),
    ("heuristic", lambda text, keys=PLAN_KEYS: parse_heuristic(text)),
)


def parse_plan(raw_text: str, conversation_id: str = "", goal: str = "") -> Plan:
    """Run the tiers in order; raise PlanParseError if none yields tasks."""
    text = clean_response(raw_text)
    if not _key_pattern(PLAN_KEYS).search(text) and not re.search(r"\btasks\b", text, re.I):
        raise PlanParseError("No plan or tasks keyword in response")

    for tier_name, tier in PLAN_TIERS:
        data = tier(text, PLAN_KEYS)
        if data is None:
            continue
        verbose_log(f"Plan structure recovered by {tier_name} tier", "PARSER")

        raw_plan = data.get("plan")
        raw_tasks = data.get("tasks")
        if raw_tasks is None and isinstance(raw_plan, dict):
            raw_tasks = raw_plan.get("tasks")
        tasks = normalize_tasks(raw_tasks)
        if not tasks:
            raise PlanParseError(f"{tier_name} tier found a plan without usable tasks")

        return Plan(
            id=new_id("plan-"),
            conversation_id=conversation_id,
            goal=goal,
            description=(
                _plan_description(raw_plan) or _plan_description(data) or DEFAULT_PLAN_DESCRIPTION
            ),
            thoughts=_text_field(data, "thoughts") or _text_field(data, "reasoning"),
            tasks=tasks,
        )

    raise PlanParseError("Keyword present but no tier recovered a plan")


def extract_plan(raw_text: str, conversation_id: str = "", goal: str = "") -> Optional[Plan]:
    """Return the plan in a completion, or None when the completion is chat."""
    try:
        return parse_plan(raw_text, conversation_id=conversation_id, goal=goal)
    except PlanParseError as e:
        verbose_log(f"Not a plan: {e}", "PARSER")
        return None


def _parse_bare_array(text: str, normalize: bool) -> Optional[list]:
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end <= start:
        return None
    span = text[start:end + 1]
    if normalize:
        span = normalize_candidate("{" + span + "}")[1:-1]
    try:
        data = json.loads(span, strict=not normalize)
    except json.JSONDecodeError:
        return None
    if isinstance(data, list) and any(isinstance(item, dict) for item in data):
        return data
    return None


def extract_tasks(raw_text: str) -> Optional[list[Task]]:
    """Extract a task list from a repair response using the same tiers.

    Accepts {"tasks": [...]} or a bare JSON array of task objects.
    """
    text = clean_response(raw_text)
    for tier_name, normalize in (("strict", False), ("normalized", True)):
        tier = parse_normalized if normalize else parse_strict
        data = tier(text, TASK_LIST_KEYS)
        raw_tasks = data.get("tasks") if data is not None else _parse_bare_array(text, normalize)
        if raw_tasks is not None:
            tasks = normalize_tasks(raw_tasks)
            if tasks:
                verbose_log(f"Repair tasks recovered by {tier_name} tier", "PARSER")
                return tasks

    data = parse_heuristic(text)
    if data:
        tasks = normalize_tasks(data["tasks"])
        if tasks:
            verbose_log("Repair tasks recovered by heuristic tier", "PARSER")
            return tasks
    return None
