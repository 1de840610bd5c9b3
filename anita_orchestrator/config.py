"""
Engine configuration.

Settings come from .anita/config.yaml, overridden by environment variables
and then by command-line flags.

Example .anita/config.yaml:

    model: deepseek/deepseek-coder
    execution_policy: ask        # or "auto" to run commands without asking
    max_repair_attempts: 5
    auto_upgrade_chat: true

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import os
from dataclasses import dataclass
from typing import Optional

import yaml

DEFAULT_CONFIG_PATH = ".anita/config.yaml"
DEFAULT_STATE_PATH = ".anita/state.yaml"

DEFAULT_API_BASE = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "deepseek/deepseek-coder"
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 1.0  # seconds, doubled on every transport retry
DEFAULT_REQUEST_TIMEOUT = 120
DEFAULT_COMMAND_TIMEOUT = 600
DEFAULT_BACKGROUND_GRACE_SECONDS = 2.0

# Consecutive task failures in one run after which automatic repair stops
DEFAULT_MAX_REPAIR_ATTEMPTS = 5

POLICY_ASK = "ask"
POLICY_AUTO = "auto"
EXECUTION_POLICIES = (POLICY_ASK, POLICY_AUTO)

API_KEY_ENV_VARS = ["ANITA_API_KEY", "OPENROUTER_API_KEY"]
MODEL_ENV_VAR = "ANITA_MODEL"


@dataclass
class EngineConfig:
    """Runtime settings for the orchestrator and its services."""
    api_key: str = ""
    model: str = DEFAULT_MODEL
    api_base: str = DEFAULT_API_BASE
    execution_policy: str = POLICY_ASK
    max_repair_attempts: int = DEFAULT_MAX_REPAIR_ATTEMPTS
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT
    background_grace_seconds: float = DEFAULT_BACKGROUND_GRACE_SECONDS
    auto_upgrade_chat: bool = True
    state_path: str = DEFAULT_STATE_PATH
    workspace: str = "."

    @property
    def requires_approval(self) -> bool:
        """Whether terminal tasks must be confirmed by the user."""
        return self.execution_policy != POLICY_AUTO


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict:
    """Load the YAML config file.

    Returns the parsed dict, or an empty dict if the file doesn't exist.
    """
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
        return config if isinstance(config, dict) else {}
    except (IOError, yaml.YAMLError):
        return {}


def parse_engine_config(raw: dict, args: Optional[argparse.Namespace] = None) -> EngineConfig:
    """Build an EngineConfig from the YAML dict, environment and CLI flags.

    Priority: CLI flags > environment > YAML > defaults.
    """
    config = EngineConfig(
        api_key=raw.get("api_key", ""),
        model=raw.get("model", DEFAULT_MODEL),
        api_base=raw.get("api_base", DEFAULT_API_BASE),
        execution_policy=raw.get("execution_policy", POLICY_ASK),
        max_repair_attempts=int(raw.get("max_repair_attempts", DEFAULT_MAX_REPAIR_ATTEMPTS)),
        max_retries=int(raw.get("max_retries", DEFAULT_MAX_RETRIES)),
        backoff_base=float(raw.get("backoff_base", DEFAULT_BACKOFF_BASE)),
        request_timeout=int(raw.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)),
        command_timeout=int(raw.get("command_timeout", DEFAULT_COMMAND_TIMEOUT)),
        background_grace_seconds=float(
            raw.get("background_grace_seconds", DEFAULT_BACKGROUND_GRACE_SECONDS)
        ),
        auto_upgrade_chat=bool(raw.get("auto_upgrade_chat", True)),
        state_path=raw.get("state_path", DEFAULT_STATE_PATH),
        workspace=raw.get("workspace", "."),
    )

    for var in API_KEY_ENV_VARS:
        if os.environ.get(var):
            config.api_key = os.environ[var]
            break
    if os.environ.get(MODEL_ENV_VAR):
        config.model = os.environ[MODEL_ENV_VAR]

    if args is not None:
        if getattr(args, "workspace", None):
            config.workspace = args.workspace
        if getattr(args, "model", None):
            config.model = args.model
        if getattr(args, "yes", False):
            config.execution_policy = POLICY_AUTO

    if config.execution_policy not in EXECUTION_POLICIES:
        print(f"[WARNING] Unknown execution_policy '{config.execution_policy}', using '{POLICY_ASK}'")
        config.execution_policy = POLICY_ASK

    config.workspace = os.path.abspath(config.workspace)
    return config
