# tests/test_config.py
# Unit tests for load_config and parse_engine_config priority rules.

import argparse
import os

from anita_orchestrator.config import (
    DEFAULT_MAX_REPAIR_ATTEMPTS,
    DEFAULT_MODEL,
    POLICY_ASK,
    POLICY_AUTO,
    load_config,
    parse_engine_config,
)


def _clear_env(monkeypatch):
    for var in ("ANITA_API_KEY", "OPENROUTER_API_KEY", "ANITA_MODEL"):
        monkeypatch.delenv(var, raising=False)


def test_load_config_missing_file_returns_empty(tmp_path):
    assert load_config(str(tmp_path / "missing.yaml")) == {}


def test_load_config_invalid_yaml_returns_empty(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("model: [unclosed")
    assert load_config(str(path)) == {}


def test_load_config_non_mapping_returns_empty(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    assert load_config(str(path)) == {}


def test_defaults(monkeypatch):
    _clear_env(monkeypatch)
    config = parse_engine_config({})
    assert config.model == DEFAULT_MODEL
    assert config.execution_policy == POLICY_ASK
    assert config.requires_approval
    assert config.max_repair_attempts == DEFAULT_MAX_REPAIR_ATTEMPTS
    assert config.auto_upgrade_chat is True
    assert os.path.isabs(config.workspace)


def test_yaml_values_are_used(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    path = tmp_path / "config.yaml"
    path.write_text("model: custom/model\nexecution_policy: auto\nmax_repair_attempts: 2\n")
    config = parse_engine_config(load_config(str(path)))
    assert config.model == "custom/model"
    assert config.execution_policy == POLICY_AUTO
    assert not config.requires_approval
    assert config.max_repair_attempts == 2


def test_environment_overrides_yaml(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-env")
    monkeypatch.setenv("ANITA_MODEL", "env/model")
    config = parse_engine_config({"api_key": "sk-yaml", "model": "yaml/model"})
    assert config.api_key == "sk-env"
    assert config.model == "env/model"


def test_anita_key_takes_precedence_over_openrouter(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("ANITA_API_KEY", "sk-anita")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-router")
    assert parse_engine_config({}).api_key == "sk-anita"


def test_cli_flags_override_everything(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    monkeypatch.setenv("ANITA_MODEL", "env/model")
    args = argparse.Namespace(workspace=str(tmp_path), model="cli/model", yes=True)
    config = parse_engine_config({"execution_policy": "ask"}, args)
    assert config.model == "cli/model"
    assert config.execution_policy == POLICY_AUTO
    assert config.workspace == str(tmp_path)


def test_unknown_policy_falls_back_to_ask(monkeypatch, capsys):
    _clear_env(monkeypatch)
    config = parse_engine_config({"execution_policy": "yolo"})
    assert config.execution_policy == POLICY_ASK
    assert "Unknown execution_policy" in capsys.readouterr().out
