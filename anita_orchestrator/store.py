"""
YAML-backed key-value persistence.

BlobStore keeps the whole state in one YAML file and rewrites it on
every set. PlanStore keeps plans newest first under the "sessions" key.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import copy
import os
import threading
from typing import Any, Optional

import yaml

from .logs import verbose_log
from .models import Plan

PLANS_KEY = "sessions"
CONVERSATIONS_KEY = "chats"
TOKEN_USAGE_KEY = "token_usage"


class BlobStore:
    """Small key-value store persisted as a single YAML document."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self._data: dict = self._load()

    def _load(self) -> dict:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
        except (IOError, yaml.YAMLError) as e:
            print(f"[WARNING] Could not read state file {self.path}: {e}")
            return {}

    def _save(self) -> None:
        if not self.path:
            return
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.dump(self._data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._data.get(key, default))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)
            self._save()


class PlanStore:
    """Plans persisted through a BlobStore, newest first."""

    def __init__(self, blobs: BlobStore):
        self.blobs = blobs
        self._lock = threading.Lock()

    def list(self, conversation_id: Optional[str] = None) -> list[Plan]:
        plans = [Plan.from_dict(d) for d in self.blobs.get(PLANS_KEY, []) or []]
        if conversation_id is not None:
            plans = [p for p in plans if p.conversation_id == conversation_id]
        return plans

    def load(self, plan_id: str) -> Optional[Plan]:
        for data in self.blobs.get(PLANS_KEY, []) or []:
            if str(data.get("id")) == plan_id:
                return Plan.from_dict(data)
        return None

    def save(self, plan: Plan) -> None:
        """Insert or replace a plan; new plans go to the front."""
        with self._lock:
            plans = self.blobs.get(PLANS_KEY, []) or []
            for i, data in enumerate(plans):
                if str(data.get("id")) == plan.id:
                    plans[i] = plan.to_dict()
                    break
            else:
                plans.insert(0, plan.to_dict())
            self.blobs.set(PLANS_KEY, plans)
        verbose_log(f"Saved plan {plan.id} ({plan.status.value})", "STORE")
