"""
Deterministic keys for effectful generation steps.

A run id is allocated once when a run is dispatched and travels with the
event or Celery payload. Every persistence step derives its key from it, so a
redelivered task finds the rows it already wrote instead of duplicating them.
"""

import uuid
from typing import Optional


# Step names used by the single-run orchestrator
STEP_USER_TURN = "user-turn"
STEP_ASSISTANT_TURN = "assistant-turn"
STEP_SAVE_RESULT = "save-result"


def new_run_id() -> str:
    """Allocate a fresh run id"""
    return str(uuid.uuid4())


def branch_run_id(generation_id: str, step_type: str) -> str:
    """Run id of one fan-out branch, stable for a given generation"""
    return f"{generation_id}:{step_type}"


def step_key(run_id: Optional[str], step_name: str) -> Optional[str]:
    """Key for one step of one run; None when the run has no id"""
    if not run_id:
        return None
    return f"{run_id}:{step_name}"
