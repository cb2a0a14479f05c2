"""Pipeline request document and its status state machine."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

STATUS_VALIDATING = "validating"
STATUS_BRANCHING = "branching"
STATUS_CODING = "coding"
STATUS_COMMITTING = "committing"
STATUS_CREATING_PR = "creating_pr"
STATUS_DEPLOYING = "deploying"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"

# Forward order of the non-failure states.
STATUS_ORDER: List[str] = [
    STATUS_VALIDATING,
    STATUS_BRANCHING,
    STATUS_CODING,
    STATUS_COMMITTING,
    STATUS_CREATING_PR,
    STATUS_DEPLOYING,
    STATUS_COMPLETE,
]

TERMINAL_STATUSES: FrozenSet[str] = frozenset({STATUS_COMPLETE, STATUS_FAILED})
PIPELINE_STATUSES: FrozenSet[str] = frozenset(STATUS_ORDER + [STATUS_FAILED])


def _build_transitions() -> Dict[str, FrozenSet[str]]:
    table: Dict[str, FrozenSet[str]] = {}
    for idx, status in enumerate(STATUS_ORDER):
        if status in TERMINAL_STATUSES:
            table[status] = frozenset()
            continue
        # Later phases may be reported out of band (e.g. a merge webhook can
        # arrive while the document still says creating_pr).
        table[status] = frozenset(STATUS_ORDER[idx + 1:] + [STATUS_FAILED])
    table[STATUS_FAILED] = frozenset()
    return table


TRANSITIONS: Dict[str, FrozenSet[str]] = _build_transitions()


def can_transition(current: str, target: str) -> bool:
    """Return True when ``target`` may be written over ``current``.

    Re-writing the current status is an idempotent no-op and is allowed.
    """
    if target not in PIPELINE_STATUSES:
        return False
    if current == target:
        return True
    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass(frozen=True)
class PipelineRequest:
    request_id: str
    session_id: str
    user_id: str
    prompt: str
    skill_id: str
    branch_name: str
    status: str
    created_at: datetime
    updated_at: datetime
    error: Optional[str] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    commit_sha: Optional[str] = None
    files_changed: Optional[List[str]] = None
    checks_status: Optional[str] = None
    preview_url: Optional[str] = None
    deploy_status: Optional[str] = None
    deploy_url: Optional[str] = None
    deploy_is_production: Optional[bool] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "request_id": self.request_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "prompt": self.prompt,
            "skill_id": self.skill_id,
            "branch_name": self.branch_name,
            "status": self.status,
            "error": self.error,
            "pr_number": self.pr_number,
            "pr_url": self.pr_url,
            "commit_sha": self.commit_sha,
            "files_changed": list(self.files_changed) if self.files_changed is not None else None,
            "checks_status": self.checks_status,
            "preview_url": self.preview_url,
            "deploy_status": self.deploy_status,
            "deploy_url": self.deploy_url,
            "deploy_is_production": self.deploy_is_production,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# Fields that merge writes may touch. Identity fields are fixed at creation.
MERGEABLE_FIELDS: FrozenSet[str] = frozenset(
    {
        "status",
        "error",
        "branch_name",
        "pr_number",
        "pr_url",
        "commit_sha",
        "files_changed",
        "checks_status",
        "preview_url",
        "deploy_status",
        "deploy_url",
        "deploy_is_production",
    }
)
