"""The trigger tool: sandbox pipeline, pull request, live status document.

Every failure, wherever it happens, ends as a ``failed`` status document and a
structured result telling the calling agent not to retry on its own. A
retried trigger provisions a fresh sandbox each time.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Set

from pydantic import Field

from tiny_viber.connectors.github import GitHubGateway
from tiny_viber.domain.config_models import AICoderConfig, get_skill_by_id
from tiny_viber.domain.errors import (
    ERROR_KIND_INFRASTRUCTURE,
    ERROR_KIND_INPUT,
    ERROR_KIND_TIMEOUT,
    PipelineError,
    UnknownSkillError,
)
from tiny_viber.domain.pipeline import (
    STATUS_CREATING_PR,
    STATUS_DEPLOYING,
    STATUS_FAILED,
    STATUS_VALIDATING,
    PipelineRequest,
)
from tiny_viber.observability.structured_log import log_json
from tiny_viber.persistence.sqlite_store import SqliteStatusStore
from tiny_viber.services.best_effort import best_effort
from tiny_viber.services.branch_naming import generate_branch_name
from tiny_viber.services.config_resolver import ConfigResolver
from tiny_viber.services.error_codes import entry_for_kind
from tiny_viber.services.orchestrator import SandboxOrchestrator
from tiny_viber.services.rules_engine import validate_prompt
from tiny_viber.tools.base import ToolContext, ToolInput, ToolRequest, ToolResult, failure, success

logger = logging.getLogger(__name__)


class TriggerCodeChangeInput(ToolInput):
    summary: str = Field(
        min_length=1,
        description="Brief one-line summary of the change (used for branch name and PR title)",
    )
    prompt: str = Field(
        description=(
            "Detailed prompt describing exactly what the coding agent should do. "
            "Be specific about which files to modify and what changes to make."
        ),
    )
    skill_id: str = Field(description="The skill ID to use for this change (e.g. 'ui-enhancement', 'bug-fix')")


class TriggerCodeChangeTool:
    name = "trigger_code_change"
    description = (
        "Trigger an AI coding agent to implement a code change, push it, and open a pull request. "
        "Call this AFTER explaining your plan to the user (or after calling create_plan). "
        "A preview is deployed automatically for the pull request. "
        "If this tool returns status 'failed', do NOT call it again; inform the user instead."
    )
    input_model = TriggerCodeChangeInput

    def __init__(
        self,
        config_resolver: ConfigResolver,
        status_store: SqliteStatusStore,
        orchestrator: SandboxOrchestrator,
        gateway: GitHubGateway,
    ) -> None:
        self._config_resolver = config_resolver
        self._store = status_store
        self._orchestrator = orchestrator
        self._gateway = gateway
        self._background: Set[asyncio.Task] = set()

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        args = TriggerCodeChangeInput.model_validate(request.args)
        # One snapshot for the whole run.
        config = self._config_resolver.resolve()
        request_id = context.invocation_id or uuid.uuid4().hex

        try:
            skill = get_skill_by_id(config, args.skill_id)
        except UnknownSkillError as exc:
            return self._failed(exc.message, ERROR_KIND_INPUT)
        validation = validate_prompt(args.prompt, skill, config)
        if not validation.valid:
            return self._failed(validation.error or "Invalid prompt.", ERROR_KIND_INPUT)

        branch_name = generate_branch_name(args.summary, config)
        now = datetime.now(timezone.utc)
        try:
            self._store.create(
                PipelineRequest(
                    request_id=request_id,
                    session_id=context.session_id,
                    user_id=context.user_id,
                    prompt=args.prompt,
                    skill_id=skill.id,
                    branch_name=branch_name,
                    status=STATUS_VALIDATING,
                    created_at=now,
                    updated_at=now,
                )
            )
        except sqlite3.IntegrityError:
            log_json(logger, "trigger.duplicate_request", level="warning", request_id=request_id)
            return self._failed(f'Request "{request_id}" already exists.', ERROR_KIND_INPUT, request_id=request_id)
        except Exception as exc:
            log_json(logger, "trigger.status_create_failed", level="warning", request_id=request_id, error=str(exc))

        try:
            result = await self._orchestrator.execute_and_push(
                args.prompt,
                skill,
                config,
                branch_name,
                on_progress=lambda status, fields: self._store.merge(request_id, status=status, **fields),
                request_id=request_id,
            )

            await best_effort("status.creating_pr", self._store.merge, request_id, status=STATUS_CREATING_PR)
            pr = await self._gateway.create_pull_request(
                branch_name=result.branch_name,
                title=args.summary,
                summary=args.prompt,
                files_changed=result.files_changed,
                skill=skill,
                user_name=context.user_name or context.user_id or "unknown",
                config=config,
            )
            await best_effort(
                "status.pr_created",
                self._store.merge,
                request_id,
                pr_number=pr.pr_number,
                pr_url=pr.pr_url,
                branch_name=result.branch_name,
                commit_sha=result.commit_sha,
                files_changed=result.files_changed,
                checks_status="pending",
            )
            await best_effort("status.deploying", self._store.merge, request_id, status=STATUS_DEPLOYING)

            if config.git.auto_merge:
                self._spawn_auto_merge(pr.pr_number, config)

            log_json(logger, "trigger.succeeded", request_id=request_id, pr_number=pr.pr_number)
            return success(
                request_id=request_id,
                pr_url=pr.pr_url,
                pr_number=pr.pr_number,
                branch_name=result.branch_name,
                commit_sha=result.commit_sha,
                files_changed=result.files_changed,
                summary=args.summary,
            )
        except Exception as exc:
            kind = _error_kind(exc)
            message = str(exc) or type(exc).__name__
            await best_effort("status.failed", self._store.merge, request_id, status=STATUS_FAILED, error=message)
            log_json(logger, "trigger.failed", level="error", request_id=request_id, kind=kind, error=message)
            extra: Dict[str, Any] = {"request_id": request_id}
            if isinstance(exc, PipelineError) and exc.violations:
                extra["violations"] = list(exc.violations)
            return self._failed(message, kind, **extra)

    def _failed(self, message: str, kind: str, **extra: Any) -> ToolResult:
        entry = entry_for_kind(kind)
        return failure(
            message,
            error_code=entry.code,
            timed_out=kind == ERROR_KIND_TIMEOUT,
            do_not_retry=True,
            instruction=entry.instruction,
            **extra,
        )

    def _spawn_auto_merge(self, pr_number: int, config: AICoderConfig) -> None:
        task = asyncio.create_task(best_effort("github.merge_pr", self._gateway.merge_pr, pr_number, config))
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ERROR_KIND_TIMEOUT
    return ERROR_KIND_INFRASTRUCTURE
