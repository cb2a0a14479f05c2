"""Sandbox pipeline: provision, clone, branch, run the coding agent, audit, push.

The orchestrator owns exactly one sandbox per invocation and always tears it
down. Pull request creation and everything after the push belong to the
caller (see ``tools.code_change``).
"""
from __future__ import annotations

import inspect
import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from tiny_viber.domain.config_models import AICoderConfig, Skill
from tiny_viber.domain.contracts import CommandResult, ProgressCallback, SandboxHandle, SandboxProvider
from tiny_viber.domain.errors import (
    ERROR_KIND_CANCELLED,
    ERROR_KIND_INFRASTRUCTURE,
    ERROR_KIND_TIMEOUT,
    DiffValidationError,
    PipelineError,
    SandboxError,
)
from tiny_viber.domain.pipeline import (
    STATUS_BRANCHING,
    STATUS_CODING,
    STATUS_COMMITTING,
    STATUS_FAILED,
    STATUS_VALIDATING,
)
from tiny_viber.observability.structured_log import log_json
from tiny_viber.services.best_effort import best_effort
from tiny_viber.services.cancellation import CancellationToken
from tiny_viber.services.rules_engine import build_rules_manifest, extract_changed_files, validate_diff
from tiny_viber.services.sandbox_registry import SandboxRegistry
from tiny_viber.util import escape_shell_double_quoted, redact_secrets, truncate

logger = logging.getLogger(__name__)

WORKSPACE_DIR = "/home/user/workspace"
RULES_MANIFEST_FILENAME = "CLAUDE.md"
SANDBOX_LIFETIME_MS = 10 * 60 * 1000
COMMAND_TIMEOUT_MS = 30_000
AGENT_ALLOWED_TOOLS = ("Edit", "Read", "Grep", "Glob")
COMMIT_SUMMARY_MAX_CHARS = 72
BOT_EMAIL = "ai-coder@automated.dev"
BOT_NAME = "AI Coder"
GIT_HOST = "github.com"
# Non-ASCII paths stay verbatim so the audit sees the real file names.
STAGED_DIFF_COMMAND = "git -c core.quotePath=false diff --cached"


@dataclass(frozen=True)
class PipelineResult:
    branch_name: str
    commit_sha: str
    diff: str
    files_changed: List[str] = field(default_factory=list)


class SandboxOrchestrator:
    def __init__(
        self,
        provider: SandboxProvider,
        secrets: Optional[Mapping[str, str]] = None,
        github_token: str = "",
        registry: Optional[SandboxRegistry] = None,
        git_host: str = GIT_HOST,
    ) -> None:
        self._provider = provider
        self._secrets: Dict[str, str] = {k: v for k, v in (secrets or {}).items() if v}
        self._github_token = github_token
        self._registry = registry
        self._git_host = git_host

    async def execute_and_push(
        self,
        prompt: str,
        skill: Skill,
        config: AICoderConfig,
        branch_name: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        request_id: str = "",
    ) -> PipelineResult:
        token = cancel_token or CancellationToken()
        registry_key = request_id or branch_name
        if self._registry is not None:
            self._registry.register(registry_key, token)

        handle: Optional[SandboxHandle] = None
        step = STATUS_VALIDATING
        log_json(
            logger,
            "orchestrator.started",
            request_id=request_id,
            branch=branch_name,
            skill=skill.id,
            prompt_length=len(prompt),
        )
        try:
            # validating: provision
            token.raise_if_cancelled(step)
            await self._progress(on_progress, step, {})
            handle = await self._provision(config)
            if self._registry is not None:
                self._registry.attach(registry_key, handle)

            # branching: secrets, clone, checkout, identity
            step = STATUS_BRANCHING
            token.raise_if_cancelled(step)
            await self._progress(on_progress, step, {"branch_name": branch_name})
            await self._prepare_repository(handle, config, branch_name)

            # coding: manifest + agent
            step = STATUS_CODING
            token.raise_if_cancelled(step)
            await self._progress(on_progress, step, {})
            await handle.write_file(f"{WORKSPACE_DIR}/{RULES_MANIFEST_FILENAME}", build_rules_manifest(skill, config))
            await self._run_agent(handle, prompt, skill, config)

            # committing: audit, commit, push
            step = STATUS_COMMITTING
            token.raise_if_cancelled(step)
            await self._progress(on_progress, step, {})
            result = await self._commit_and_push(handle, prompt, skill, config, branch_name)
            await self._progress(on_progress, step, {"commit_sha": result.commit_sha, "files_changed": result.files_changed})

            log_json(
                logger,
                "orchestrator.complete",
                request_id=request_id,
                branch=branch_name,
                commit_sha=result.commit_sha,
                files_changed=result.files_changed,
            )
            return result
        except Exception as exc:
            error = self._classify(exc, token, step)
            await self._fail(on_progress, request_id, error)
            if error is exc:
                raise
            raise error from exc
        finally:
            if handle is not None:
                try:
                    await handle.kill()
                except Exception as exc:
                    log_json(
                        logger,
                        "orchestrator.teardown_failed",
                        level="warning",
                        request_id=request_id,
                        sandbox_id=handle.sandbox_id,
                        error=str(exc),
                    )
            if self._registry is not None:
                self._registry.unregister(registry_key)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _provision(self, config: AICoderConfig) -> SandboxHandle:
        try:
            handle = await self._provider.create(config.sandbox.template_id, config.sandbox.timeout_ms)
        except PipelineError:
            raise
        except Exception as exc:
            raise SandboxError(f"Sandbox provisioning failed: {exc}", step=STATUS_VALIDATING) from exc
        log_json(logger, "orchestrator.sandbox_created", sandbox_id=handle.sandbox_id, template=config.sandbox.template_id)

        outcome = await best_effort("sandbox.set_timeout", self._provider.set_timeout, handle, SANDBOX_LIFETIME_MS)
        if not outcome.ok:
            log_json(
                logger,
                "orchestrator.lifetime_extension_failed",
                level="warning",
                sandbox_id=handle.sandbox_id,
                error=outcome.error,
            )
        return handle

    async def _prepare_repository(self, handle: SandboxHandle, config: AICoderConfig, branch_name: str) -> None:
        for name, value in sorted(self._secrets.items()):
            line = f"export {name}={shlex.quote(value)}"
            await self._run(handle, f"echo {shlex.quote(line)} >> ~/.bashrc", STATUS_BRANCHING, cwd=None)

        clone = await self._run(
            handle,
            f"git clone {self._clone_url(config.project.repo)} {WORKSPACE_DIR}",
            STATUS_BRANCHING,
            cwd=None,
        )
        if not clone.ok:
            detail = self._scrub(clone.stderr or clone.stdout)
            log_json(
                logger,
                "orchestrator.clone_failed",
                level="error",
                exit_code=clone.returncode,
                stderr=truncate(detail, 500),
            )
            raise PipelineError(f"Git clone failed: {detail}", step=STATUS_BRANCHING)

        checkout = await self._run(handle, f"git checkout -b {shlex.quote(branch_name)}", STATUS_BRANCHING)
        if not checkout.ok:
            raise PipelineError(f"Branch creation failed: {self._scrub(checkout.output_tail())}", step=STATUS_BRANCHING)

        await self._run(handle, f'git config user.email "{BOT_EMAIL}"', STATUS_BRANCHING)
        await self._run(handle, f'git config user.name "{BOT_NAME}"', STATUS_BRANCHING)

    async def _run_agent(self, handle: SandboxHandle, prompt: str, skill: Skill, config: AICoderConfig) -> None:
        env_prefix = " ".join(f"{name}={shlex.quote(value)}" for name, value in sorted(self._secrets.items()))
        command = (
            f'claude -p "{escape_shell_double_quoted(build_agent_prompt(prompt, skill))}" '
            f"--allowedTools {','.join(AGENT_ALLOWED_TOOLS)}"
        )
        if env_prefix:
            command = f"{env_prefix} {command}"
        result = await self._run(handle, command, STATUS_CODING, timeout_ms=config.sandbox.timeout_ms)
        log_json(
            logger,
            "orchestrator.agent_finished",
            exit_code=result.returncode,
            stdout=truncate(self._scrub(result.stdout), 500),
            stderr=truncate(self._scrub(result.stderr), 500),
        )
        if not result.ok:
            raise PipelineError(
                f"Coding agent failed (exit {result.returncode}): {self._scrub(result.stderr or result.stdout)}",
                step=STATUS_CODING,
            )

    async def _commit_and_push(
        self,
        handle: SandboxHandle,
        prompt: str,
        skill: Skill,
        config: AICoderConfig,
        branch_name: str,
    ) -> PipelineResult:
        await self._run(handle, "git add -A", STATUS_COMMITTING)
        # The manifest is scaffolding for the agent, never part of the change.
        await self._run(handle, f"git reset HEAD {RULES_MANIFEST_FILENAME}", STATUS_COMMITTING)
        diff = (await self._run(handle, STAGED_DIFF_COMMAND, STATUS_COMMITTING)).stdout or ""
        if not diff.strip():
            raise PipelineError("No changes were made by the AI agent.", step=STATUS_COMMITTING)

        validation = validate_diff(diff, skill, config)
        if not validation.valid:
            if validation.violations:
                raise DiffValidationError(validation.violations, step=STATUS_COMMITTING)
            raise PipelineError(validation.error or "Diff validation failed.", step=STATUS_COMMITTING)

        files_changed = extract_changed_files(diff)
        log_json(logger, "orchestrator.files_changed", count=len(files_changed), files=files_changed)

        message = f"{config.git.commit_prefix} {prompt[:COMMIT_SUMMARY_MAX_CHARS]}"
        commit = await self._run(handle, f'git commit -m "{escape_shell_double_quoted(message)}"', STATUS_COMMITTING)
        if not commit.ok:
            raise PipelineError(f"Commit failed: {self._scrub(commit.output_tail())}", step=STATUS_COMMITTING)

        sha = (await self._run(handle, "git rev-parse HEAD", STATUS_COMMITTING)).stdout.strip()

        push = await self._run(handle, f"git push origin {shlex.quote(branch_name)}", STATUS_COMMITTING)
        if not push.ok:
            raise PipelineError(f"Push failed: {self._scrub(push.output_tail())}", step=STATUS_COMMITTING)

        return PipelineResult(branch_name=branch_name, commit_sha=sha, diff=diff, files_changed=files_changed)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run(
        self,
        handle: SandboxHandle,
        command: str,
        step: str,
        cwd: Optional[str] = WORKSPACE_DIR,
        timeout_ms: int = COMMAND_TIMEOUT_MS,
    ) -> CommandResult:
        result = await handle.run_command(command, cwd=cwd, timeout_ms=timeout_ms)
        if result.timed_out:
            raise PipelineError(
                f"Command timed out after {timeout_ms // 1000}s during {step}.",
                kind=ERROR_KIND_TIMEOUT,
                step=step,
            )
        return result

    def _classify(self, exc: Exception, token: CancellationToken, step: str) -> PipelineError:
        # A kill tears the sandbox down under a running command, so whatever
        # that command raised is reported as the cancellation it really is.
        if token.cancelled and not (isinstance(exc, PipelineError) and exc.kind == ERROR_KIND_CANCELLED):
            return PipelineError(
                token.reason or "Cancelled.",
                kind=ERROR_KIND_CANCELLED,
                step=getattr(exc, "step", "") or step,
            )
        if isinstance(exc, PipelineError):
            if not exc.step:
                exc.step = step
            return exc
        return PipelineError(self._scrub(str(exc)) or type(exc).__name__, kind=ERROR_KIND_INFRASTRUCTURE, step=step)

    async def _progress(self, callback: Optional[ProgressCallback], status: str, fields: Dict[str, Any]) -> None:
        if callback is None:
            return
        await best_effort(f"progress.{status}", _call_progress, callback, status, fields)

    async def _fail(self, callback: Optional[ProgressCallback], request_id: str, exc: PipelineError) -> None:
        log_json(
            logger,
            "orchestrator.failed",
            level="error",
            request_id=request_id,
            step=exc.step,
            kind=exc.kind,
            error=truncate(exc.message, 1000),
        )
        await self._progress(callback, STATUS_FAILED, {"error": exc.message})

    def _clone_url(self, repo: str) -> str:
        if self._github_token:
            return f"https://x-access-token:{self._github_token}@{self._git_host}/{repo}.git"
        return f"https://{self._git_host}/{repo}.git"

    def _scrub(self, text: str) -> str:
        return redact_secrets(text or "", [self._github_token, *self._secrets.values()])


def build_agent_prompt(prompt: str, skill: Skill) -> str:
    return (
        f"[Skill: {skill.name}] {prompt}\n\n"
        f"Follow all rules in {RULES_MANIFEST_FILENAME} strictly. Do not modify any blocked files."
    )


async def _call_progress(callback: ProgressCallback, status: str, fields: Dict[str, Any]) -> None:
    value = callback(status, dict(fields))
    if inspect.isawaitable(value):
        await value
