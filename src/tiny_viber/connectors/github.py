"""GitHub gateway for the pull request side of the pipeline.

Opens pull requests for pushed branches, reports PR/check/review state,
discovers preview deployment URLs and enables auto-merge.

HTTP goes through an injectable ``http_request`` coroutine so the gateway can
be unit-tested without network access; the default uses aiohttp.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from tiny_viber.domain.config_models import AICoderConfig, Skill
from tiny_viber.observability.structured_log import log_json

logger = logging.getLogger(__name__)

_DEFAULT_API_BASE = "https://api.github.com"
_REPO_RE = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$")

CHECKS_NEUTRAL = "neutral"
CHECKS_SUCCESS = "success"
CHECKS_FAILURE = "failure"
CHECKS_PENDING = "pending"

REVIEW_APPROVED = "approved"
REVIEW_CHANGES_REQUESTED = "changes_requested"
REVIEW_PENDING = "pending"
REVIEW_NONE = "none"

_ENABLE_AUTO_MERGE_MUTATION = """
mutation EnableAutoMerge($pullRequestId: ID!) {
  enablePullRequestAutoMerge(input: {pullRequestId: $pullRequestId, mergeMethod: SQUASH}) {
    pullRequest { number }
  }
}
""".strip()


class GitHubError(Exception):
    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class PullRequestRef:
    pr_url: str
    pr_number: int


@dataclass(frozen=True)
class PRStatus:
    state: str
    mergeable: Optional[bool]
    checks_status: str
    review_state: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "mergeable": self.mergeable,
            "checks_status": self.checks_status,
            "review_state": self.review_state,
        }


# Signature: async (method, url, headers, json_body_or_None) -> (status_code, body)
HttpRequestFn = Callable[[str, str, Dict[str, str], Optional[Dict[str, Any]]], Awaitable[Tuple[int, Any]]]


async def _default_http_request(
    method: str,
    url: str,
    headers: Dict[str, str],
    body: Optional[Dict[str, Any]] = None,
) -> Tuple[int, Any]:
    """Real aiohttp-based request (used in production)."""
    try:
        import aiohttp  # type: ignore[import]
    except ImportError as exc:
        raise RuntimeError(
            "aiohttp is required for GitHubGateway.  "
            "Install it with: pip install aiohttp"
        ) from exc
    async with aiohttp.ClientSession() as session:
        async with session.request(method, url, headers=headers, json=body) as resp:
            text = await resp.text()
            data: Any = None
            if text:
                try:
                    data = json.loads(text)
                except ValueError:
                    data = text
            return resp.status, data


def parse_repo(repo: str) -> Tuple[str, str]:
    match = _REPO_RE.match((repo or "").strip())
    if not match:
        raise ValueError(f'Invalid repo format: "{repo}". Expected "owner/repo".')
    return match.group(1), match.group(2)


def render_pr_body(template: str, summary: str, files_changed: List[str], skill: Skill, user_name: str) -> str:
    return (
        template.replace("{{summary}}", summary)
        .replace("{{files}}", "\n".join(f"- `{path}`" for path in files_changed))
        .replace("{{skill}}", f"{skill.name} ({skill.id})")
        .replace("{{user}}", user_name)
    )


def summarize_check_runs(check_runs: List[Dict[str, Any]], required: Optional[List[str]] = None) -> str:
    runs = [run for run in check_runs if isinstance(run, dict)]
    if not runs:
        return CHECKS_NEUTRAL
    if required:
        runs = [run for run in runs if run.get("name") in required]
        if not runs:
            return CHECKS_PENDING
    conclusions = [run.get("conclusion") for run in runs]
    if all(c == "success" for c in conclusions):
        return CHECKS_SUCCESS
    if any(c == "failure" for c in conclusions):
        return CHECKS_FAILURE
    return CHECKS_PENDING


def latest_review_state(reviews: List[Dict[str, Any]]) -> str:
    items = [review for review in reviews if isinstance(review, dict)]
    if not items:
        return REVIEW_NONE
    state = str(items[-1].get("state") or "").upper()
    if state == "APPROVED":
        return REVIEW_APPROVED
    if state == "CHANGES_REQUESTED":
        return REVIEW_CHANGES_REQUESTED
    return REVIEW_PENDING


class GitHubGateway:
    """Pull request operations against one GitHub API base.

    Args:
        token: Token with ``repo`` scope, sent as a bearer token.
        api_base: REST API root; GraphQL lives at ``{api_base}/graphql``.
        http_request: Injectable HTTP coroutine for testing.
    """

    def __init__(
        self,
        token: str,
        api_base: str = _DEFAULT_API_BASE,
        http_request: Optional[HttpRequestFn] = None,
    ) -> None:
        self._token = token
        self._api_base = (api_base or _DEFAULT_API_BASE).rstrip("/")
        self._http_request: HttpRequestFn = http_request or _default_http_request

    async def create_pull_request(
        self,
        branch_name: str,
        title: str,
        summary: str,
        files_changed: List[str],
        skill: Skill,
        user_name: str,
        config: AICoderConfig,
    ) -> PullRequestRef:
        owner, repo = parse_repo(config.project.repo)
        body = render_pr_body(config.git.pr_template, summary, files_changed, skill, user_name)
        data = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            {
                "title": f"{config.git.commit_prefix} {title}",
                "body": body,
                "head": branch_name,
                "base": config.project.default_branch,
            },
        )
        ref = PullRequestRef(pr_url=str(data.get("html_url") or ""), pr_number=int(data.get("number") or 0))
        log_json(logger, "github.pr_created", repo=config.project.repo, pr_number=ref.pr_number, branch=branch_name)
        return ref

    async def get_pr_status(self, pr_number: int, config: AICoderConfig) -> PRStatus:
        owner, repo = parse_repo(config.project.repo)
        pr = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}")
        state = "merged" if pr.get("merged") else str(pr.get("state") or "open")
        mergeable = pr.get("mergeable")

        checks_status = CHECKS_NEUTRAL
        head_sha = str((pr.get("head") or {}).get("sha") or "")
        try:
            checks = await self._request("GET", f"/repos/{owner}/{repo}/commits/{head_sha}/check-runs")
            checks_status = summarize_check_runs(list(checks.get("check_runs") or []), config.git.required_checks)
        except Exception as exc:
            log_json(logger, "github.checks_unavailable", level="warning", pr_number=pr_number, error=str(exc))

        review_state = REVIEW_NONE
        try:
            reviews = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}/reviews")
            review_state = latest_review_state(list(reviews or []))
        except Exception as exc:
            log_json(logger, "github.reviews_unavailable", level="warning", pr_number=pr_number, error=str(exc))

        return PRStatus(
            state=state,
            mergeable=mergeable if isinstance(mergeable, bool) else None,
            checks_status=checks_status,
            review_state=review_state,
        )

    async def get_preview_url(self, pr_number: int, config: AICoderConfig) -> Optional[str]:
        """Preview URL for the PR head commit, or None. Never raises."""
        try:
            owner, repo = parse_repo(config.project.repo)
            pr = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}")
            head_sha = str((pr.get("head") or {}).get("sha") or "")

            provider = config.deploy.provider.lower()
            statuses = await self._request("GET", f"/repos/{owner}/{repo}/commits/{head_sha}/statuses")
            for status in statuses or []:
                context = str(status.get("context") or "").lower()
                if provider in context and status.get("target_url"):
                    return str(status["target_url"])

            deployments = await self._request("GET", f"/repos/{owner}/{repo}/deployments?sha={head_sha}")
            if deployments:
                deployment_id = deployments[0].get("id")
                deploy_statuses = await self._request(
                    "GET", f"/repos/{owner}/{repo}/deployments/{deployment_id}/statuses"
                )
                for status in deploy_statuses or []:
                    if status.get("state") == "success" and status.get("environment_url"):
                        return str(status["environment_url"])
        except Exception as exc:
            log_json(logger, "github.preview_lookup_failed", level="warning", pr_number=pr_number, error=str(exc))
        return None

    async def merge_pr(self, pr_number: int, config: AICoderConfig) -> bool:
        """Enable native auto-merge, falling back to an immediate squash merge.

        Returns False without any API call when auto-merge is disabled.
        Never raises.
        """
        if not config.git.auto_merge:
            return False
        try:
            owner, repo = parse_repo(config.project.repo)
        except ValueError as exc:
            log_json(logger, "github.merge_failed", level="warning", pr_number=pr_number, error=str(exc))
            return False

        try:
            pr = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}")
            node_id = pr.get("node_id")
            if not node_id:
                raise GitHubError("Pull request has no node id.")
            result = await self._graphql(_ENABLE_AUTO_MERGE_MUTATION, {"pullRequestId": node_id})
            if result.get("errors"):
                raise GitHubError(str(result["errors"]))
            log_json(logger, "github.auto_merge_enabled", pr_number=pr_number)
            return True
        except Exception as exc:
            # Usually no branch protection to queue against.
            log_json(logger, "github.auto_merge_unavailable", level="warning", pr_number=pr_number, error=str(exc))

        try:
            data = await self._request(
                "PUT",
                f"/repos/{owner}/{repo}/pulls/{pr_number}/merge",
                {"merge_method": "squash"},
            )
        except Exception as exc:
            log_json(logger, "github.merge_failed", level="warning", pr_number=pr_number, error=str(exc))
            return False
        merged = bool((data or {}).get("merged", True))
        log_json(logger, "github.squash_merged", pr_number=pr_number, merged=merged)
        return merged

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        if not self._token:
            raise GitHubError("GITHUB_TOKEN environment variable is not set")
        status, data = await self._http_request(method, f"{self._api_base}{path}", self._build_headers(), body)
        if status < 200 or status >= 300:
            message = data.get("message") if isinstance(data, dict) else str(data or "")
            raise GitHubError(f"GitHub API {method} {path} failed with HTTP {status}: {message}", status=status)
        return data if data is not None else {}

    async def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request("POST", "/graphql", {"query": query, "variables": variables})
        return data if isinstance(data, dict) else {}
