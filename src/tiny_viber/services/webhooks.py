"""GitHub webhook handling for requests that already have a pull request.

Updates the status document in place (merge writes only) so live
subscribers see merges, CI results and deployments.
"""
import hashlib
import hmac
import logging
from typing import Any, Dict, Mapping, Optional

from tiny_viber.domain.pipeline import STATUS_COMPLETE, STATUS_FAILED
from tiny_viber.observability.structured_log import log_json

logger = logging.getLogger(__name__)

OUTCOME_IGNORED = "ignored"
OUTCOME_NO_MATCH = "no_match"
OUTCOME_UPDATED = "updated"

SIGNATURE_PREFIX = "sha256="


class GitHubWebhookHandler:
    def __init__(self, store, secret: Optional[str] = None):
        self._store = store
        self._secret = (secret or "").strip()

    def verify_signature(self, body: bytes, signature: str) -> bool:
        if not self._secret:
            log_json(logger, "webhook.verification_skipped", level="warning", reason="GITHUB_WEBHOOK_SECRET not set")
            return True
        digest = hmac.new(self._secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(SIGNATURE_PREFIX + digest, signature or "")

    def handle(self, event: str, payload: Mapping[str, Any]) -> str:
        if event == "pull_request":
            return self._handle_pull_request(payload)
        if event == "check_run":
            return self._handle_check_run(payload)
        if event == "deployment_status":
            return self._handle_deployment_status(payload)
        return OUTCOME_IGNORED

    def _handle_pull_request(self, payload: Mapping[str, Any]) -> str:
        pr = payload.get("pull_request") or {}
        if payload.get("action") != "closed" or not pr.get("number"):
            return OUTCOME_IGNORED
        request = self._store.find_by_pr_number(int(pr["number"]))
        if request is None:
            return OUTCOME_NO_MATCH
        if pr.get("merged"):
            self._store.merge(request.request_id, status=STATUS_COMPLETE)
        else:
            self._store.merge(request.request_id, status=STATUS_FAILED, error="PR was closed without merging")
        log_json(logger, "webhook.pull_request_closed", request_id=request.request_id, merged=bool(pr.get("merged")))
        return OUTCOME_UPDATED

    def _handle_check_run(self, payload: Mapping[str, Any]) -> str:
        check_run = payload.get("check_run") or {}
        linked = check_run.get("pull_requests") or []
        if payload.get("action") != "completed" or not linked:
            return OUTCOME_IGNORED
        request = self._store.find_by_pr_number(int(linked[0].get("number") or 0))
        if request is None:
            return OUTCOME_NO_MATCH
        self._store.merge(request.request_id, checks_status=check_run.get("conclusion") or "pending")
        return OUTCOME_UPDATED

    def _handle_deployment_status(self, payload: Mapping[str, Any]) -> str:
        deployment_status: Dict[str, Any] = dict(payload.get("deployment_status") or {})
        deployment: Dict[str, Any] = dict(payload.get("deployment") or {})
        if deployment_status.get("state") != "success":
            return OUTCOME_IGNORED
        deploy_url = deployment_status.get("environment_url") or deployment_status.get("target_url")
        if not deploy_url:
            return OUTCOME_IGNORED
        environment = str(deployment_status.get("environment") or deployment.get("environment") or "")

        # Deployments carry no PR number; attach to the most recently merged
        # request that has not recorded a deploy yet.
        request = self._store.latest_with_status(STATUS_COMPLETE, without_deploy_status="success")
        if request is None:
            return OUTCOME_NO_MATCH
        self._store.merge(
            request.request_id,
            deploy_status="success",
            deploy_url=str(deploy_url),
            deploy_is_production="production" in environment.lower(),
        )
        log_json(logger, "webhook.deployment_recorded", request_id=request.request_id, url=str(deploy_url))
        return OUTCOME_UPDATED
