import hashlib
import hmac
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from tiny_viber.domain.pipeline import PipelineRequest
from tiny_viber.persistence.sqlite_store import SqliteStatusStore
from tiny_viber.services.webhooks import GitHubWebhookHandler


def _sign(secret, body):
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestWebhookSignature(unittest.TestCase):
    def test_valid_and_invalid_signatures(self):
        handler = GitHubWebhookHandler(store=None, secret="s3cret")
        body = b'{"action": "closed"}'
        self.assertTrue(handler.verify_signature(body, _sign("s3cret", body)))
        self.assertFalse(handler.verify_signature(body, _sign("other", body)))
        self.assertFalse(handler.verify_signature(body, ""))

    def test_missing_secret_skips_verification(self):
        handler = GitHubWebhookHandler(store=None, secret="")
        with self.assertLogs("tiny_viber.services.webhooks", level="WARNING"):
            self.assertTrue(handler.verify_signature(b"{}", ""))


class TestWebhookHandling(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqliteStatusStore(Path(self.tmp.name) / "state.db")
        self.handler = GitHubWebhookHandler(self.store, secret="s3cret")
        now = datetime.now(timezone.utc)
        self.store.create(
            PipelineRequest(
                request_id="req-1",
                session_id="s",
                user_id="u",
                prompt="p",
                skill_id="bug-fix",
                branch_name="ai/p-1",
                status="validating",
                created_at=now,
                updated_at=now,
            )
        )
        self.store.merge("req-1", status="deploying", pr_number=5, checks_status="pending")

    def tearDown(self):
        self.tmp.cleanup()

    def test_merged_pr_completes_request(self):
        outcome = self.handler.handle("pull_request", {"action": "closed", "pull_request": {"number": 5, "merged": True}})
        self.assertEqual(outcome, "updated")
        self.assertEqual(self.store.get("req-1").status, "complete")

    def test_closed_unmerged_pr_fails_request(self):
        self.handler.handle("pull_request", {"action": "closed", "pull_request": {"number": 5, "merged": False}})
        doc = self.store.get("req-1")
        self.assertEqual(doc.status, "failed")
        self.assertEqual(doc.error, "PR was closed without merging")

    def test_other_pr_actions_ignored(self):
        outcome = self.handler.handle("pull_request", {"action": "opened", "pull_request": {"number": 5}})
        self.assertEqual(outcome, "ignored")
        self.assertEqual(self.store.get("req-1").status, "deploying")

    def test_unknown_pr_number(self):
        outcome = self.handler.handle("pull_request", {"action": "closed", "pull_request": {"number": 99, "merged": True}})
        self.assertEqual(outcome, "no_match")

    def test_check_run_updates_checks_status(self):
        payload = {
            "action": "completed",
            "check_run": {"conclusion": "success", "pull_requests": [{"number": 5}]},
        }
        self.assertEqual(self.handler.handle("check_run", payload), "updated")
        self.assertEqual(self.store.get("req-1").checks_status, "success")

    def test_check_run_without_pr_ignored(self):
        payload = {"action": "completed", "check_run": {"conclusion": "success", "pull_requests": []}}
        self.assertEqual(self.handler.handle("check_run", payload), "ignored")

    def test_deployment_status_attaches_to_latest_completed_request(self):
        self.handler.handle("pull_request", {"action": "closed", "pull_request": {"number": 5, "merged": True}})
        payload = {
            "deployment_status": {"state": "success", "environment_url": "https://dashboard.example.com"},
            "deployment": {"environment": "Production"},
        }
        self.assertEqual(self.handler.handle("deployment_status", payload), "updated")
        doc = self.store.get("req-1")
        self.assertEqual(doc.deploy_status, "success")
        self.assertEqual(doc.deploy_url, "https://dashboard.example.com")
        self.assertTrue(doc.deploy_is_production)

        # Already recorded; nothing left to attach to.
        self.assertEqual(self.handler.handle("deployment_status", payload), "no_match")

    def test_pending_deployment_ignored(self):
        payload = {"deployment_status": {"state": "pending", "target_url": "https://x"}}
        self.assertEqual(self.handler.handle("deployment_status", payload), "ignored")

    def test_unrelated_event_ignored(self):
        self.assertEqual(self.handler.handle("push", {}), "ignored")


if __name__ == "__main__":
    unittest.main()
