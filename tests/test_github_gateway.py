import unittest

from tiny_viber.baseline_config import baseline_config_data
from tiny_viber.connectors.github import (
    GitHubError,
    GitHubGateway,
    latest_review_state,
    parse_repo,
    render_pr_body,
    summarize_check_runs,
)
from tiny_viber.domain.config_models import get_skill_by_id, load_config

API = "https://api.github.com"
REPO_PATH = "/repos/acme/dashboard"


class _FakeHttp:
    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    async def __call__(self, method, url, headers, body=None):
        self.calls.append((method, url, headers, body))
        route = self.routes.get((method, url[len(API):]))
        if route is None:
            return 404, {"message": "Not Found"}
        if isinstance(route, Exception):
            raise route
        return route


def _config(**git):
    data = baseline_config_data(repo="acme/dashboard")
    data["git"].update(git)
    return load_config(data)


class TestHelpers(unittest.TestCase):
    def test_parse_repo(self):
        self.assertEqual(parse_repo("acme/dashboard"), ("acme", "dashboard"))
        for bad in ("acme", "acme/dash/board", "", "acme/ dash"):
            with self.assertRaises(ValueError):
                parse_repo(bad)

    def test_render_pr_body(self):
        config = _config()
        skill = get_skill_by_id(config, "bug-fix")
        body = render_pr_body(config.git.pr_template, "Fix header", ["a.ts", "b/c.tsx"], skill, "alice")
        self.assertIn("**Summary:** Fix header", body)
        self.assertIn("- `a.ts`\n- `b/c.tsx`", body)
        self.assertIn("Bug Fix (bug-fix)", body)
        self.assertIn("by alice", body)
        self.assertNotIn("{{", body)

    def test_summarize_check_runs(self):
        self.assertEqual(summarize_check_runs([]), "neutral")
        self.assertEqual(summarize_check_runs([{"name": "build", "conclusion": "success"}]), "success")
        self.assertEqual(
            summarize_check_runs([{"name": "build", "conclusion": "success"}, {"name": "lint", "conclusion": None}]),
            "pending",
        )
        self.assertEqual(
            summarize_check_runs([{"name": "build", "conclusion": "failure"}, {"name": "lint", "conclusion": None}]),
            "failure",
        )

    def test_required_checks_filter(self):
        runs = [{"name": "build", "conclusion": "success"}, {"name": "e2e", "conclusion": "failure"}]
        self.assertEqual(summarize_check_runs(runs, ["build"]), "success")
        self.assertEqual(summarize_check_runs(runs, ["deploy"]), "pending")

    def test_no_check_runs_is_neutral_even_with_required_checks(self):
        self.assertEqual(summarize_check_runs([], ["build"]), "neutral")

    def test_latest_review_state(self):
        self.assertEqual(latest_review_state([]), "none")
        self.assertEqual(latest_review_state([{"state": "CHANGES_REQUESTED"}, {"state": "APPROVED"}]), "approved")
        self.assertEqual(latest_review_state([{"state": "APPROVED"}, {"state": "CHANGES_REQUESTED"}]), "changes_requested")
        self.assertEqual(latest_review_state([{"state": "COMMENTED"}]), "pending")


class TestGitHubGateway(unittest.IsolatedAsyncioTestCase):
    async def test_create_pull_request(self):
        http = _FakeHttp({("POST", f"{REPO_PATH}/pulls"): (201, {"html_url": "https://github.com/acme/dashboard/pull/7", "number": 7})})
        gateway = GitHubGateway(token="tok", http_request=http)
        config = _config()

        ref = await gateway.create_pull_request(
            branch_name="ai/fix-header-1",
            title="Fix header",
            summary="Change the header title",
            files_changed=["components/Header.tsx"],
            skill=get_skill_by_id(config, "bug-fix"),
            user_name="alice",
            config=config,
        )

        self.assertEqual(ref.pr_number, 7)
        self.assertEqual(ref.pr_url, "https://github.com/acme/dashboard/pull/7")
        method, url, headers, body = http.calls[0]
        self.assertEqual((method, url), ("POST", f"{API}{REPO_PATH}/pulls"))
        self.assertEqual(headers["Authorization"], "Bearer tok")
        self.assertEqual(body["title"], "ai: Fix header")
        self.assertEqual(body["head"], "ai/fix-header-1")
        self.assertEqual(body["base"], "main")
        self.assertIn("- `components/Header.tsx`", body["body"])
        self.assertIn("**Summary:** Change the header title", body["body"])

    async def test_api_error_raises(self):
        http = _FakeHttp({("POST", f"{REPO_PATH}/pulls"): (422, {"message": "A pull request already exists"})})
        gateway = GitHubGateway(token="tok", http_request=http)
        config = _config()
        with self.assertRaises(GitHubError) as ctx:
            await gateway.create_pull_request("b", "t", "s", [], get_skill_by_id(config, "bug-fix"), "u", config)
        self.assertEqual(ctx.exception.status, 422)
        self.assertIn("already exists", str(ctx.exception))

    async def test_missing_token_raises_before_any_call(self):
        http = _FakeHttp()
        gateway = GitHubGateway(token="", http_request=http)
        with self.assertRaises(GitHubError):
            await gateway.get_pr_status(7, _config())
        self.assertEqual(http.calls, [])

    async def test_get_pr_status(self):
        http = _FakeHttp(
            {
                ("GET", f"{REPO_PATH}/pulls/7"): (200, {"state": "open", "merged": False, "mergeable": True, "head": {"sha": "abc"}}),
                ("GET", f"{REPO_PATH}/commits/abc/check-runs"): (
                    200,
                    {"check_runs": [{"name": "build", "conclusion": "success"}, {"name": "lint", "conclusion": None}]},
                ),
                ("GET", f"{REPO_PATH}/pulls/7/reviews"): (200, [{"state": "COMMENTED"}, {"state": "APPROVED"}]),
            }
        )
        status = await GitHubGateway(token="tok", http_request=http).get_pr_status(7, _config())
        self.assertEqual(
            status.to_dict(),
            {"state": "open", "mergeable": True, "checks_status": "pending", "review_state": "approved"},
        )

    async def test_get_pr_status_merged_and_degraded(self):
        http = _FakeHttp(
            {
                ("GET", f"{REPO_PATH}/pulls/7"): (200, {"state": "closed", "merged": True, "mergeable": None, "head": {"sha": "abc"}}),
                ("GET", f"{REPO_PATH}/commits/abc/check-runs"): (500, {"message": "boom"}),
            }
        )
        status = await GitHubGateway(token="tok", http_request=http).get_pr_status(7, _config())
        self.assertEqual(status.state, "merged")
        self.assertIsNone(status.mergeable)
        self.assertEqual(status.checks_status, "neutral")
        self.assertEqual(status.review_state, "none")

    async def test_get_pr_status_without_check_runs_and_required_checks(self):
        http = _FakeHttp(
            {
                ("GET", f"{REPO_PATH}/pulls/7"): (200, {"state": "open", "merged": False, "mergeable": True, "head": {"sha": "abc"}}),
                ("GET", f"{REPO_PATH}/commits/abc/check-runs"): (200, {"total_count": 0, "check_runs": []}),
                ("GET", f"{REPO_PATH}/pulls/7/reviews"): (200, []),
            }
        )
        status = await GitHubGateway(token="tok", http_request=http).get_pr_status(7, _config(requiredChecks=["build"]))
        self.assertEqual(status.checks_status, "neutral")

    async def test_preview_url_from_commit_status(self):
        http = _FakeHttp(
            {
                ("GET", f"{REPO_PATH}/pulls/7"): (200, {"head": {"sha": "abc"}}),
                ("GET", f"{REPO_PATH}/commits/abc/statuses"): (
                    200,
                    [
                        {"context": "ci/build", "target_url": "https://ci.example.com/1"},
                        {"context": "Vercel - dashboard", "target_url": "https://dashboard-git-ai.vercel.app"},
                    ],
                ),
            }
        )
        url = await GitHubGateway(token="tok", http_request=http).get_preview_url(7, _config())
        self.assertEqual(url, "https://dashboard-git-ai.vercel.app")

    async def test_preview_url_from_deployments(self):
        http = _FakeHttp(
            {
                ("GET", f"{REPO_PATH}/pulls/7"): (200, {"head": {"sha": "abc"}}),
                ("GET", f"{REPO_PATH}/commits/abc/statuses"): (200, []),
                ("GET", f"{REPO_PATH}/deployments?sha=abc"): (200, [{"id": 55}]),
                ("GET", f"{REPO_PATH}/deployments/55/statuses"): (
                    200,
                    [{"state": "in_progress"}, {"state": "success", "environment_url": "https://preview.example.com"}],
                ),
            }
        )
        url = await GitHubGateway(token="tok", http_request=http).get_preview_url(7, _config())
        self.assertEqual(url, "https://preview.example.com")

    async def test_preview_url_never_raises(self):
        http = _FakeHttp({("GET", f"{REPO_PATH}/pulls/7"): RuntimeError("connection reset")})
        url = await GitHubGateway(token="tok", http_request=http).get_preview_url(7, _config())
        self.assertIsNone(url)

    async def test_merge_disabled_makes_no_calls(self):
        http = _FakeHttp()
        merged = await GitHubGateway(token="tok", http_request=http).merge_pr(7, _config(autoMerge=False))
        self.assertFalse(merged)
        self.assertEqual(http.calls, [])

    async def test_merge_enables_native_auto_merge(self):
        http = _FakeHttp(
            {
                ("GET", f"{REPO_PATH}/pulls/7"): (200, {"node_id": "PR_kw1"}),
                ("POST", "/graphql"): (200, {"data": {"enablePullRequestAutoMerge": {"pullRequest": {"number": 7}}}}),
            }
        )
        merged = await GitHubGateway(token="tok", http_request=http).merge_pr(7, _config(autoMerge=True))
        self.assertTrue(merged)
        graphql_body = http.calls[1][3]
        self.assertEqual(graphql_body["variables"], {"pullRequestId": "PR_kw1"})
        self.assertIn("mergeMethod: SQUASH", graphql_body["query"])
        self.assertFalse(any(call[0] == "PUT" for call in http.calls))

    async def test_merge_falls_back_to_squash(self):
        http = _FakeHttp(
            {
                ("GET", f"{REPO_PATH}/pulls/7"): (200, {"node_id": "PR_kw1"}),
                ("POST", "/graphql"): (200, {"errors": [{"message": "Pull request is in clean status"}]}),
                ("PUT", f"{REPO_PATH}/pulls/7/merge"): (200, {"merged": True, "sha": "def"}),
            }
        )
        merged = await GitHubGateway(token="tok", http_request=http).merge_pr(7, _config(autoMerge=True))
        self.assertTrue(merged)
        method, url, _, body = http.calls[-1]
        self.assertEqual((method, url), ("PUT", f"{API}{REPO_PATH}/pulls/7/merge"))
        self.assertEqual(body, {"merge_method": "squash"})

    async def test_merge_failure_returns_false(self):
        http = _FakeHttp(
            {
                ("GET", f"{REPO_PATH}/pulls/7"): (200, {"node_id": "PR_kw1"}),
                ("POST", "/graphql"): (403, {"message": "Resource not accessible"}),
                ("PUT", f"{REPO_PATH}/pulls/7/merge"): (405, {"message": "Pull Request is not mergeable"}),
            }
        )
        merged = await GitHubGateway(token="tok", http_request=http).merge_pr(7, _config(autoMerge=True))
        self.assertFalse(merged)

    async def test_custom_api_base(self):
        http = _FakeHttp()
        gateway = GitHubGateway(token="tok", api_base="https://ghe.example.com/api/v3/", http_request=http)
        await gateway.get_preview_url(7, _config())
        self.assertEqual(http.calls[0][1], "https://ghe.example.com/api/v3/repos/acme/dashboard/pulls/7")


if __name__ == "__main__":
    unittest.main()
