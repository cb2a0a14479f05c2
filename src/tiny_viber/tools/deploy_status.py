from __future__ import annotations

from pydantic import Field

from tiny_viber.connectors.github import GitHubGateway
from tiny_viber.services.config_resolver import ConfigResolver
from tiny_viber.tools.base import ToolContext, ToolInput, ToolRequest, ToolResult, failure, success

PREVIEW_NOT_AVAILABLE = "Not available yet. The preview may still be deploying."


class CheckDeployStatusInput(ToolInput):
    pr_number: int = Field(gt=0, description="The GitHub pull request number to check")


class CheckDeployStatusTool:
    """PR state, checks, latest review and preview URL for one pull request."""

    name = "check_deploy_status"
    description = (
        "Check the deployment status of a pull request. "
        "Use this to see whether CI checks have passed and whether a preview URL is available."
    )
    input_model = CheckDeployStatusInput

    def __init__(self, config_resolver: ConfigResolver, gateway: GitHubGateway) -> None:
        self._config_resolver = config_resolver
        self._gateway = gateway

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        args = CheckDeployStatusInput.model_validate(request.args)
        config = self._config_resolver.resolve()
        try:
            status = await self._gateway.get_pr_status(args.pr_number, config)
        except Exception as exc:
            return failure(str(exc) or type(exc).__name__)
        preview_url = await self._gateway.get_preview_url(args.pr_number, config)
        return success(
            pr_number=args.pr_number,
            pr_state=status.state,
            mergeable=status.mergeable,
            checks_status=status.checks_status,
            review_state=status.review_state,
            preview_url=preview_url or PREVIEW_NOT_AVAILABLE,
        )
