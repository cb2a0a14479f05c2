from __future__ import annotations

from typing import Any, Dict

from tiny_viber.domain.config_models import AICoderConfig
from tiny_viber.services.config_resolver import ConfigResolver
from tiny_viber.tools.base import ToolContext, ToolInput, ToolRequest, ToolResult, success


class GetProjectContextInput(ToolInput):
    pass


def project_context_view(config: AICoderConfig) -> Dict[str, Any]:
    return {
        "project_name": config.project.name,
        "repo": config.project.repo,
        "default_branch": config.project.default_branch,
        "skills": [
            {"id": skill.id, "name": skill.name, "description": skill.description}
            for skill in config.skills
        ],
        "rules": {
            "allowed_paths": list(config.rules.allowed),
            "blocked_paths": list(config.rules.blocked),
            "constraints": list(config.rules.constraints),
            "max_files_per_change": config.rules.max_files_per_change,
        },
    }


class GetProjectContextTool:
    name = "get_project_context"
    description = (
        "Get an overview of the project: identity, available skills and file rules. "
        "Call this before planning a code change."
    )
    input_model = GetProjectContextInput

    def __init__(self, config_resolver: ConfigResolver) -> None:
        self._config_resolver = config_resolver

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        return success(**project_context_view(self._config_resolver.resolve()))
