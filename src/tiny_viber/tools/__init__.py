from tiny_viber.tools.base import ToolContext, ToolRegistry, ToolRequest, ToolResult
from tiny_viber.tools.code_change import TriggerCodeChangeTool
from tiny_viber.tools.deploy_status import CheckDeployStatusTool
from tiny_viber.tools.plan import CreatePlanTool, UpdatePlanTool
from tiny_viber.tools.project_context import GetProjectContextTool


def build_default_tool_registry(
    config_resolver,
    status_store=None,
    orchestrator=None,
    gateway=None,
) -> ToolRegistry:
    """Build the tool registry handed to the conversational agent.

    Plan and context tools are always registered. ``trigger_code_change``
    needs a status store, orchestrator and gateway; ``check_deploy_status``
    needs a gateway.
    """
    registry = ToolRegistry()
    registry.register(CreatePlanTool())
    registry.register(UpdatePlanTool())
    registry.register(GetProjectContextTool(config_resolver))
    if gateway is not None:
        registry.register(CheckDeployStatusTool(config_resolver, gateway))
    if gateway is not None and status_store is not None and orchestrator is not None:
        registry.register(TriggerCodeChangeTool(config_resolver, status_store, orchestrator, gateway))
    return registry


__all__ = [
    "ToolContext",
    "ToolRegistry",
    "ToolRequest",
    "ToolResult",
    "build_default_tool_registry",
]
