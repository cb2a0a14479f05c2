"""Plan tools.

``create_plan`` stamps every step ``pending``; ``update_plan`` relays the
caller's statuses verbatim. The agent owns all transition logic; neither
tool stores anything.
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import Field

from tiny_viber.tools.base import ToolContext, ToolInput, ToolRequest, ToolResult, success


class PlanItem(ToolInput):
    id: str = Field(min_length=1, description="Unique ID for this item (e.g. 'step-1')")
    label: str = Field(min_length=1, description="Description of this implementation step")


class PlanItemWithStatus(PlanItem):
    status: Literal["pending", "in_progress", "done", "skipped"]


class CreatePlanInput(ToolInput):
    title: str = Field(description="Short title for the plan (e.g. 'Add Dark Mode Toggle')")
    overview: str = Field(description="One or two sentences describing the overall approach")
    items: List[PlanItem] = Field(min_length=1, description="Ordered list of implementation steps")


class UpdatePlanInput(ToolInput):
    title: Optional[str] = Field(default=None, description="Plan title, for display consistency")
    items: List[PlanItemWithStatus] = Field(
        min_length=1,
        description="Full list of plan items with updated statuses",
    )


class CreatePlanTool:
    name = "create_plan"
    description = (
        "Create an implementation plan with a todo list. "
        "Call this BEFORE making any code changes when using the New Feature skill. "
        "The plan is shown to the user as a card with progress tracking."
    )
    input_model = CreatePlanInput

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        args = CreatePlanInput.model_validate(request.args)
        return success(
            title=args.title,
            overview=args.overview,
            items=[{"id": item.id, "label": item.label, "status": "pending"} for item in args.items],
        )


class UpdatePlanTool:
    name = "update_plan"
    description = (
        "Update the status of items in the implementation plan. "
        "Mark items 'in_progress' before coding and 'done' after the PR is created. "
        "Pass the FULL items array with updated statuses."
    )
    input_model = UpdatePlanInput

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        args = UpdatePlanInput.model_validate(request.args)
        return success(
            title=args.title,
            items=[{"id": item.id, "label": item.label, "status": item.status} for item in args.items],
        )
