from dataclasses import dataclass
from typing import List

from tiny_viber.domain.errors import (
    ERROR_KIND_CANCELLED,
    ERROR_KIND_INFRASTRUCTURE,
    ERROR_KIND_INPUT,
    ERROR_KIND_POLICY,
    ERROR_KIND_TIMEOUT,
)


@dataclass(frozen=True)
class RecoveryAction:
    action_id: str
    label: str
    description: str


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    kind: str
    title: str
    user_message: str
    # Shown to the calling agent alongside do_not_retry.
    instruction: str
    actions: List[RecoveryAction]


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code="ERR_INPUT_REJECTED",
        kind=ERROR_KIND_INPUT,
        title="Request rejected",
        user_message="The request was rejected before any work started.",
        instruction=(
            "Do NOT retry automatically. Explain the problem to the user and ask them to "
            "rephrase or pick a valid skill."
        ),
        actions=[
            RecoveryAction("rephrase", "Rephrase request", "Adjust the prompt and submit again."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_POLICY_VIOLATION",
        kind=ERROR_KIND_POLICY,
        title="Change blocked by rules",
        user_message="The generated change broke one or more project rules and was discarded.",
        instruction=(
            "Do NOT retry automatically. Show the user the violations and ask whether they "
            "want a narrower change."
        ),
        actions=[
            RecoveryAction("narrow_scope", "Narrow the request", "Ask for a smaller change within the allowed paths."),
            RecoveryAction("open_config", "Review rules", "Check the allowed and blocked path lists."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_PIPELINE_TIMEOUT",
        kind=ERROR_KIND_TIMEOUT,
        title="Code change timed out",
        user_message="The coding agent ran out of time before finishing.",
        instruction=(
            "Do NOT retry automatically. Tell the user the change timed out and suggest "
            "breaking it into smaller requests. Only retry if the user explicitly asks."
        ),
        actions=[
            RecoveryAction("split_request", "Split the request", "Retry with a smaller, more focused change."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_PIPELINE_CANCELLED",
        kind=ERROR_KIND_CANCELLED,
        title="Code change cancelled",
        user_message="The pipeline was stopped by an operator.",
        instruction="Do NOT retry automatically. Tell the user the change was cancelled.",
        actions=[
            RecoveryAction("retry_manual", "Retry later", "Submit again once the operator allows it."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_PIPELINE_FAILED",
        kind=ERROR_KIND_INFRASTRUCTURE,
        title="Code change failed",
        user_message="The code change pipeline failed.",
        instruction=(
            "Do NOT retry automatically. Explain the error to the user and ask if they "
            "want to try again."
        ),
        actions=[
            RecoveryAction("retry_manual", "Retry", "Run the same request again after checking the error."),
            RecoveryAction("inspect_request", "Inspect request", "Open the status document for the captured output."),
        ],
    ),
]


def entry_for_kind(kind: str) -> ErrorCatalogEntry:
    """Catalog entry for an error kind; unknown kinds map to infrastructure."""
    by_kind = {entry.kind: entry for entry in ERROR_CATALOG}
    return by_kind.get(kind) or by_kind[ERROR_KIND_INFRASTRUCTURE]
