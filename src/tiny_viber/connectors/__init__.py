"""Source-control host connectors."""
from tiny_viber.connectors.github import (
    GitHubError,
    GitHubGateway,
    PRStatus,
    PullRequestRef,
    parse_repo,
)

__all__ = [
    "GitHubError",
    "GitHubGateway",
    "PRStatus",
    "PullRequestRef",
    "parse_repo",
]
