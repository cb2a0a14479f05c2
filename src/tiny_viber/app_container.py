import logging
import shutil
from dataclasses import dataclass
from typing import Optional

from tiny_viber.baseline_config import load_baseline_config
from tiny_viber.config import Settings
from tiny_viber.connectors.github import GitHubGateway, HttpRequestFn
from tiny_viber.domain.config_models import AICoderConfig
from tiny_viber.domain.contracts import SandboxProvider
from tiny_viber.events.event_bus import EventBus
from tiny_viber.execution.docker_sandbox import DockerSandboxProvider, parse_run_args
from tiny_viber.observability.structured_log import log_json
from tiny_viber.persistence.sqlite_store import SqliteConfigOverrideStore, SqliteStatusStore
from tiny_viber.services.config_resolver import ConfigResolver
from tiny_viber.services.orchestrator import SandboxOrchestrator
from tiny_viber.services.sandbox_registry import SandboxRegistry
from tiny_viber.services.webhooks import GitHubWebhookHandler
from tiny_viber.tools import ToolRegistry, build_default_tool_registry

logger = logging.getLogger(__name__)


@dataclass
class AppContainer:
    settings: Settings
    baseline: AICoderConfig
    config_resolver: ConfigResolver
    override_store: SqliteConfigOverrideStore
    event_bus: EventBus
    status_store: SqliteStatusStore
    sandbox_registry: SandboxRegistry
    orchestrator: SandboxOrchestrator
    gateway: GitHubGateway
    webhook_handler: GitHubWebhookHandler
    tool_registry: ToolRegistry


def build_app_container(
    settings: Settings,
    sandbox_provider: Optional[SandboxProvider] = None,
    http_request: Optional[HttpRequestFn] = None,
    baseline: Optional[AICoderConfig] = None,
) -> AppContainer:
    """Construct every client once; the process entry point owns their lifetime."""
    baseline_config = baseline or load_baseline_config(
        path=settings.config_path,
        repo=settings.github_repo or None,
    )
    _log_startup_warnings(settings, check_docker=sandbox_provider is None)

    event_bus = EventBus()
    override_store = SqliteConfigOverrideStore(settings.state_db_path)
    status_store = SqliteStatusStore(settings.state_db_path, event_bus=event_bus)
    config_resolver = ConfigResolver(baseline_config, override_store)
    registry = SandboxRegistry()
    provider = sandbox_provider or DockerSandboxProvider(
        network_mode=settings.docker_network or None,
        extra_run_args=parse_run_args(settings.docker_run_args),
    )
    orchestrator = SandboxOrchestrator(
        provider=provider,
        secrets=settings.sandbox_secrets(),
        github_token=settings.github_token,
        registry=registry,
    )
    gateway = GitHubGateway(
        token=settings.github_token,
        api_base=settings.github_api_base,
        http_request=http_request,
    )
    tool_registry = build_default_tool_registry(
        config_resolver,
        status_store=status_store,
        orchestrator=orchestrator,
        gateway=gateway,
    )
    return AppContainer(
        settings=settings,
        baseline=baseline_config,
        config_resolver=config_resolver,
        override_store=override_store,
        event_bus=event_bus,
        status_store=status_store,
        sandbox_registry=registry,
        orchestrator=orchestrator,
        gateway=gateway,
        webhook_handler=GitHubWebhookHandler(status_store, secret=settings.github_webhook_secret),
        tool_registry=tool_registry,
    )


def _log_startup_warnings(settings: Settings, check_docker: bool = True) -> None:
    missing = []
    if not settings.github_token:
        missing.append("GITHUB_TOKEN")
    if not settings.anthropic_api_key:
        missing.append("ANTHROPIC_API_KEY")
    if missing:
        log_json(logger, "startup.missing_settings", level="warning", keys=missing)
    if check_docker and not shutil.which("docker"):
        log_json(logger, "startup.docker_unavailable", level="warning")
