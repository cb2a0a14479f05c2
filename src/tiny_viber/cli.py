import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from pathlib import Path

from tiny_viber.app_container import AppContainer, build_app_container
from tiny_viber.config import DEFAULT_CONFIG_DIR, get_env_path, load_settings
from tiny_viber.tools import ToolContext
from tiny_viber.util import redact


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_config(container: AppContainer) -> None:
    settings = container.settings
    config = container.config_resolver.resolve()
    print(f"Config dir: {settings.config_dir}")
    print(f"Env file: {get_env_path(settings.config_dir)}")
    print(f"State db: {settings.state_db_path}")
    print(f"GitHub token present: {'yes' if settings.github_token else 'no'}")
    print(f"Anthropic key present: {'yes' if settings.anthropic_api_key else 'no'}")
    print(f"Repository: {config.project.repo}")
    print(f"Default branch: {config.project.default_branch}")
    print(f"Skills: {', '.join(config.skill_ids()) or '(none)'}")


async def _invoke(container: AppContainer, name: str, args: dict) -> int:
    context = ToolContext(
        invocation_id=str(uuid.uuid4()),
        session_id="cli",
        user_id="cli",
        user_name=os.environ.get("USER", "cli"),
    )
    result = await container.tool_registry.invoke(name, args, context)
    print(redact(json.dumps(result.output, indent=2, default=str)))
    return 0 if result.ok else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Tiny Viber code change service")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding .env and state.db (default: ~/.config/tiny-viber)",
    )
    parser.add_argument("--print-config", action="store_true", help="Print active config summary")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP service")
    parser.add_argument("--host", default="127.0.0.1", help="HTTP bind host")
    parser.add_argument("--port", type=int, default=8765, help="HTTP bind port")
    parser.add_argument("--trigger", metavar="SUMMARY", help="Run one code change end to end")
    parser.add_argument("--prompt", default="", help="Instructions for --trigger")
    parser.add_argument("--skill", default="", help="Skill id for --trigger")
    parser.add_argument("--check-pr", type=int, metavar="N", help="Print status of pull request N")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))

    args = parser.parse_args()
    config_dir = Path(args.config_dir).expanduser().resolve()

    _configure_logging(args.log_level)

    settings = load_settings(config_dir)
    container = build_app_container(settings)

    if args.print_config:
        _print_config(container)
        return

    if args.trigger:
        if not args.prompt or not args.skill:
            parser.error("--trigger requires --prompt and --skill")
        code = asyncio.run(
            _invoke(
                container,
                "trigger_code_change",
                {"summary": args.trigger, "prompt": args.prompt, "skillId": args.skill},
            )
        )
        sys.exit(code)

    if args.check_pr is not None:
        code = asyncio.run(_invoke(container, "check_deploy_status", {"prNumber": args.check_pr}))
        sys.exit(code)

    if args.serve:
        from tiny_viber.control_center.app import create_app
        import uvicorn

        app = create_app(container)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    parser.print_help()


if __name__ == "__main__":
    main()
