import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

GITHUB_TOKEN_KEY = "GITHUB_TOKEN"
GITHUB_REPO_KEY = "GITHUB_REPO"
GITHUB_API_BASE_KEY = "GITHUB_API_BASE"
GITHUB_WEBHOOK_SECRET_KEY = "GITHUB_WEBHOOK_SECRET"
ANTHROPIC_API_KEY_KEY = "ANTHROPIC_API_KEY"
CONFIG_PATH_KEY = "AI_CODER_CONFIG_PATH"
STATE_DB_KEY = "AI_CODER_STATE_DB"
DOCKER_NETWORK_KEY = "DOCKER_SANDBOX_NETWORK"
DOCKER_RUN_ARGS_KEY = "DOCKER_SANDBOX_RUN_ARGS"
LOCAL_API_KEYS_KEY = "LOCAL_API_KEYS"
LOG_LEVEL_KEY = "LOG_LEVEL"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "tiny-viber"
DEFAULT_API_BASE = "https://api.github.com"

# Forwarded into the sandbox for the coding agent.
SANDBOX_SECRET_KEYS = (ANTHROPIC_API_KEY_KEY,)


@dataclass
class Settings:
    github_token: str
    github_repo: str
    github_api_base: str
    github_webhook_secret: str
    anthropic_api_key: str
    config_path: Optional[Path]
    state_db_path: Path
    docker_network: str
    docker_run_args: str
    local_api_keys: str
    log_level: str
    config_dir: Path

    def sandbox_secrets(self) -> Dict[str, str]:
        values = {ANTHROPIC_API_KEY_KEY: self.anthropic_api_key}
        return {key: values[key] for key in SANDBOX_SECRET_KEYS if values.get(key)}


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip().strip('"').strip("'")
    except OSError as exc:
        print(f"Failed to read .env: {exc}", file=sys.stderr)
    return data


def get_env_value(key: str, env_file: Mapping[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def load_env_with_fallback(config_dir: Path) -> Dict[str, str]:
    data = load_env_file(get_env_path(config_dir))
    if data:
        return data
    return load_env_file(Path.cwd() / ".env")


def load_settings(config_dir: Optional[Path] = None, env_file: Optional[Mapping[str, str]] = None) -> Settings:
    resolved_dir = (config_dir or DEFAULT_CONFIG_DIR).expanduser().resolve()
    env = dict(env_file) if env_file is not None else load_env_with_fallback(resolved_dir)

    def _get(key: str, default: str = "") -> str:
        return (get_env_value(key, env) or default).strip()

    config_path_raw = _get(CONFIG_PATH_KEY)
    state_db_raw = _get(STATE_DB_KEY)
    return Settings(
        github_token=_get(GITHUB_TOKEN_KEY),
        github_repo=_get(GITHUB_REPO_KEY),
        github_api_base=_get(GITHUB_API_BASE_KEY, DEFAULT_API_BASE),
        github_webhook_secret=_get(GITHUB_WEBHOOK_SECRET_KEY),
        anthropic_api_key=_get(ANTHROPIC_API_KEY_KEY),
        config_path=Path(config_path_raw).expanduser() if config_path_raw else None,
        state_db_path=Path(state_db_raw).expanduser() if state_db_raw else resolved_dir / "state.db",
        docker_network=_get(DOCKER_NETWORK_KEY),
        docker_run_args=_get(DOCKER_RUN_ARGS_KEY),
        local_api_keys=_get(LOCAL_API_KEYS_KEY),
        log_level=_get(LOG_LEVEL_KEY, "INFO"),
        config_dir=resolved_dir,
    )
