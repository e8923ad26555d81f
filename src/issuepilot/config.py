from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    auto_scope: bool = True
    enable_github_comments: bool = True
    issue_refresh_seconds: int = 60

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    github_token_env: str = "GH_TOKEN"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AgentConfig:
    api_base_url: str = "https://api.devin.ai/v1"
    api_key_env: str = "AGENT_API_KEY"
    request_timeout_seconds: int = 30
    scoping_acu_limit: int = 3
    fixing_acu_limit: int = 15
    scoping_timeout_seconds: int = 1800
    fixing_timeout_seconds: int = 7200
    branch_prefix: str = "agent/fix-"
    callback_secret_env: str | None = None


@dataclass(frozen=True)
class PollingConfig:
    scoping_seconds: float = 20.0
    fixing_seconds: float = 10.0
    blocked_seconds: float = 30.0
    default_seconds: float = 15.0
    inbound_sweep_seconds: float = 30.0
    result_cache_ttl_seconds: float = 3600.0


@dataclass(frozen=True)
class CommentsConfig:
    duplicate_window_seconds: float = 60.0

    @property
    def duplicate_window(self) -> timedelta:
        return timedelta(seconds=self.duplicate_window_seconds)


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    agent: AgentConfig = field(default_factory=AgentConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    comments: CommentsConfig = field(default_factory=CommentsConfig)


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")
    agent_data = _optional_table(data, "agent")
    polling_data = _optional_table(data, "polling")
    comments_data = _optional_table(data, "comments")

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        auto_scope=_bool_with_default(runtime_data, "auto_scope", True),
        enable_github_comments=_bool_with_default(runtime_data, "enable_github_comments", True),
        issue_refresh_seconds=_int_with_default(runtime_data, "issue_refresh_seconds", 60),
    )
    if runtime.issue_refresh_seconds < 10:
        raise ConfigError("runtime.issue_refresh_seconds must be >= 10")

    repo = RepoConfig(
        owner=_require_str(repo_data, "owner"),
        name=_require_str(repo_data, "name"),
        github_token_env=_str_with_default(repo_data, "github_token_env", "GH_TOKEN"),
    )

    agent = AgentConfig(
        api_base_url=_str_with_default(agent_data, "api_base_url", "https://api.devin.ai/v1"),
        api_key_env=_str_with_default(agent_data, "api_key_env", "AGENT_API_KEY"),
        request_timeout_seconds=_int_with_default(agent_data, "request_timeout_seconds", 30),
        scoping_acu_limit=_int_with_default(agent_data, "scoping_acu_limit", 3),
        fixing_acu_limit=_int_with_default(agent_data, "fixing_acu_limit", 15),
        scoping_timeout_seconds=_int_with_default(agent_data, "scoping_timeout_seconds", 1800),
        fixing_timeout_seconds=_int_with_default(agent_data, "fixing_timeout_seconds", 7200),
        branch_prefix=_str_with_default(agent_data, "branch_prefix", "agent/fix-"),
        callback_secret_env=_optional_str(agent_data, "callback_secret_env"),
    )
    for key in (
        "request_timeout_seconds",
        "scoping_acu_limit",
        "fixing_acu_limit",
        "scoping_timeout_seconds",
        "fixing_timeout_seconds",
    ):
        if cast(int, getattr(agent, key)) < 1:
            raise ConfigError(f"agent.{key} must be >= 1")

    polling = PollingConfig(
        scoping_seconds=_seconds_with_default(polling_data, "scoping_seconds", 20.0),
        fixing_seconds=_seconds_with_default(polling_data, "fixing_seconds", 10.0),
        blocked_seconds=_seconds_with_default(polling_data, "blocked_seconds", 30.0),
        default_seconds=_seconds_with_default(polling_data, "default_seconds", 15.0),
        inbound_sweep_seconds=_seconds_with_default(polling_data, "inbound_sweep_seconds", 30.0),
        result_cache_ttl_seconds=_seconds_with_default(
            polling_data, "result_cache_ttl_seconds", 3600.0
        ),
    )
    comments = CommentsConfig(
        duplicate_window_seconds=_seconds_with_default(
            comments_data, "duplicate_window_seconds", 60.0
        ),
    )
    return AppConfig(runtime=runtime, repo=repo, agent=agent, polling=polling, comments=comments)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] table is required")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value.strip()


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value.strip()


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value.strip()


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _seconds_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number of seconds")
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return float(value)
