from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from issuepilot.config import ConfigError, load_config


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "issuepilot.toml",
        """
[runtime]
base_dir = "~/tmp/issuepilot"

[repo]
owner = " johnynek "
name = "repo"
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.runtime.base_dir == Path("~/tmp/issuepilot").expanduser()
    assert cfg.runtime.state_db_path == cfg.runtime.base_dir / "state.db"
    assert cfg.runtime.auto_scope is True
    assert cfg.runtime.enable_github_comments is True
    assert cfg.runtime.issue_refresh_seconds == 60
    assert cfg.repo.full_name == "johnynek/repo"
    assert cfg.repo.github_token_env == "GH_TOKEN"
    assert cfg.agent.api_key_env == "AGENT_API_KEY"
    assert cfg.agent.scoping_timeout_seconds == 1800
    assert cfg.agent.fixing_timeout_seconds == 7200
    assert cfg.agent.callback_secret_env is None
    assert cfg.polling.scoping_seconds == 20.0
    assert cfg.polling.fixing_seconds == 10.0
    assert cfg.polling.blocked_seconds == 30.0
    assert cfg.polling.default_seconds == 15.0
    assert cfg.comments.duplicate_window == timedelta(seconds=60)


def test_load_config_reads_every_table(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "issuepilot.toml",
        """
[runtime]
base_dir = "/var/lib/issuepilot"
auto_scope = false
enable_github_comments = false
issue_refresh_seconds = 120

[repo]
owner = "o"
name = "r"
github_token_env = "BOT_TOKEN"

[agent]
api_base_url = "https://agent.internal/v1"
api_key_env = "KEY"
request_timeout_seconds = 5
scoping_acu_limit = 2
fixing_acu_limit = 9
scoping_timeout_seconds = 600
fixing_timeout_seconds = 3600
branch_prefix = "bot/fix-"
callback_secret_env = "CALLBACK_SECRET"

[polling]
scoping_seconds = 5
fixing_seconds = 2.5
blocked_seconds = 60
default_seconds = 7
inbound_sweep_seconds = 45
result_cache_ttl_seconds = 90

[comments]
duplicate_window_seconds = 30
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.runtime.auto_scope is False
    assert cfg.runtime.enable_github_comments is False
    assert cfg.runtime.issue_refresh_seconds == 120
    assert cfg.repo.github_token_env == "BOT_TOKEN"
    assert cfg.agent.api_base_url == "https://agent.internal/v1"
    assert cfg.agent.fixing_acu_limit == 9
    assert cfg.agent.branch_prefix == "bot/fix-"
    assert cfg.agent.callback_secret_env == "CALLBACK_SECRET"
    assert cfg.polling.scoping_seconds == 5.0
    assert cfg.polling.fixing_seconds == 2.5
    assert cfg.polling.inbound_sweep_seconds == 45.0
    assert cfg.polling.result_cache_ttl_seconds == 90.0
    assert cfg.comments.duplicate_window == timedelta(seconds=30)


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ('[repo]\nowner = "o"\nname = "r"\n', r"\[runtime\] table is required"),
        ('[runtime]\nbase_dir = "/x"\n', r"\[repo\] table is required"),
        ('[runtime]\nbase_dir = ""\n[repo]\nowner = "o"\nname = "r"\n', "base_dir is required"),
        (
            '[runtime]\nbase_dir = "/x"\nissue_refresh_seconds = 5\n[repo]\nowner = "o"\nname = "r"\n',
            "issue_refresh_seconds must be >= 10",
        ),
        (
            '[runtime]\nbase_dir = "/x"\nauto_scope = "yes"\n[repo]\nowner = "o"\nname = "r"\n',
            "auto_scope must be a boolean",
        ),
        (
            '[runtime]\nbase_dir = "/x"\n[repo]\nowner = "o"\nname = "r"\n[agent]\nfixing_acu_limit = 0\n',
            "agent.fixing_acu_limit must be >= 1",
        ),
        (
            '[runtime]\nbase_dir = "/x"\n[repo]\nowner = "o"\nname = "r"\n[agent]\nscoping_acu_limit = true\n',
            "scoping_acu_limit must be an integer",
        ),
        (
            '[runtime]\nbase_dir = "/x"\n[repo]\nowner = "o"\nname = "r"\n[agent]\ncallback_secret_env = " "\n',
            "callback_secret_env must be a non-empty string",
        ),
        (
            '[runtime]\nbase_dir = "/x"\n[repo]\nowner = "o"\nname = "r"\n[polling]\nfixing_seconds = 0\n',
            "fixing_seconds must be > 0",
        ),
        (
            '[runtime]\nbase_dir = "/x"\n[repo]\nowner = "o"\nname = "r"\n[polling]\nblocked_seconds = "30"\n',
            "blocked_seconds must be a number of seconds",
        ),
        (
            'polling = 3\n[runtime]\nbase_dir = "/x"\n[repo]\nowner = "o"\nname = "r"\n',
            r"\[polling\] must be a TOML table",
        ),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, body: str, message: str) -> None:
    cfg_path = _write(tmp_path / "issuepilot.toml", body)
    with pytest.raises(ConfigError, match=message):
        load_config(cfg_path)
