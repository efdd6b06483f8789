from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


DEFAULT_KNOWN_BOT_LOGINS: tuple[str, ...] = (
    "github-actions",
    "dependabot",
    "renovate",
    "coderabbitai",
    "sourcery-ai",
    "copilot",
    "deepsource-io",
    "codefactor-io",
    "codeclimate",
)


@dataclass(frozen=True)
class RuntimeConfig:
    work_dir: Path
    poll_interval_seconds: int = 300
    worker_count: int = 4


@dataclass(frozen=True)
class GitHubConfig:
    bot_login: str
    known_bot_logins: tuple[str, ...] = DEFAULT_KNOWN_BOT_LOGINS
    max_thread_depth: int = 5


@dataclass(frozen=True)
class JiraConfig:
    username: str | None = None
    pull_request_field: str | None = None


@dataclass(frozen=True)
class ClaudeConfig:
    cli_path: str = "claude"
    timeout_seconds: int = 300
    allowed_tools: str | None = "Bash Edit"
    disallowed_tools: str | None = "Python"
    dangerously_skip_permissions: bool = False
    model: str | None = None


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    github: GitHubConfig
    jira: JiraConfig = JiraConfig()
    claude: ClaudeConfig = ClaudeConfig()


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    return parse_config(data)


def parse_config(data: dict[str, object]) -> AppConfig:
    runtime_data = _require_table(data, "runtime")
    github_data = _require_table(data, "github")
    jira_data = _optional_table(data, "jira") or {}
    claude_data = _optional_table(data, "claude") or {}

    runtime = RuntimeConfig(
        work_dir=Path(_require_str(runtime_data, "work_dir")).expanduser(),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 300),
        worker_count=_int_with_default(runtime_data, "worker_count", 4),
    )
    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")

    github = GitHubConfig(
        bot_login=_require_str(github_data, "bot_login").strip(),
        known_bot_logins=_logins_with_default(
            github_data, "known_bot_logins", DEFAULT_KNOWN_BOT_LOGINS
        ),
        max_thread_depth=_int_with_default(github_data, "max_thread_depth", 5),
    )
    if github.max_thread_depth < 1:
        raise ConfigError("github.max_thread_depth must be >= 1")

    jira = JiraConfig(
        username=_optional_str(jira_data, "username"),
        pull_request_field=_optional_str(jira_data, "pull_request_field"),
    )

    claude = ClaudeConfig(
        cli_path=_str_with_default(claude_data, "cli_path", "claude"),
        timeout_seconds=_int_with_default(claude_data, "timeout_seconds", 300),
        allowed_tools=_optional_str_with_default(claude_data, "allowed_tools", "Bash Edit"),
        disallowed_tools=_optional_str_with_default(claude_data, "disallowed_tools", "Python"),
        dangerously_skip_permissions=_bool_with_default(
            claude_data, "dangerously_skip_permissions", False
        ),
        model=_optional_str(claude_data, "model"),
    )
    if claude.timeout_seconds < 1:
        raise ConfigError("claude.timeout_seconds must be >= 1")

    return AppConfig(runtime=runtime, github=github, jira=jira, claude=claude)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _optional_str_with_default(
    data: dict[str, object], key: str, default: str | None
) -> str | None:
    if key not in data:
        return default
    value = data.get(key)
    # An explicit empty string turns the option off.
    if value == "":
        return None
    return _optional_str(data, key)


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


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _logins_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    value = data.get(key, list(default))
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    normalized: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        login = item.strip().lower()
        if not login:
            raise ConfigError(f"{key} entries must be non-empty strings")
        if login not in normalized:
            normalized.append(login)
    return tuple(normalized)
