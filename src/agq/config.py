"""Executor settings.

Settings come from ``~/.config/agq/config.toml``::

    [projects]
    base_path = "~/code"

    [executor]
    poll_interval = 1.0
    session_check_interval = 0.5
    settle_delay = 0.3
    agent_command = "claude"
    max_sessions = 4

    [history]
    max_age_days = 7

Every key can be overridden with an ``AGQ_*`` environment variable
(``AGQ_PROJECTS_BASE_PATH``, ``AGQ_POLL_INTERVAL``, ...). A missing or
unparseable file falls back to defaults.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from agq.paths import CONFIG_PATH

log = logging.getLogger(__name__)

TRUST_FLAG = "--dangerously-skip-permissions"


@dataclass
class Settings:
    projects_base_path: Path = field(default_factory=lambda: Path.home() / "Dev")
    poll_interval: float = 1.0
    session_check_interval: float = 0.5
    settle_delay: float = 0.3
    agent_command: str = "claude"
    max_sessions: int = 4
    history_max_age_days: int = 7


# (toml section, toml key) -> Settings attribute
_TOML_KEYS = {
    ("projects", "base_path"): "projects_base_path",
    ("executor", "poll_interval"): "poll_interval",
    ("executor", "session_check_interval"): "session_check_interval",
    ("executor", "settle_delay"): "settle_delay",
    ("executor", "agent_command"): "agent_command",
    ("executor", "max_sessions"): "max_sessions",
    ("history", "max_age_days"): "history_max_age_days",
}


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}


def _coerce(name: str, value: Any) -> Any:
    if name == "projects_base_path":
        return Path(str(value)).expanduser()
    default = getattr(Settings, name, None)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


def load_settings(path: Path | None = None, env: dict[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from the TOML file, then ``AGQ_*`` env overrides."""
    env = os.environ if env is None else env
    raw = _read_toml(path or CONFIG_PATH)
    values: dict[str, Any] = {}

    for (section, key), attr in _TOML_KEYS.items():
        table = raw.get(section)
        if isinstance(table, dict) and key in table:
            values[attr] = table[key]

    for f in fields(Settings):
        env_value = env.get(f"AGQ_{f.name.upper()}")
        if env_value:
            values[f.name] = env_value

    settings = Settings()
    for attr, value in values.items():
        try:
            setattr(settings, attr, _coerce(attr, value))
        except (TypeError, ValueError):
            log.warning("Ignoring invalid value for %s: %r", attr, value)
    return settings
