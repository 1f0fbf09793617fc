"""Canonical filesystem paths for agq configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

AGQ_CONFIG_DIR = Path(os.environ.get("AGQ_CONFIG_DIR", Path.home() / ".config" / "agq"))

CONFIG_PATH = AGQ_CONFIG_DIR / "config.toml"

_env_db = os.environ.get("AGQ_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else AGQ_CONFIG_DIR / "agq.db"

_env_runtime = os.environ.get("AGQ_RUNTIME_DIR")
RUNTIME_DIR = Path(_env_runtime) if _env_runtime else Path(f"/run/user/{os.getuid()}/agq")
