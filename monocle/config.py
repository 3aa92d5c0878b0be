"""Configuration paths and tunables for monocle.

Values come from environment variables first, then ``~/.monocle/config.toml``,
then the defaults below. The TOML file is only ever read.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from .models import ToolchainConfiguration

logger = logging.getLogger(__name__)

BASE_DIR = Path(os.environ.get("MONOCLE_HOME", str(Path.home() / ".monocle"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"
SOCKET_PATH = BASE_DIR / "daemon.sock"
SPAWN_LOCK_PATH = BASE_DIR / "daemon.lock"
LOG_FILE = BASE_DIR / "daemon.log"

DEFAULT_SOURCEKIT_COMMAND = ["/usr/bin/xcrun", "sourcekit-lsp"]

DEFAULT_IDLE_TIMEOUT = 600.0
DEFAULT_SWEEP_INTERVAL = 30.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0
DEFAULT_DAEMON_START_TIMEOUT = 10.0


@dataclass(frozen=True)
class Timeouts:
    """Per-operation time budgets in seconds."""

    initialize: float = 30.0
    open_document: float = 5.0
    definition: float = 15.0
    hover: float = 15.0
    workspace_symbol: float = 30.0


@dataclass(frozen=True)
class SearchRetryPolicy:
    """Empty-result retry budget for ``workspace/symbol``.

    SwiftPM workspaces settle build settings much later than Xcode
    build-server workspaces, so they get more attempts and a longer delay.
    """

    package_attempts: int = 12
    package_delay: float = 1.0
    ide_attempts: int = 4
    ide_delay: float = 0.5


@dataclass(frozen=True)
class Settings:
    timeouts: Timeouts = field(default_factory=Timeouts)
    search_retry: SearchRetryPolicy = field(default_factory=SearchRetryPolicy)
    toolchain: Optional[ToolchainConfiguration] = None
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    daemon_disabled: bool = False


def ensure_base_dirs() -> None:
    """Create the state directory for the daemon socket and logs."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)


def load_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the TOML config; a missing file yields an empty mapping."""
    config_path = path or CONFIG_FILE
    if not config_path.exists():
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as handle:
            return toml.load(handle)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", config_path, exc)
        return {}


def load_settings(path: Optional[Path] = None) -> Settings:
    """Build :class:`Settings` from defaults, the TOML file, and the environment."""
    raw = load_config_file(path)
    daemon = raw.get("daemon", {})
    timeouts = raw.get("timeouts", {})
    toolchain = raw.get("toolchain", {})

    developer_dir = os.environ.get("MONOCLE_DEVELOPER_DIR") or toolchain.get("developer_directory")
    sourcekit_path = os.environ.get("MONOCLE_SOURCEKIT_PATH") or toolchain.get("sourcekit_path")
    toolchain_config = None
    if developer_dir or sourcekit_path:
        toolchain_config = ToolchainConfiguration(
            developer_directory=developer_dir,
            sourcekit_path=sourcekit_path,
        )

    defaults = Timeouts()
    return Settings(
        timeouts=Timeouts(
            initialize=float(timeouts.get("initialize", defaults.initialize)),
            open_document=float(timeouts.get("open_document", defaults.open_document)),
            definition=float(timeouts.get("definition", defaults.definition)),
            hover=float(timeouts.get("hover", defaults.hover)),
            workspace_symbol=float(timeouts.get("workspace_symbol", defaults.workspace_symbol)),
        ),
        toolchain=toolchain_config,
        idle_timeout=float(
            os.environ.get("MONOCLE_IDLE_TIMEOUT", daemon.get("idle_timeout", DEFAULT_IDLE_TIMEOUT))
        ),
        sweep_interval=float(daemon.get("sweep_interval", DEFAULT_SWEEP_INTERVAL)),
        shutdown_timeout=float(daemon.get("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT)),
        daemon_disabled=os.environ.get("MONOCLE_DISABLE_DAEMON", "") not in ("", "0", "false"),
    )
