"""Configuration management for the task hub."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)

APP_NAME = "specflux-hub"

DEFAULT_CONFIG: Dict[str, Any] = {
    "host": "127.0.0.1",
    "port": 8765,
    "agent_command": "claude",  # executable spawned for every session
    "agent_args": None,  # list[str] | None; None means [initial prompt]
    "product_dir": ".specflux",  # worktrees live under {repo}/{product_dir}/worktrees
    "stop_grace_seconds": 5.0,
    "file_poll_interval": 2.0,  # 0 disables the git status poll
    "default_cols": 120,
    "default_rows": 40,
    "subscriber_queue_size": 1000,
    "repositories": [],  # reconciled at startup
    "log_level": "INFO",
    "log_to_file": False,
    "json_logs": False,
}


def _config_dir() -> Path:
    """Get the platform-specific configuration directory."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / APP_NAME


def _config_path() -> Path:
    return _config_dir() / "settings.json"


def load_config(path: Optional[Path] = None) -> dict:
    """Load configuration from file, falling back to defaults for missing keys."""
    p = path or _config_path()
    try:
        with p.open("r", encoding="utf-8") as f:
            cfg = json.load(f)
    except FileNotFoundError:
        return dict(DEFAULT_CONFIG)
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("ignoring unreadable config %s: %s", p, exc)
        return dict(DEFAULT_CONFIG)
    if not isinstance(cfg, dict):
        log.warning("ignoring config %s: top level is not an object", p)
        return dict(DEFAULT_CONFIG)
    for k, v in DEFAULT_CONFIG.items():
        cfg.setdefault(k, v)
    return cfg


def save_config(cfg: dict, path: Optional[Path] = None) -> None:
    target = path or _config_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.parent / f".{target.name}.tmp"
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)
    tmp.replace(target)


@dataclass
class HubSettings:
    host: str = "127.0.0.1"
    port: int = 8765
    agent_command: str = "claude"
    agent_args: Optional[List[str]] = None
    product_dir: str = ".specflux"
    stop_grace_seconds: float = 5.0
    file_poll_interval: float = 2.0
    default_cols: int = 120
    default_rows: int = 40
    subscriber_queue_size: int = 1000
    repositories: List[str] = field(default_factory=list)
    log_level: str = "INFO"
    log_to_file: bool = False
    json_logs: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HubSettings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            log.debug("ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def build_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Task workspace and agent session hub")
    parser.add_argument("--config", type=Path, default=None, help="Path to settings.json")
    parser.add_argument("--host", default=None, help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="Listen port")
    parser.add_argument("--agent-command", default=None, help="Agent executable (default: claude)")
    parser.add_argument(
        "--repo",
        action="append",
        default=None,
        dest="repositories",
        help="Repository to reconcile worktrees for at startup (repeatable)",
    )
    parser.add_argument("--stop-grace", type=float, default=None, dest="stop_grace_seconds")
    parser.add_argument("--poll-interval", type=float, default=None, dest="file_poll_interval")
    parser.add_argument("--log-level", default=None)
    parser.add_argument(
        "--log-file",
        action=argparse.BooleanOptionalAction,
        default=None,
        dest="log_to_file",
        help="Also write a rotating log file under the config directory",
    )
    parser.add_argument("--json-logs", action=argparse.BooleanOptionalAction, default=None)
    return parser


def settings_from_args(args: argparse.Namespace) -> HubSettings:
    """Layer command-line overrides on top of the settings file."""
    cfg = load_config(args.config)
    for key in (
        "host",
        "port",
        "agent_command",
        "repositories",
        "stop_grace_seconds",
        "file_poll_interval",
        "log_level",
        "log_to_file",
        "json_logs",
    ):
        value = getattr(args, key, None)
        if value is not None:
            cfg[key] = value
    return HubSettings.from_dict(cfg)
