import os
from pathlib import Path
from typing import Any

import yaml

from .types import DEFAULT_KEYCHAIN_LABEL, DEFAULT_PARALLEL_LIMIT, ConfigError

DEFAULT_CONFIG_NAME = "config.yml"


def default_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or "~/.config"
    return Path(base).expanduser() / "tide" / DEFAULT_CONFIG_NAME


def resolve_config_path(path: str | Path | None) -> Path:
    if path is None:
        return default_config_path()
    return Path(path).expanduser()


def default_config() -> dict[str, Any]:
    return {
        "settings": {
            "parallel_execution": False,
            "parallel_limit": DEFAULT_PARALLEL_LIMIT,
            "skip_optional_on_error": False,
            "desktop_notifications": True,
            "keychain_label": DEFAULT_KEYCHAIN_LABEL,
            "verbose": False,
        },
        "groups": [
            {
                "name": "System Updates",
                "description": "macOS system updates",
                "parallel": False,
                "tasks": [
                    {
                        "name": "macOS Updates",
                        "command": ["softwareupdate", "--install", "--all"],
                        "required": True,
                        "sudo": True,
                        "check_command": "softwareupdate",
                        "description": "Install macOS system updates",
                        "timeout": 3600,
                    }
                ],
            },
            {
                "name": "Homebrew",
                "description": "Homebrew package manager",
                "parallel": False,
                "tasks": [
                    {
                        "name": "Update Formulae",
                        "command": ["brew", "update"],
                        "required": True,
                        "check_command": "brew",
                        "description": "Update Homebrew package definitions",
                        "timeout": 300,
                    },
                    {
                        "name": "Upgrade Packages",
                        "command": ["brew", "upgrade"],
                        "required": True,
                        "check_command": "brew",
                        "description": "Upgrade all outdated packages",
                        "timeout": 1200,
                    },
                    {
                        "name": "Cleanup",
                        "command": ["brew", "cleanup"],
                        "required": False,
                        "check_command": "brew",
                        "description": "Remove stale downloads and old versions",
                    },
                ],
            },
        ],
    }


def write_default_config(path: str | Path, *, overwrite: bool = False) -> Path:
    target = Path(path).expanduser()

    if target.exists() and not overwrite:
        raise ConfigError(f"Config file already exists: {target}")

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(
        yaml.safe_dump(default_config(), sort_keys=False, allow_unicode=True),
        encoding="utf-8",
    )
    return target
