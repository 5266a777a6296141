from .defaults import (
    DEFAULT_CONFIG_NAME,
    default_config,
    default_config_path,
    resolve_config_path,
    write_default_config,
)
from .loader import build_project_config, load_project
from .types import (
    ConfigError,
    GroupConfig,
    ProjectConfig,
    RunPlan,
    Settings,
    TaskConfig,
    UnsupportedConfigFormatError,
)

__all__ = [
    "load_project",
    "build_project_config",
    "default_config",
    "write_default_config",
    "DEFAULT_CONFIG_NAME",
    "default_config_path",
    "resolve_config_path",
    "ProjectConfig",
    "RunPlan",
    "GroupConfig",
    "TaskConfig",
    "Settings",
    "ConfigError",
    "UnsupportedConfigFormatError",
]
