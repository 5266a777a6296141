import json
import tomllib
from pathlib import Path
from typing import Any, Mapping

import yaml

from .types import (
    ConfigError,
    GroupConfig,
    ProjectConfig,
    RunPlan,
    Settings,
    TaskConfig,
    UnsupportedConfigFormatError,
)

_TOP_LEVEL_KEYS = {"settings", "groups"}
_SETTINGS_KEYS = {
    "parallel_execution",
    "parallel_limit",
    "skip_optional_on_error",
    "log_file",
    "desktop_notifications",
    "keychain_label",
    "verbose",
}
_GROUP_KEYS = {"name", "icon", "enabled", "description", "parallel", "tasks"}
_TASK_KEYS = {
    "name",
    "icon",
    "command",
    "required",
    "sudo",
    "enabled",
    "check_command",
    "check_path",
    "description",
    "timeout",
    "env",
    "working_dir",
}


def load_project(path: str | Path) -> ProjectConfig:
    pure_path = Path(path).expanduser().resolve()

    if not pure_path.exists():
        raise ConfigError(
            f"Config file not found: {pure_path}\nRun 'tide init' to create one."
        )

    if not pure_path.is_file():
        raise ConfigError(f"Config path is not a file: {pure_path}")

    fmt = _detect_format(pure_path)
    raw_file = _parse_file(pure_path, fmt)
    return build_project_config(raw_file)


def _detect_format(path: Path) -> str:
    fmt = path.suffix
    match fmt:
        case ".yaml" | ".yml":
            return "yaml"
        case ".toml":
            return "toml"
        case ".json":
            return "json"
        case _:
            raise UnsupportedConfigFormatError(
                f"Non supported file extension: {fmt}\n Expected format: .yml/.yaml, .toml, .json"
            )


def _parse_file(path: Path, fmt: str) -> Mapping[str, Any]:
    match fmt:
        case "yaml":
            return _parse_yaml(path)
        case "toml":
            return _parse_toml(path)
        case "json":
            return _parse_json(path)
        case _:
            raise AssertionError("Unreachable")


def _parse_yaml(path: Path) -> Mapping[str, Any]:
    try:
        raw_file = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML") from exc

    return _ensure_mapping(path, "YAML", raw_file)


def _parse_toml(path: Path) -> Mapping[str, Any]:
    try:
        raw_file = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: invalid TOML") from exc

    return _ensure_mapping(path, "TOML", raw_file)


def _parse_json(path: Path) -> Mapping[str, Any]:
    try:
        raw_file = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path}: invalid JSON") from exc

    return _ensure_mapping(path, "JSON", raw_file)


def _ensure_mapping(path: Path, fmt: str, raw_file: object) -> Mapping[str, Any]:
    if not isinstance(raw_file, Mapping):
        raise ConfigError(
            f"{path}: {fmt} parsed successfully but top-level value is not an object: {type(raw_file)}"
        )

    return raw_file


def build_project_config(raw: Mapping[str, Any]) -> ProjectConfig:
    """Validate raw parsed data into the typed settings and run plan."""
    for key in raw.keys():
        if key not in _TOP_LEVEL_KEYS:
            raise ConfigError(f"Unknown top-level field: {key}")

    settings = _build_settings(raw.get("settings", {}))

    if "groups" not in raw:
        raise ConfigError("Missing 'groups' field")

    if not isinstance(raw["groups"], list):
        raise ConfigError(f"'groups' must be a list, got {type(raw['groups'])}")

    if len(raw["groups"]) < 1:
        raise ConfigError("There must be at least one group in the config file")

    groups = []
    seen = set()
    for index, fields in enumerate(raw["groups"]):
        group = _build_group_config(index, fields)
        if group.name in seen:
            raise ConfigError(f"Duplicate group name: {group.name}")
        seen.add(group.name)
        groups.append(group)

    return ProjectConfig(settings=settings, plan=RunPlan(groups=tuple(groups)))


def _build_settings(fields: object) -> Settings:
    if not isinstance(fields, Mapping):
        raise ConfigError(f"'settings' must be a mapping, got {type(fields)}")

    for field in fields.keys():
        if field not in _SETTINGS_KEYS:
            raise ConfigError(f"settings: Can't process: {field}")

    defaults = Settings()
    values = {}

    for key in ("parallel_execution", "skip_optional_on_error", "desktop_notifications", "verbose"):
        values[key] = _get_bool("settings", fields, key, getattr(defaults, key))

    if "parallel_limit" in fields:
        values["parallel_limit"] = _get_positive_int("settings", fields, "parallel_limit")

    if "keychain_label" in fields:
        values["keychain_label"] = _get_non_empty_str("settings", fields, "keychain_label")

    # An empty log_file means logging is off.
    if fields.get("log_file") is not None:
        if not isinstance(fields["log_file"], str):
            raise ConfigError("settings: log_file should be a string")
        values["log_file"] = fields["log_file"].strip() or None

    return Settings(**values)


def _build_group_config(index: int, fields: object) -> GroupConfig:
    if not isinstance(fields, Mapping):
        raise ConfigError(f"Group #{index} must be a mapping")

    if "name" not in fields:
        raise ConfigError(f"Group #{index}: missing 'name'")

    name = _get_non_empty_str(f"Group #{index}", fields, "name")
    label = f"Group '{name}'"

    for field in fields.keys():
        if field not in _GROUP_KEYS:
            raise ConfigError(f"{label}: Can't process: {field}")

    raw_tasks = fields.get("tasks", [])
    if not isinstance(raw_tasks, list):
        raise ConfigError(f"{label}: 'tasks' should be a list")

    tasks = []
    seen = set()
    for task_index, task_fields in enumerate(raw_tasks):
        task = _build_task_config(label, task_index, task_fields)
        if task.name in seen:
            raise ConfigError(f"{label}: Duplicate task name: {task.name}")
        seen.add(task.name)
        tasks.append(task)

    return GroupConfig(
        name=name,
        tasks=tuple(tasks),
        enabled=_get_bool(label, fields, "enabled", True),
        parallel=_get_bool(label, fields, "parallel", False),
        description=_get_str(label, fields, "description"),
        icon=_get_str(label, fields, "icon"),
    )


def _build_task_config(group_label: str, index: int, fields: object) -> TaskConfig:
    if not isinstance(fields, Mapping):
        raise ConfigError(f"{group_label}: task #{index} must be a mapping")

    if "name" not in fields:
        raise ConfigError(f"{group_label}: task #{index}: missing 'name'")

    name = _get_non_empty_str(f"{group_label}: task #{index}", fields, "name")
    task_id = f"{group_label}: task '{name}'"
    env = {}
    timeout = None
    working_dir = None
    check_command = None
    check_path = None

    for field in fields.keys():
        if field not in _TASK_KEYS:
            raise ConfigError(f"{task_id}: Can't process: {field}")

    enabled = _get_bool(task_id, fields, "enabled", True)

    if "command" not in fields:
        raise ConfigError(f"{task_id}: missing 'command'")

    if not isinstance(fields["command"], list):
        raise ConfigError(
            f"{task_id}: The command should be a list of arguments, not a shell string"
        )

    for item in fields["command"]:
        if not isinstance(item, str):
            raise ConfigError(f"{task_id}: {item!r} should be a string in the command")

    command = tuple(fields["command"])

    if enabled and (len(command) < 1 or len(command[0].strip()) < 1):
        raise ConfigError(f"{task_id}: Command missing")

    if "timeout" in fields:
        timeout = _get_positive_int(task_id, fields, "timeout")

    if "env" in fields:
        if not isinstance(fields["env"], Mapping):
            raise ConfigError(f"{task_id}: Env should be a mapping")

        for key, item in fields["env"].items():
            if not isinstance(key, str):
                raise ConfigError(f"{task_id}: {key} should be a string")

            if len(key.strip()) < 1:
                raise ConfigError(f"{task_id}: A key can't be empty")

            if not isinstance(item, str):
                raise ConfigError(f"{task_id}: {item} should be a string")

            env[key.strip()] = item

    if "working_dir" in fields:
        working_dir = _get_non_empty_str(task_id, fields, "working_dir")

    if "check_command" in fields:
        check_command = _get_non_empty_str(task_id, fields, "check_command")

    if "check_path" in fields:
        check_path = _get_non_empty_str(task_id, fields, "check_path")

    return TaskConfig(
        name=name,
        command=command,
        required=_get_bool(task_id, fields, "required", True),
        sudo=_get_bool(task_id, fields, "sudo", False),
        enabled=enabled,
        check_command=check_command,
        check_path=check_path,
        timeout=timeout,
        env=env,
        working_dir=working_dir,
        description=_get_str(task_id, fields, "description"),
        icon=_get_str(task_id, fields, "icon"),
    )


def _get_bool(owner: str, fields: Mapping[str, Any], key: str, default: bool) -> bool:
    if key not in fields:
        return default

    if not isinstance(fields[key], bool):
        raise ConfigError(f"{owner}: {key} should be a boolean")

    return fields[key]


def _get_str(owner: str, fields: Mapping[str, Any], key: str) -> str:
    if key not in fields:
        return ""

    if not isinstance(fields[key], str):
        raise ConfigError(f"{owner}: {key} should be a string")

    return fields[key]


def _get_non_empty_str(owner: str, fields: Mapping[str, Any], key: str) -> str:
    if not isinstance(fields[key], str):
        raise ConfigError(f"{owner}: The {key} should be a string")

    if len(fields[key].strip()) < 1:
        raise ConfigError(f"{owner}: Please provide a non-empty {key} or remove this field")

    return fields[key].strip()


def _get_positive_int(owner: str, fields: Mapping[str, Any], key: str) -> int:
    value = fields[key]

    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{owner}: {key} should be an integer")

    if value < 1:
        raise ConfigError(f"{owner}: {key} should be at least 1")

    return value
