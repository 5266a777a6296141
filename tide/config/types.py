from dataclasses import dataclass, field

DEFAULT_PARALLEL_LIMIT = 4
DEFAULT_KEYCHAIN_LABEL = "tide-sudo"


@dataclass(frozen=True)
class TaskConfig:
    name: str
    command: tuple[str, ...]
    required: bool = True
    sudo: bool = False
    enabled: bool = True
    check_command: str | None = None
    check_path: str | None = None
    timeout: int | None = None
    env: dict[str, str] = field(default_factory=dict)
    working_dir: str | None = None
    description: str = ""
    icon: str = ""

    def command_line(self) -> str:
        return " ".join(self.command)


@dataclass(frozen=True)
class GroupConfig:
    name: str
    tasks: tuple[TaskConfig, ...]
    enabled: bool = True
    parallel: bool = False
    description: str = ""
    icon: str = ""

    def __iter__(self):
        return iter(self.tasks)

    def __len__(self):
        return len(self.tasks)

    def has_sudo_task(self) -> bool:
        return any(task.sudo for task in self.tasks)


@dataclass(frozen=True)
class Settings:
    parallel_execution: bool = False
    parallel_limit: int = DEFAULT_PARALLEL_LIMIT
    skip_optional_on_error: bool = False
    log_file: str | None = None
    desktop_notifications: bool = True
    keychain_label: str = DEFAULT_KEYCHAIN_LABEL
    verbose: bool = False


@dataclass(frozen=True)
class RunPlan:
    groups: tuple[GroupConfig, ...]

    def __iter__(self):
        return iter(self.groups)

    def __len__(self):
        return len(self.groups)

    def has_group(self, name: str) -> bool:
        return any(group.name == name for group in self.groups)

    def select(
        self, only: tuple[str, ...] | list[str] | None = None, skip: tuple[str, ...] | list[str] = ()
    ) -> list[GroupConfig]:
        """Groups kept by the name filters, in declared order, disabled ones included."""
        for name in (*(only or ()), *skip):
            if not self.has_group(name):
                raise ConfigError(f"Unknown group: {name}")

        return [
            group
            for group in self.groups
            if (only is None or group.name in only) and group.name not in skip
        ]

    def group_names(self) -> list[str]:
        return [group.name for group in self.groups]


@dataclass(frozen=True)
class ProjectConfig:
    settings: Settings
    plan: RunPlan


class ConfigError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class UnsupportedConfigFormatError(ConfigError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)
