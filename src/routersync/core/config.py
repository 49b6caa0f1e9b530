"""Loading and validation of the declared state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from routersync.core.models import Device, Group, Param, Schedule, Task, User

DEFAULT_MAIN_CONFIG = Path("config/main.yml")
REQUIRED_PARAMS = ("dir_config", "dir_backup", "dir_ssh_keys", "dir_scripts")
INTEGER_PARAMS = ("timeout", "key_import_attempts", "key_import_delay", "password_length")

DEVICES_FILE = "devices.yml"
TASKS_FILE = "tasks.yml"
USERS_FILE = "users.yml"
GROUPS_FILE = "groups.yml"
SCHEDULES_FILE = "schedules.yml"


class ConfigLoadError(ValueError):
    """Raised when the declared state cannot be read or validated."""


class NotFoundError(KeyError):
    """Raised when a named param or task is absent from the declared state."""


@dataclass(frozen=True, slots=True)
class DeclaredState:
    """Immutable declared configuration shared by every device thread."""

    base_dir: Path
    params: tuple[Param, ...]
    tasks: tuple[Task, ...]
    users: tuple[User, ...]
    groups: tuple[Group, ...]
    schedules: tuple[Schedule, ...]
    devices: tuple[Device, ...]

    def param(self, name: str) -> Param:
        for param in self.params:
            if param.name == name:
                return param
        raise NotFoundError(f"Param '{name}' does not exist.")

    def param_value(self, name: str, default: str | None = None) -> str | None:
        try:
            return self.param(name).value
        except NotFoundError:
            return default

    def param_int(self, name: str, default: int) -> int:
        """Return an integer param, falling back to ``default`` when absent."""

        raw = self.param_value(name)
        if raw is None or raw == "":
            return default
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"param '{name}': value '{raw}' must be an integer.") from exc

    def param_path(self, name: str) -> Path:
        """Return a directory param resolved against the main config directory."""

        return resolve_path(self.base_dir, self.param(name).value)

    def task(self, name: str) -> Task:
        return find_task(self.tasks, name)


def resolve_path(base_dir: Path, value: str) -> Path:
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate


def find_task(tasks: Iterable[Task], name: str) -> Task:
    for task in tasks:
        if task.name == name:
            return task
    raise NotFoundError(f"Task '{name}' does not exist.")


def _require_string(mapping: Mapping[str, Any], field: str, context: str) -> str:
    value = mapping.get(field)
    if value is None or value == "":
        raise ConfigLoadError(f"{context}: missing required field '{field}'.")
    if not isinstance(value, str):
        raise ConfigLoadError(f"{context}: field '{field}' must be a string.")
    return value


def _optional_string(mapping: Mapping[str, Any], field: str, context: str, default: str = "") -> str:
    value = mapping.get(field)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigLoadError(f"{context}: field '{field}' must be a string (quote it in YAML).")
    return value


def _require_int(
    mapping: Mapping[str, Any],
    field: str,
    context: str,
    default: int | None = None,
    minimum: int | None = None,
) -> int:
    value = mapping.get(field, default)
    if value is None:
        raise ConfigLoadError(f"{context}: missing required field '{field}'.")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigLoadError(f"{context}: field '{field}' must be an integer.")
    if minimum is not None and value < minimum:
        raise ConfigLoadError(f"{context}: field '{field}' must be >= {minimum}.")
    return value


def _validate_port(value: Any, context: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigLoadError(f"{context}: port must be an integer.")
    if value <= 0 or value > 65535:
        raise ConfigLoadError(f"{context}: port must be between 1 and 65535.")
    return value


def _string_list(mapping: Mapping[str, Any], field: str, context: str) -> tuple[str, ...]:
    value = mapping.get(field)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigLoadError(f"{context}: field '{field}' must be a list of strings.")
    return tuple(value)


def _load_list(path: Path, key: str, logger: logging.Logger) -> list[Mapping[str, Any]]:
    """Read ``path`` and return the list stored under ``key``."""

    if not path.exists():
        raise ConfigLoadError(f"Config file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as handle:
            raw_data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigLoadError(f"Unable to read config file: {path}") from exc

    if not isinstance(raw_data, Mapping):
        raise ConfigLoadError(f"{path.name}: top-level structure must be a mapping.")

    if key not in raw_data:
        raise ConfigLoadError(f"{path.name}: must contain a '{key}' list.")
    entries = raw_data.get(key) or []
    if not isinstance(entries, list):
        raise ConfigLoadError(f"{path.name}: field '{key}' must be a list.")

    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, Mapping):
            raise ConfigLoadError(f"{path.name}: {key} #{index} must be a mapping.")

    logger.info("config loaded path=%s entries=%d", path, len(entries))
    return entries


def _check_unique(names: Iterable[str], kind: str) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise ConfigLoadError(f"{kind} '{name}' is declared more than once.")
        seen.add(name)


def _parse_param(raw: Mapping[str, Any], context: str) -> Param:
    name = _require_string(raw, "name", context)
    value = raw.get("value")
    if value is None:
        raise ConfigLoadError(f"{context} '{name}': missing required field 'value'.")
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ConfigLoadError(f"{context} '{name}': value must be a string or integer.")
    return Param(name=name, value=str(value), note=_optional_string(raw, "note", context))


def _parse_task(raw: Mapping[str, Any], context: str) -> Task:
    name = _require_string(raw, "name", context)
    context = f"{context} '{name}'"
    return Task(
        name=name,
        start=_require_int(raw, "start", context, default=0),
        delay=_require_int(raw, "delay", context, minimum=1),
        expired=_require_int(raw, "expired", context, minimum=1),
        alert=_require_int(raw, "alert", context, default=0, minimum=0),
        note=_optional_string(raw, "note", context),
    )


def _parse_user(raw: Mapping[str, Any], context: str) -> User:
    login = _require_string(raw, "login", context)
    context = f"{context} '{login}'"
    return User(
        login=login,
        group=_require_string(raw, "group", context),
        password=_optional_string(raw, "password", context),
        address=_optional_string(raw, "address", context),
        comment=_optional_string(raw, "comment", context),
        alias=_optional_string(raw, "alias", context),
        key=_optional_string(raw, "key", context),
    )


def _parse_group(raw: Mapping[str, Any], context: str) -> Group:
    name = _require_string(raw, "name", context)
    context = f"{context} '{name}'"
    return Group(
        name=name,
        policy=_require_string(raw, "policy", context),
        skin=_optional_string(raw, "skin", context, default="default"),
        comment=_optional_string(raw, "comment", context),
    )


def load_on_event_script(scripts_dir: Path, script: str, logger: logging.Logger) -> str:
    """Return the body of ``script`` or an empty string when it is missing."""

    if not script:
        return ""

    path = scripts_dir / script
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        logger.warning('script "%s" does not exist path=%s', script, path)
        return ""


def _parse_schedule(
    raw: Mapping[str, Any], context: str, scripts_dir: Path, logger: logging.Logger
) -> Schedule:
    name = _require_string(raw, "name", context)
    context = f"{context} '{name}'"
    enabled = raw.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigLoadError(f"{context}: field 'enabled' must be a boolean.")

    script = _optional_string(raw, "script", context)
    return Schedule(
        name=name,
        enabled=enabled,
        start_date=_optional_string(raw, "start_date", context),
        start_time=_optional_string(raw, "start_time", context),
        interval=_optional_string(raw, "interval", context),
        policy=_optional_string(raw, "policy", context),
        comment=_optional_string(raw, "comment", context),
        script=script,
        alias=_optional_string(raw, "alias", context),
        on_event=load_on_event_script(scripts_dir, script, logger),
    )


def _parse_device(
    raw: Mapping[str, Any],
    context: str,
    tasks: tuple[Task, ...],
    users: tuple[User, ...],
    groups: tuple[Group, ...],
    schedules: tuple[Schedule, ...],
) -> Device:
    name = _require_string(raw, "name", context)
    context = f"{context} '{name}'"
    users_aliases = _string_list(raw, "users_aliases", context)
    schedules_aliases = _string_list(raw, "schedules_aliases", context)

    return Device(
        name=name,
        host=_require_string(raw, "host", context),
        login=_require_string(raw, "login", context),
        password=_require_string(raw, "password", context),
        task=find_task(tasks, _require_string(raw, "task", context)),
        port_api=_validate_port(raw.get("port_api"), f"{context} port_api", 8728),
        port_ssh=_validate_port(raw.get("port_ssh"), f"{context} port_ssh", 22),
        backup_folder=_optional_string(raw, "backup_folder", context),
        users_aliases=users_aliases,
        schedules_aliases=schedules_aliases,
        users_allowed=_string_list(raw, "users_allowed", context),
        users=tuple(user for user in users if user.alias in users_aliases),
        groups=groups,
        schedules=tuple(schedule for schedule in schedules if schedule.alias in schedules_aliases),
    )


def load_state(path: Path = DEFAULT_MAIN_CONFIG, logger: logging.Logger | None = None) -> DeclaredState:
    """Load ``main.yml`` and the inventory files it points to.

    Any problem is reported as :class:`ConfigLoadError`; the caller treats it
    as fatal.
    """

    logger = logger or logging.getLogger(__name__)
    path = Path(path)
    base_dir = path.resolve().parent

    params = tuple(
        _parse_param(raw, f"param #{index}")
        for index, raw in enumerate(_load_list(path, "params", logger), start=1)
    )
    _check_unique((param.name for param in params), "param")

    # Placeholder state used only for param lookups while the rest loads.
    lookup = DeclaredState(base_dir, params, (), (), (), (), ())
    try:
        for required in REQUIRED_PARAMS:
            lookup.param(required)
    except NotFoundError as exc:
        raise ConfigLoadError(f"{path.name}: {exc.args[0]}") from exc
    for name in INTEGER_PARAMS:
        lookup.param_int(name, 0)

    config_dir = lookup.param_path("dir_config")
    scripts_dir = lookup.param_path("dir_scripts")

    tasks = tuple(
        _parse_task(raw, f"task #{index}")
        for index, raw in enumerate(_load_list(config_dir / TASKS_FILE, "tasks", logger), start=1)
    )
    _check_unique((task.name for task in tasks), "task")

    users = tuple(
        _parse_user(raw, f"user #{index}")
        for index, raw in enumerate(_load_list(config_dir / USERS_FILE, "users", logger), start=1)
    )
    _check_unique((user.login for user in users), "user")

    groups = tuple(
        _parse_group(raw, f"group #{index}")
        for index, raw in enumerate(_load_list(config_dir / GROUPS_FILE, "groups", logger), start=1)
    )
    _check_unique((group.name for group in groups), "group")

    schedules = tuple(
        _parse_schedule(raw, f"schedule #{index}", scripts_dir, logger)
        for index, raw in enumerate(_load_list(config_dir / SCHEDULES_FILE, "schedules", logger), start=1)
    )
    _check_unique((schedule.name for schedule in schedules), "schedule")

    devices: list[Device] = []
    for index, raw in enumerate(_load_list(config_dir / DEVICES_FILE, "devices", logger), start=1):
        try:
            device = _parse_device(raw, f"device #{index}", tasks, users, groups, schedules)
        except NotFoundError as exc:
            raise ConfigLoadError(f"device #{index}: {exc.args[0]}") from exc
        devices.append(device)
        logger.debug(
            "device loaded host=%s users=%d groups=%d schedules=%d task=%s",
            device.host,
            len(device.users),
            len(device.groups),
            len(device.schedules),
            device.task.name,
            extra={"device": device.name},
        )
    _check_unique((device.name for device in devices), "device")

    return DeclaredState(
        base_dir=base_dir,
        params=params,
        tasks=tasks,
        users=users,
        groups=groups,
        schedules=schedules,
        devices=tuple(devices),
    )
