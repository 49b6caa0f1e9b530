"""Data models for the declared state."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Param:
    """Global key/value parameter."""

    name: str
    value: str
    note: str = ""


@dataclass(frozen=True, slots=True)
class Task:
    """Interval policy shared by devices.

    ``start`` is the epoch anchor, ``delay`` the period, ``expired`` the
    back-off after a failed cycle and ``alert`` the unreachable threshold,
    all in seconds.
    """

    name: str
    start: int
    delay: int
    expired: int
    alert: int = 0
    note: str = ""


@dataclass(frozen=True, slots=True)
class User:
    """Local RouterOS account."""

    login: str
    group: str
    password: str = ""
    address: str = ""
    comment: str = ""
    alias: str = ""
    key: str = ""


@dataclass(frozen=True, slots=True)
class Group:
    """RouterOS permission group."""

    name: str
    policy: str
    skin: str = "default"
    comment: str = ""


@dataclass(frozen=True, slots=True)
class Schedule:
    """RouterOS scheduler entry."""

    name: str
    enabled: bool = True
    start_date: str = ""
    start_time: str = ""
    interval: str = ""
    policy: str = ""
    comment: str = ""
    script: str = ""
    alias: str = ""
    on_event: str = ""


@dataclass(frozen=True, slots=True)
class Device:
    """Managed RouterOS device with its resolved declared subset."""

    name: str
    host: str
    login: str
    password: str
    task: Task
    port_api: int = 8728
    port_ssh: int = 22
    backup_folder: str = ""
    users_aliases: tuple[str, ...] = ()
    schedules_aliases: tuple[str, ...] = ()
    users_allowed: tuple[str, ...] = ()
    users: tuple[User, ...] = ()
    groups: tuple[Group, ...] = ()
    schedules: tuple[Schedule, ...] = ()

    def allowed_logins(self) -> tuple[str, ...]:
        """Logins that survive user clean-up: admin, extra allowed, declared."""

        return (self.login, *self.users_allowed, *(user.login for user in self.users))
