"""Convergence of RouterOS users, groups and scheduler entries."""

from __future__ import annotations

import logging
import posixpath
from pathlib import Path
from typing import Any, Iterable

from librouteros.protocol import parse_word

from routersync.core.models import Group, Schedule, User
from routersync.core.passwords import DEFAULT_LENGTH, generate_password
from routersync.mikrotik.client import DeviceConnections
from routersync.mikrotik.keys import KeyImporter
from routersync.mikrotik.transfer import BackupTransfer, remote_path

USER_PATH = "/user"
GROUP_PATH = "/user/group"
SCHEDULER_PATH = "/system/scheduler"


def _present(attributes: dict[str, str]) -> dict[str, str]:
    """Drop empty attributes so RouterOS applies its own defaults."""

    return {key: value for key, value in attributes.items() if value != ""}


def _name_key(value: Any) -> str:
    """Return a name in the form librouteros hands it back.

    Replies are cast word by word, so a live entry called ``yes`` arrives as
    ``True`` and ``007`` as ``7``. Declared names go through the same cast.
    """

    if isinstance(value, str):
        value = parse_word(f"=name={value}")[1]
    return str(value)


class Reconciler:
    """Diff declared against live state on one device and apply the changes.

    ``clean_*`` removes live entries that are not declared (for users: not
    allowed), ``add_*`` creates declared entries that are not live. Errors
    propagate; whatever was applied before the failure stays applied.
    """

    def __init__(
        self,
        connections: DeviceConnections,
        transfer: BackupTransfer,
        key_importer: KeyImporter,
        logger: logging.Logger,
        keys_dir: Path,
        password_length: int = DEFAULT_LENGTH,
    ) -> None:
        self.device = connections.device
        self._connections = connections
        self._transfer = transfer
        self._key_importer = key_importer
        self._logger = logger
        self._keys_dir = Path(keys_dir)
        self._password_length = password_length
        self._log_extra = {"device": self.device.name}

    def _print(self, path: str) -> list[dict[str, Any]]:
        return self._connections.command(f"{path}/print")

    def _live(self, path: str) -> dict[str, str]:
        """Map each live name to the value ``remove`` addresses it by."""

        live: dict[str, str] = {}
        for entry in self._print(path):
            name = entry.get("name", "")
            # A cast name no longer spells the original word; fall back to the id.
            live[_name_key(name)] = name if isinstance(name, str) else str(entry.get(".id", name))
        return live

    def live_users(self) -> list[str]:
        return list(self._live(USER_PATH))

    def live_groups(self) -> list[str]:
        return list(self._live(GROUP_PATH))

    def live_schedules(self) -> list[str]:
        return list(self._live(SCHEDULER_PATH))

    def _clean(self, path: str, kind: str, keep: Iterable[str]) -> list[str]:
        keep = {_name_key(name) for name in keep}
        removed: list[str] = []
        for name, target in self._live(path).items():
            if name in keep:
                continue
            self._logger.info("delete %s name=%s", kind, name, extra=self._log_extra)
            self._connections.command(f"{path}/remove", {"numbers": target})
            removed.append(name)
        return removed

    def clean_users(self) -> list[str]:
        return self._clean(USER_PATH, "user", self.device.allowed_logins())

    def clean_groups(self) -> list[str]:
        return self._clean(GROUP_PATH, "group", (group.name for group in self.device.groups))

    def clean_schedules(self) -> list[str]:
        return self._clean(SCHEDULER_PATH, "schedule", (schedule.name for schedule in self.device.schedules))

    def add_groups(self) -> list[str]:
        added: list[str] = []
        for group in self.device.groups:
            if _name_key(group.name) in self.live_groups():
                self._logger.info("host already contains group name=%s", group.name, extra=self._log_extra)
                continue
            self.make_group(group)
            added.append(group.name)
        return added

    def add_users(self) -> list[str]:
        added: list[str] = []
        for user in self.device.users:
            if _name_key(user.login) in self.live_users():
                self._logger.info("host already contains user login=%s", user.login, extra=self._log_extra)
                continue
            self.make_user(user)
            added.append(user.login)
            if user.key:
                self.upload_key(user)
                self._key_importer.import_key(user)
        return added

    def add_schedules(self) -> list[str]:
        added: list[str] = []
        for schedule in self.device.schedules:
            if _name_key(schedule.name) in self.live_schedules():
                self._logger.info("host already contains schedule name=%s", schedule.name, extra=self._log_extra)
                continue
            self.make_schedule(schedule)
            added.append(schedule.name)
        return added

    def make_group(self, group: Group) -> None:
        self._logger.info("adding group name=%s", group.name, extra=self._log_extra)
        self._connections.command(
            f"{GROUP_PATH}/add",
            _present({"name": group.name, "skin": group.skin, "comment": group.comment, "policy": group.policy}),
        )

    def make_user(self, user: User) -> None:
        self._logger.info("adding user login=%s", user.login, extra=self._log_extra)
        password = user.password
        if not password:
            password = generate_password(self._password_length)
            self._logger.info("password is empty and has been generated login=%s", user.login, extra=self._log_extra)
        self._connections.command(
            f"{USER_PATH}/add",
            _present({
                "name": user.login,
                "password": password,
                "group": user.group,
                "address": user.address,
                "comment": user.comment,
                "disabled": "no",
            }),
        )

    def make_schedule(self, schedule: Schedule) -> None:
        self._logger.info("adding schedule name=%s", schedule.name, extra=self._log_extra)
        self._connections.command(
            f"{SCHEDULER_PATH}/add",
            _present({
                "name": schedule.name,
                "disabled": "no" if schedule.enabled else "yes",
                "start-date": schedule.start_date,
                "start-time": schedule.start_time,
                "interval": schedule.interval,
                "policy": schedule.policy,
                "comment": schedule.comment,
                "on-event": schedule.on_event,
            }),
        )

    def upload_key(self, user: User) -> str:
        """Copy the user's public key to the same relative path on the device."""

        remote_key = remote_path(user.key)
        folder = posixpath.dirname(remote_key)
        if folder:
            self._transfer.make_dir(folder)
        self._transfer.upload_file(self._keys_dir / user.key, remote_key)
        return remote_key

    def make_backup_folder(self) -> None:
        if self.device.backup_folder:
            self._transfer.make_dir(self.device.backup_folder)
