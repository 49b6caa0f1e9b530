"""In-memory stand-ins for the RouterOS API and SFTP sessions used by tests."""

import io
import posixpath
import stat
import sys
from pathlib import Path
from types import SimpleNamespace

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from routersync.core.config import DeclaredState  # noqa: E402
from routersync.core.models import Device, Group, Param, Schedule, Task, User  # noqa: E402
from routersync.mikrotik.client import MikroTikCommandError, MikroTikConnectionError  # noqa: E402

HOURLY = Task(name="hourly", start=0, delay=3600, expired=300, alert=0)


def make_device(**overrides) -> Device:
    values = {
        "name": "r1",
        "host": "192.0.2.1",
        "login": "admin",
        "password": "secret",
        "task": HOURLY,
        "backup_folder": "flash/backup",
        "users_aliases": ("noc",),
        "schedules_aliases": ("backup",),
        "users_allowed": ("monitoring",),
        "users": (User(login="alice", group="noc", password="pw", alias="noc"),),
        "groups": (Group(name="noc", policy="read,write"), Group(name="backup", policy="ftp,read")),
        "schedules": (Schedule(name="nightly", interval="1d", alias="backup", on_event=":log info x"),),
    }
    values.update(overrides)
    return Device(**values)


def make_state(base_dir: Path, devices=(), extra_params=()) -> DeclaredState:
    params = (
        Param("dir_config", "mikrotik"),
        Param("dir_backup", "backups/{host.name}"),
        Param("dir_ssh_keys", "keys"),
        Param("dir_scripts", "scripts"),
        Param("key_import_delay", "0"),
        *extra_params,
    )
    return DeclaredState(
        base_dir=Path(base_dir),
        params=params,
        tasks=(HOURLY,),
        users=(),
        groups=(),
        schedules=(),
        devices=tuple(devices),
    )


class _RemoteWriter(io.BytesIO):
    def __init__(self, sftp: "FakeSFTP", path: str) -> None:
        super().__init__()
        self._sftp = sftp
        self._path = path

    def close(self) -> None:
        if not self.closed:
            self._sftp.files[self._path] = self.getvalue()
        super().close()


class FakeSFTP:
    """Tiny SFTP server: ``files`` maps remote path to bytes, ``dirs`` holds directories."""

    def __init__(self, files=None, dirs=()) -> None:
        self.files: dict[str, bytes] = dict(files or {})
        self.dirs: set[str] = set(dirs)
        for path in self.files:
            parent = posixpath.dirname(path)
            while parent:
                self.dirs.add(parent)
                parent = posixpath.dirname(parent)
        self.removed: list[str] = []
        self.fail_remove = False

    def listdir_attr(self, path: str):
        if path not in self.dirs and path != ".":
            raise FileNotFoundError(2, "No such file", path)
        prefix = "" if path == "." else path + "/"
        entries = []
        for directory in sorted(self.dirs):
            if directory.startswith(prefix) and "/" not in directory[len(prefix):] and directory != path:
                entries.append(SimpleNamespace(filename=directory[len(prefix):], st_mode=stat.S_IFDIR | 0o755))
        for file_path in sorted(self.files):
            if file_path.startswith(prefix) and "/" not in file_path[len(prefix):]:
                entries.append(SimpleNamespace(filename=file_path[len(prefix):], st_mode=stat.S_IFREG | 0o644))
        return entries

    def open(self, path: str, mode: str = "r"):
        if "w" in mode:
            return _RemoteWriter(self, path)
        if path not in self.files:
            raise FileNotFoundError(2, "No such file", path)
        return io.BytesIO(self.files[path])

    def remove(self, path: str) -> None:
        if self.fail_remove:
            raise PermissionError(13, "Permission denied", path)
        if path not in self.files:
            raise FileNotFoundError(2, "No such file", path)
        del self.files[path]
        self.removed.append(path)

    def stat(self, path: str):
        if path in self.dirs:
            return SimpleNamespace(st_mode=stat.S_IFDIR | 0o755)
        if path in self.files:
            return SimpleNamespace(st_mode=stat.S_IFREG | 0o644, st_size=len(self.files[path]))
        raise FileNotFoundError(2, "No such file", path)

    def mkdir(self, path: str) -> None:
        self.dirs.add(path)


class FakeConnections:
    """Replaces ``DeviceConnections`` with a scripted RouterOS device.

    ``live`` maps a menu path (``/user``, ``/user/group``, ``/system/scheduler``)
    to the names present on the device. Every command is recorded in
    ``commands`` as ``(path, attributes, flags)``.
    """

    MUTATIONS = ("/add", "/remove", "/save", "/import")

    def __init__(self, device: Device, live=None, sftp: FakeSFTP | None = None) -> None:
        self.device = device
        self.live: dict[str, list[str]] = {
            "/user": [],
            "/user/group": [],
            "/system/scheduler": [],
        }
        self.live.update({key: list(value) for key, value in (live or {}).items()})
        self._sftp = sftp or FakeSFTP()
        self.commands: list[tuple[str, dict, tuple]] = []
        self.fail_dial = False
        self.fail_paths: dict[str, int] = {}
        self.disconnects = 0
        self._ids: dict[str, str] = {}

    def entry_id(self, name: str) -> str:
        """Stable RouterOS-style ``.id`` for a live name."""

        return self._ids.setdefault(name, f"*{len(self._ids) + 1:X}")

    @property
    def mutations(self) -> list[tuple[str, dict, tuple]]:
        return [entry for entry in self.commands if entry[0].endswith(self.MUTATIONS) or entry[0] == "/export"]

    def sftp(self) -> FakeSFTP:
        if self.fail_dial:
            raise MikroTikConnectionError("SSH connection failed")
        return self._sftp

    def command(self, path, attributes=None, flags=()):
        if self.fail_dial:
            raise MikroTikConnectionError("API connection failed")
        attributes = dict(attributes or {})
        self.commands.append((path, attributes, tuple(flags)))

        remaining = self.fail_paths.get(path, 0)
        if remaining:
            self.fail_paths[path] = remaining - 1
            raise MikroTikCommandError(f"{path}: failure")

        menu, _, verb = path.rpartition("/")
        if verb == "print" and menu in self.live:
            return [{".id": self.entry_id(name), "name": name} for name in self.live[menu]]
        if verb == "add" and menu in self.live:
            if attributes["name"] in self.live[menu]:
                raise MikroTikCommandError(f"{path}: failure: already have such name")
            self.live[menu].append(attributes["name"])
        elif verb == "remove" and menu in self.live:
            by_id = {self.entry_id(name): name for name in self.live[menu]}
            self.live[menu].remove(by_id.get(attributes["numbers"], attributes["numbers"]))
        return []

    def disconnect(self) -> None:
        self.disconnects += 1
