"""File transfer between a RouterOS device and local storage."""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import stat
from pathlib import Path

import paramiko

from routersync.core.storage import ensure_directory
from routersync.mikrotik.client import DeviceConnections, MikroTikTransferError

BACKUP_SUFFIX = ".backup"
EXPORT_SUFFIX = ".rsc"


def remote_path(path: str) -> str:
    """Return ``path`` in forward-slash form without a trailing slash."""

    normalized = path.replace("\\", "/")
    if not normalized:
        return normalized
    return posixpath.normpath(normalized)


class BackupTransfer:
    """SFTP-backed transfers and on-device backup/export for one device."""

    def __init__(self, connections: DeviceConnections, logger: logging.Logger) -> None:
        self._connections = connections
        self._logger = logger
        self._log_extra = {"device": connections.device.name}

    def download_folder(self, remote_dir: str, local_dir: Path, delete_after_copy: bool = False) -> list[Path]:
        """Mirror ``remote_dir`` into ``local_dir`` and return the local files written."""

        sftp = self._connections.sftp()
        remote_dir = remote_path(remote_dir)
        local_dir = Path(local_dir)
        try:
            entries = sftp.listdir_attr(remote_dir or ".")
        except (OSError, paramiko.SSHException) as exc:
            raise MikroTikTransferError(f"Unable to list remote directory '{remote_dir}'") from exc

        self._logger.debug("listing remote dir=%s entries=%d", remote_dir, len(entries), extra=self._log_extra)
        written: list[Path] = []
        for entry in entries:
            child = posixpath.join(remote_dir, entry.filename)
            if entry.st_mode is not None and stat.S_ISDIR(entry.st_mode):
                written.extend(self.download_folder(child, local_dir / entry.filename, delete_after_copy))
            else:
                written.append(self.download_file(child, local_dir, delete_after_copy))
        return written

    def download_file(self, remote_file: str, local_dir: Path, delete_after_copy: bool = False) -> Path:
        """Copy one remote file into ``local_dir``; remove the remote copy only afterwards."""

        sftp = self._connections.sftp()
        remote_file = remote_path(remote_file)
        target = Path(local_dir) / posixpath.basename(remote_file)
        self._logger.info("download file=%s path=%s delete=%s", remote_file, target, delete_after_copy, extra=self._log_extra)

        try:
            source = sftp.open(remote_file, "rb")
        except (OSError, paramiko.SSHException) as exc:
            raise MikroTikTransferError(f"Unable to open remote file '{remote_file}'") from exc

        handle = None
        try:
            try:
                ensure_directory(Path(local_dir))
                handle = target.open("wb")
                shutil.copyfileobj(source, handle)
                handle.flush()
                os.fsync(handle.fileno())
            finally:
                source.close()
            if delete_after_copy:
                self.remove_file(remote_file)
        except (OSError, paramiko.SSHException) as exc:
            raise MikroTikTransferError(f"Unable to download '{remote_file}' to {target}") from exc
        finally:
            if handle is not None:
                handle.close()
        return target

    def upload_file(self, local_file: Path, remote_file: str) -> None:
        sftp = self._connections.sftp()
        remote_file = remote_path(remote_file)
        self._logger.info("uploading file=%s path=%s", remote_file, local_file, extra=self._log_extra)
        try:
            with Path(local_file).open("rb") as source, sftp.open(remote_file, "wb") as destination:
                shutil.copyfileobj(source, destination)
        except (OSError, paramiko.SSHException) as exc:
            raise MikroTikTransferError(f"Unable to upload {local_file} to '{remote_file}'") from exc

    def make_dir(self, remote_dir: str) -> None:
        """Create ``remote_dir`` and any missing parents."""

        sftp = self._connections.sftp()
        path = remote_path(remote_dir)
        current = "/" if path.startswith("/") else ""
        for part in path.split("/"):
            if part in ("", "."):
                continue
            current = posixpath.join(current, part)
            try:
                sftp.stat(current)
                continue
            except FileNotFoundError:
                pass
            except (OSError, paramiko.SSHException) as exc:
                raise MikroTikTransferError(f"Unable to stat remote directory '{current}'") from exc
            self._logger.debug("creating remote dir=%s", current, extra=self._log_extra)
            try:
                sftp.mkdir(current)
            except (OSError, paramiko.SSHException) as exc:
                raise MikroTikTransferError(f"Unable to create remote directory '{current}'") from exc

    def remove_file(self, remote_file: str) -> None:
        sftp = self._connections.sftp()
        remote_file = remote_path(remote_file)
        try:
            sftp.remove(remote_file)
        except (OSError, paramiko.SSHException) as exc:
            raise MikroTikTransferError(f"Unable to remove remote file '{remote_file}'") from exc
        self._logger.debug("remote file removed file=%s", remote_file, extra=self._log_extra)

    def make_backup(self, path: str) -> str:
        """Save a binary system backup on the device and return its remote path."""

        path = self._prepare_artifact_path(path)
        self._logger.info("creating system-backup name=%s", path, extra=self._log_extra)
        self._connections.command("/system/backup/save", {"name": path})
        return path + BACKUP_SUFFIX

    def make_export(self, path: str) -> str:
        """Write a terse configuration export on the device and return its remote path."""

        path = self._prepare_artifact_path(path)
        self._logger.info("creating export file=%s", path, extra=self._log_extra)
        self._connections.command("/export", {"file": path}, flags=("terse",))
        return path + EXPORT_SUFFIX

    def _prepare_artifact_path(self, path: str) -> str:
        path = remote_path(path)
        directory = posixpath.dirname(path)
        if directory:
            self.make_dir(directory)
        return path
