"""Per-device RouterOS sessions: API, SSH and SFTP over SSH."""

from __future__ import annotations

import logging
import socket
from typing import Any, Iterable, Mapping

import paramiko
from librouteros import connect as routeros_connect
from librouteros.api import Api
from librouteros.exceptions import LibRouterosError, TrapError

from routersync.core.models import Device

DEFAULT_TIMEOUT = 10.0


class MikroTikClientError(RuntimeError):
    """Base exception for MikroTik client errors."""


class MikroTikConnectionError(MikroTikClientError):
    """Raised when a session cannot be dialed."""


class MikroTikAuthenticationError(MikroTikConnectionError):
    """Raised when the device rejects the credentials."""


class MikroTikCommandError(MikroTikClientError):
    """Raised when an API command is rejected or fails mid-call."""


class MikroTikTransferError(MikroTikClientError):
    """Raised when a file operation over SFTP or on local disk fails."""


class RetryExhaustedError(MikroTikClientError):
    """Raised when a bounded retry budget is consumed without success."""


class OperationCancelled(MikroTikClientError):
    """Raised when a stop request interrupts a wait."""


class DeviceConnections:
    """Lazily created, cached sessions owned by one device thread.

    Each handle is either ``None`` (unconnected) or a live session. The SFTP
    session is layered on the SSH transport, so it is always opened after
    and closed before SSH.
    """

    def __init__(self, device: Device, logger: logging.Logger, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.device = device
        self.timeout = timeout
        self._logger = logger
        self._log_extra = {"device": device.name}
        self._api: Api | None = None
        self._ssh: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None

    @property
    def connected(self) -> dict[str, bool]:
        return {"api": self._api is not None, "sftp": self._sftp is not None, "ssh": self._ssh is not None}

    def api(self) -> Api:
        if self._api is None:
            device = self.device
            self._logger.info("connection via API host=%s port=%s", device.host, device.port_api, extra=self._log_extra)
            try:
                self._api = routeros_connect(
                    host=device.host,
                    username=device.login,
                    password=device.password,
                    port=device.port_api,
                    timeout=self.timeout,
                    encoding="utf-8",
                )
            except TrapError as exc:
                raise MikroTikAuthenticationError(f"API login rejected: {exc}") from exc
            except (LibRouterosError, OSError) as exc:
                raise MikroTikConnectionError(f"API connection failed: {exc}") from exc
        return self._api

    def ssh(self) -> paramiko.SSHClient:
        if self._ssh is None:
            device = self.device
            self._logger.info("connection via SSH host=%s port=%s", device.host, device.port_ssh, extra=self._log_extra)
            ssh = paramiko.SSHClient()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                ssh.connect(
                    device.host,
                    port=device.port_ssh,
                    username=device.login,
                    password=device.password,
                    look_for_keys=False,
                    allow_agent=False,
                    timeout=self.timeout,
                    banner_timeout=self.timeout,
                    auth_timeout=self.timeout,
                )
            except paramiko.AuthenticationException as exc:
                ssh.close()
                raise MikroTikAuthenticationError("SSH authentication failed") from exc
            except (paramiko.SSHException, socket.error, TimeoutError) as exc:
                ssh.close()
                raise MikroTikConnectionError("SSH connection failed") from exc
            self._ssh = ssh
        return self._ssh

    def sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            ssh = self.ssh()
            self._logger.info("connection via SFTP host=%s", self.device.host, extra=self._log_extra)
            try:
                sftp = ssh.open_sftp()
            except (paramiko.SSHException, OSError) as exc:
                raise MikroTikConnectionError("Unable to open SFTP session") from exc
            channel = sftp.get_channel()
            if channel is not None:
                channel.settimeout(self.timeout)
            self._sftp = sftp
        return self._sftp

    def command(
        self, path: str, attributes: Mapping[str, Any] | None = None, flags: Iterable[str] = ()
    ) -> list[dict[str, Any]]:
        """Run one API sentence and return its replies.

        ``attributes`` become ``=key=value`` words, ``flags`` become ``=flag``.
        """

        api = self.api()
        words = [f"={key}={value}" for key, value in (attributes or {}).items()]
        words.extend(f"={flag}" for flag in flags)
        self._logger.debug("executing api command='%s' words=%d", path, len(words), extra=self._log_extra)
        try:
            return list(api.rawCmd(path, *words))
        except (LibRouterosError, OSError) as exc:
            raise MikroTikCommandError(f"{path}: {exc}") from exc

    def disconnect(self) -> None:
        """Close every open session, api -> sftp -> ssh, without raising."""

        if self._api is not None:
            self._logger.info("disconnection via API", extra=self._log_extra)
            self._close(self._api, "API")
            self._api = None
        if self._sftp is not None:
            self._logger.info("disconnection via SFTP", extra=self._log_extra)
            self._close(self._sftp, "SFTP")
            self._sftp = None
        if self._ssh is not None:
            self._logger.info("disconnection via SSH", extra=self._log_extra)
            self._close(self._ssh, "SSH")
            self._ssh = None

    def _close(self, session: Any, kind: str) -> None:
        try:
            session.close()
        except (LibRouterosError, paramiko.SSHException, OSError) as exc:
            # Handle is dropped either way; the next acquire dials afresh.
            self._logger.warning("close failed session=%s error=%s", kind, exc, extra=self._log_extra)
