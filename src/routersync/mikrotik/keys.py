"""Import of uploaded SSH public keys into RouterOS accounts."""

from __future__ import annotations

import logging
import threading

from routersync.core.models import User
from routersync.mikrotik.client import (
    DeviceConnections,
    MikroTikCommandError,
    OperationCancelled,
    RetryExhaustedError,
)
from routersync.mikrotik.transfer import remote_path

DEFAULT_ATTEMPTS = 10
DEFAULT_DELAY = 5.0


class KeyImporter:
    """Bounded, constant-delay retry of ``/user/ssh-keys/import``.

    RouterOS may not see a freshly uploaded file for a few seconds, so every
    attempt waits ``delay`` seconds first. The wait is a ``stop_event`` wait,
    so a shutdown request ends it early.
    """

    def __init__(
        self,
        connections: DeviceConnections,
        logger: logging.Logger,
        attempts: int = DEFAULT_ATTEMPTS,
        delay: float = DEFAULT_DELAY,
        stop_event: threading.Event | None = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self._connections = connections
        self._logger = logger
        self.attempts = attempts
        self.delay = delay
        self._stop_event = stop_event or threading.Event()
        self._log_extra = {"device": connections.device.name}

    def import_key(self, user: User) -> None:
        self._logger.info("try import key=%s login=%s", user.key, user.login, extra=self._log_extra)
        for attempt in range(1, self.attempts + 1):
            if self._stop_event.wait(self.delay):
                raise OperationCancelled(f"key import for '{user.login}' cancelled")
            try:
                self._connections.command(
                    "/user/ssh-keys/import", {"public-key-file": remote_path(user.key), "user": user.login}
                )
            except MikroTikCommandError as exc:
                self._logger.warning(
                    "key import failed login=%s attempt=%d/%d error=%s",
                    user.login,
                    attempt,
                    self.attempts,
                    exc,
                    extra=self._log_extra,
                )
                continue
            self._logger.info("key imported key=%s login=%s", user.key, user.login, extra=self._log_extra)
            return

        raise RetryExhaustedError(
            f"key import for '{user.login}' failed after {self.attempts} attempts"
        )
