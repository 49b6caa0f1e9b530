"""Per-device reconciliation-and-backup loop."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from routersync.core.config import DeclaredState
from routersync.core.models import Device
from routersync.core.passwords import DEFAULT_LENGTH
from routersync.core.storage import resolve_backup_dir
from routersync.mikrotik.client import DEFAULT_TIMEOUT, DeviceConnections, OperationCancelled
from routersync.mikrotik.keys import DEFAULT_ATTEMPTS, DEFAULT_DELAY, KeyImporter
from routersync.mikrotik.reconcile import Reconciler
from routersync.mikrotik.transfer import BackupTransfer


def next_scheduled_instant(now: float, start: int, delay: int) -> int:
    """Return the first ``start + k * delay`` boundary after ``now``.

    A ``now`` sitting exactly on a boundary maps to the following one, so a
    cycle that ends on a boundary does not start again immediately.
    """

    if delay <= 0:
        raise ValueError("delay must be positive")
    return int((now - start) // delay + 1) * delay + start


def _format_instant(instant: float) -> str:
    return datetime.fromtimestamp(instant, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class DeviceScheduler:
    """Drive one device's cycle forever, until ``stop_event`` is set.

    The scheduler is the sole owner of the device's sessions; it must run
    in exactly one thread.
    """

    def __init__(
        self,
        device: Device,
        state: DeclaredState,
        logger: logging.Logger,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.time,
        connections: DeviceConnections | None = None,
    ) -> None:
        self.device = device
        self._logger = logger
        self._log_extra = {"device": device.name}
        self._stop_event = stop_event or threading.Event()
        self._clock = clock

        self.connections = connections or DeviceConnections(
            device, logger, timeout=float(state.param_int("timeout", int(DEFAULT_TIMEOUT)))
        )
        self.transfer = BackupTransfer(self.connections, logger)
        self.key_importer = KeyImporter(
            self.connections,
            logger,
            attempts=state.param_int("key_import_attempts", DEFAULT_ATTEMPTS),
            delay=float(state.param_int("key_import_delay", int(DEFAULT_DELAY))),
            stop_event=self._stop_event,
        )
        self.reconciler = Reconciler(
            self.connections,
            self.transfer,
            self.key_importer,
            logger,
            keys_dir=state.param_path("dir_ssh_keys"),
            password_length=state.param_int("password_length", DEFAULT_LENGTH),
        )
        self.backup_dir = resolve_backup_dir(state.base_dir, state.param("dir_backup").value, device)
        self.last_seen: float | None = None
        self._started = clock()

    def backup(self) -> list[Path]:
        """Move the device backup folder into the local backup directory."""

        if not self.device.backup_folder:
            self._logger.info("backup folder not declared, skipping download", extra=self._log_extra)
            return []
        return self.transfer.download_folder(self.device.backup_folder, self.backup_dir, delete_after_copy=True)

    def steps(self) -> list[tuple[str, Callable[[], object]]]:
        reconciler = self.reconciler
        return [
            ("cleaning users", reconciler.clean_users),
            ("cleaning groups", reconciler.clean_groups),
            ("cleaning schedules", reconciler.clean_schedules),
            ("adding groups", reconciler.add_groups),
            ("adding users", reconciler.add_users),
            ("adding backup folder", reconciler.make_backup_folder),
            ("adding schedules", reconciler.add_schedules),
            ("backup directory", self.backup),
        ]

    def run_cycle(self) -> bool:
        """Run every step in order; return ``False`` on the first failure.

        Sessions are disconnected at the end of every cycle, successful or not.
        """

        try:
            for label, step in self.steps():
                self._logger.info("sequence for %s", label, extra=self._log_extra)
                step()
        except OperationCancelled:
            self._logger.info("cycle cancelled by stop request", extra=self._log_extra)
            return False
        except Exception:
            self._logger.exception("manager error, cycle aborted", extra=self._log_extra)
            return False
        finally:
            self.connections.disconnect()

        self.last_seen = self._clock()
        return True

    def next_run(self, succeeded: bool, now: float) -> float:
        task = self.device.task
        if succeeded:
            return next_scheduled_instant(now, task.start, task.delay)
        return now + task.expired

    def check_alert(self, now: float) -> bool:
        """Warn when the device has been failing for at least ``task.alert`` seconds."""

        alert = self.device.task.alert
        if alert <= 0:
            return False
        since = self.last_seen if self.last_seen is not None else self._started
        if now - since < alert:
            return False
        self._logger.warning(
            "device unreachable since=%s seconds=%d threshold=%d",
            _format_instant(since),
            int(now - since),
            alert,
            extra=self._log_extra,
        )
        return True

    def run_forever(self) -> None:
        self._logger.info("scheduler started task=%s", self.device.task.name, extra=self._log_extra)
        while not self._stop_event.is_set():
            succeeded = self.run_cycle()
            now = self._clock()
            if not succeeded and not self._stop_event.is_set():
                self.check_alert(now)
            wake = self.next_run(succeeded, now)
            self._logger.info(
                "next run at=%s in=%ds", _format_instant(wake), int(max(0.0, wake - now)), extra=self._log_extra
            )
            if self._stop_event.wait(max(0.0, wake - now)):
                break
        self._logger.info("scheduler stopped", extra=self._log_extra)
