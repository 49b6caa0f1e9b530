import logging
import shutil
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from support import ROOT_DIR

from routersync.core.config import ConfigLoadError, NotFoundError, load_state
from routersync.core.storage import render_backup_dir, resolve_backup_dir

EXAMPLE_DIR = ROOT_DIR / "config" / "example"


class ExampleConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.state = load_state(EXAMPLE_DIR / "main.yml", logging.getLogger("config.test"))

    def test_devices_receive_filtered_declared_state(self) -> None:
        (device,) = self.state.devices

        self.assertEqual("core-r1", device.name)
        self.assertEqual("hourly", device.task.name)
        self.assertEqual(["alice", "collector"], [user.login for user in device.users])
        self.assertEqual(["noc", "backup"], [group.name for group in device.groups])
        self.assertEqual(["nightly-backup"], [schedule.name for schedule in device.schedules])
        self.assertEqual(("admin", "monitoring", "alice", "collector"), device.allowed_logins())

    def test_on_event_script_is_resolved(self) -> None:
        (schedule,) = self.state.schedules
        self.assertIn("/system backup save", schedule.on_event)
        self.assertTrue(schedule.enabled)
        self.assertEqual("03:00:00", schedule.start_time)

    def test_params(self) -> None:
        self.assertEqual(EXAMPLE_DIR / "keys", self.state.param_path("dir_ssh_keys"))
        self.assertEqual(10, self.state.param_int("key_import_attempts", 1))
        self.assertEqual(7, self.state.param_int("not_declared", 7))
        with self.assertRaises(NotFoundError):
            self.state.param("not_declared")
        with self.assertRaises(NotFoundError):
            self.state.task("weekly")

    def test_backup_dir_template(self) -> None:
        (device,) = self.state.devices
        self.assertEqual("b/core-r1/192.0.2.1", render_backup_dir("b/{host.name}/{host.ip}", device))
        self.assertEqual(
            EXAMPLE_DIR / "b" / "core-r1", resolve_backup_dir(EXAMPLE_DIR, "b/{host.name}", device)
        )


class InvalidConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = TemporaryDirectory()
        self.root = Path(self._tmpdir.name) / "config"
        shutil.copytree(EXAMPLE_DIR, self.root)
        self.logger = logging.getLogger("config.test")

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def _write(self, relative: str, content: str) -> None:
        (self.root / relative).write_text(content, encoding="utf-8")

    def test_missing_main_file(self) -> None:
        with self.assertRaises(ConfigLoadError):
            load_state(self.root / "absent.yml", self.logger)

    def test_missing_required_param(self) -> None:
        self._write("main.yml", "params:\n  - name: dir_config\n    value: mikrotik\n")
        with self.assertRaisesRegex(ConfigLoadError, "dir_backup"):
            load_state(self.root / "main.yml", self.logger)

    def test_non_integer_tunable_rejected(self) -> None:
        main = (self.root / "main.yml").read_text(encoding="utf-8")
        self._write("main.yml", main.replace("value: 64", "value: long"))
        with self.assertRaisesRegex(ConfigLoadError, "password_length"):
            load_state(self.root / "main.yml", self.logger)

    def test_unknown_task_reference(self) -> None:
        devices = (self.root / "mikrotik" / "devices.yml").read_text(encoding="utf-8")
        self._write("mikrotik/devices.yml", devices.replace("task: hourly", "task: weekly"))
        with self.assertRaisesRegex(ConfigLoadError, "weekly"):
            load_state(self.root / "main.yml", self.logger)

    def test_invalid_port(self) -> None:
        devices = (self.root / "mikrotik" / "devices.yml").read_text(encoding="utf-8")
        self._write("mikrotik/devices.yml", devices.replace("port_api: 8728", "port_api: 70000"))
        with self.assertRaisesRegex(ConfigLoadError, "port"):
            load_state(self.root / "main.yml", self.logger)

    def test_zero_delay_rejected(self) -> None:
        self._write("mikrotik/tasks.yml", "tasks:\n  - name: hourly\n    delay: 0\n    expired: 60\n")
        with self.assertRaisesRegex(ConfigLoadError, "delay"):
            load_state(self.root / "main.yml", self.logger)

    def test_duplicate_user_rejected(self) -> None:
        self._write(
            "mikrotik/users.yml",
            "users:\n  - {login: bob, group: noc}\n  - {login: bob, group: backup}\n",
        )
        with self.assertRaisesRegex(ConfigLoadError, "bob"):
            load_state(self.root / "main.yml", self.logger)

    def test_malformed_yaml(self) -> None:
        self._write("mikrotik/groups.yml", "groups: [unclosed\n")
        with self.assertRaises(ConfigLoadError):
            load_state(self.root / "main.yml", self.logger)

    def test_missing_script_is_a_warning(self) -> None:
        (self.root / "scripts" / "nightly-backup.rsc").unlink()

        with self.assertLogs(self.logger, level="WARNING") as captured:
            state = load_state(self.root / "main.yml", self.logger)

        self.assertEqual("", state.schedules[0].on_event)
        self.assertIn("nightly-backup.rsc", captured.output[0])

    def test_empty_user_list_is_allowed(self) -> None:
        self._write("mikrotik/users.yml", "users: []\n")
        state = load_state(self.root / "main.yml", self.logger)
        self.assertEqual((), state.devices[0].users)


class AliasFilterTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = TemporaryDirectory()
        self.root = Path(self._tmpdir.name) / "config"
        shutil.copytree(EXAMPLE_DIR, self.root)
        inventory = self.root / "mikrotik"
        with (inventory / "users.yml").open("a", encoding="utf-8") as handle:
            handle.write("  - login: guest\n    group: backup\n    password: pw\n    alias: lab\n")
        with (inventory / "schedules.yml").open("a", encoding="utf-8") as handle:
            handle.write("  - name: lab-reboot\n    interval: \"7d\"\n    alias: lab\n")
        with (inventory / "devices.yml").open("a", encoding="utf-8") as handle:
            handle.write(
                "  - name: lab-r2\n    host: 192.0.2.2\n    login: admin\n    password: lab\n"
                "    task: hourly\n    users_aliases: [lab]\n    schedules_aliases: [lab]\n"
            )
        self.state = load_state(self.root / "main.yml", logging.getLogger("config.test"))

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_entries_outside_device_aliases_are_left_out(self) -> None:
        core, lab = self.state.devices

        self.assertEqual(["alice", "collector"], [user.login for user in core.users])
        self.assertEqual(["nightly-backup"], [schedule.name for schedule in core.schedules])
        self.assertNotIn("guest", core.allowed_logins())

        self.assertEqual(["guest"], [user.login for user in lab.users])
        self.assertEqual(["lab-reboot"], [schedule.name for schedule in lab.schedules])
        self.assertEqual(("admin", "guest"), lab.allowed_logins())

    def test_groups_apply_to_every_device(self) -> None:
        for device in self.state.devices:
            self.assertEqual(["noc", "backup"], [group.name for group in device.groups])


if __name__ == "__main__":
    unittest.main()
