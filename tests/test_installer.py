"""Tests for factoryvm.installer module."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pexpect
import pytest

from factoryvm.exceptions import ConsoleCancelled, ConsoleClosed, ConsoleTimeout
from factoryvm.installer import (
    COMPLETE,
    INSTALL_TABLE,
    ConsoleRule,
    InstallerDriver,
    PexpectConsole,
)


class TestInstallTable:
    def test_every_next_state_is_declared(self):
        for rules in INSTALL_TABLE.values():
            for rule in rules:
                assert rule.next_state == COMPLETE or rule.next_state in INSTALL_TABLE

    def test_password_prompts_are_secret(self):
        secret_rules = {rule.name for rules in INSTALL_TABLE.values() for rule in rules if rule.secret}
        assert secret_rules == {"root-password", "root-password-confirm"}

    def test_callable_reply_renders_answers(self, answers):
        rule = ConsoleRule("hostname", r"Enter system hostname", lambda a: a.hostname, "interfaces")
        assert rule.render(answers) == "factory.local"
        assert ConsoleRule("proxy", "x", "none", "ntp").render(answers) == "none"

    def test_answers_repr_hides_password(self, answers):
        assert answers.root_password not in repr(answers)


class TestInstallerDriver:
    def test_recorded_session_completes(self, replay_console, answers):
        console = replay_console("alpine-install.transcript")
        with patch("factoryvm.installer.log"):
            result = InstallerDriver(console, answers, prompt_timeout=5).run()
        assert result.completed
        assert result.state == COMPLETE
        assert result.powered_off
        assert console.sent[:3] == ["root", "setup-alpine", "us"]
        assert "factory.local" in console.sent
        assert console.sent.count(answers.root_password) == 2
        assert answers.ssh_public_key in console.sent
        assert console.sent[-1] == "poweroff"

    def test_disk_answers_in_order(self, replay_console, answers):
        console = replay_console("alpine-install.transcript")
        with patch("factoryvm.installer.log"):
            InstallerDriver(console, answers, prompt_timeout=5).run()
        disk_index = console.sent.index("vda")
        assert console.sent[disk_index: disk_index + 3] == ["vda", "sys", "y"]

    def test_unexpected_prompt_fails_without_answering(self, replay_console, answers):
        console = replay_console("alpine-install-unexpected.transcript")
        with patch("factoryvm.installer.log"):
            result = InstallerDriver(console, answers, prompt_timeout=5).run()
        assert not result.completed
        assert result.state == "keymap-variant"
        assert result.answered == ["login", "shell-prompt", "keyboard-layout"]
        assert console.sent == ["root", "setup-alpine", "us"]
        assert "unexpected or missing prompt" in result.detail

    def test_password_never_logged(self, replay_console, answers):
        console = replay_console("alpine-install.transcript")
        with patch("factoryvm.installer.log") as mock_log:
            InstallerDriver(console, answers, prompt_timeout=5).run()
        messages = " ".join(call.args[1] for call in mock_log.call_args_list)
        assert answers.root_password not in messages

    def test_failure_pattern_aborts(self, answers):
        console = MagicMock()
        failure_index = len(INSTALL_TABLE["boot"])
        console.expect.return_value = (failure_index, "Kernel panic - not syncing: VFS")
        with patch("factoryvm.installer.log"):
            result = InstallerDriver(console, answers, prompt_timeout=5).run()
        assert not result.completed
        assert result.state == "boot"
        assert "Kernel panic" in result.detail
        console.sendline.assert_not_called()

    def test_console_closed_reports_state(self, answers):
        console = MagicMock()
        console.expect.side_effect = [(0, "localhost login:"), ConsoleClosed("console closed")]
        with patch("factoryvm.installer.log"):
            result = InstallerDriver(console, answers, prompt_timeout=5).run()
        assert not result.completed
        assert result.state == "shell"
        assert result.answered == ["login"]

    def test_cancel_stops_before_next_prompt(self, answers):
        console = MagicMock()
        cancel = threading.Event()
        cancel.set()
        with patch("factoryvm.installer.log"):
            result = InstallerDriver(console, answers, prompt_timeout=5, cancel=cancel).run()
        assert not result.completed
        assert "cancelled" in result.detail
        console.expect.assert_not_called()

    def test_boot_state_gets_longer_timeout(self, answers):
        driver = InstallerDriver(MagicMock(), answers, prompt_timeout=5)
        assert driver._timeout_for("boot") == 900
        assert driver._timeout_for("hostname") == 5


class TestPexpectConsole:
    def test_timeout_maps_to_console_timeout(self):
        child = MagicMock()
        child.before = "Select keyboard model"
        child.expect.side_effect = pexpect.TIMEOUT("timed out")
        console = PexpectConsole(child)
        with pytest.raises(ConsoleTimeout, match="Select keyboard model"):
            console.expect([], timeout=0.05)

    def test_eof_maps_to_console_closed(self):
        child = MagicMock()
        child.expect.side_effect = pexpect.EOF("eof")
        console = PexpectConsole(child)
        with pytest.raises(ConsoleClosed):
            console.expect([], timeout=1)

    def test_long_wait_is_sliced(self):
        child = MagicMock()
        child.before = ""
        child.expect.side_effect = pexpect.TIMEOUT("timed out")
        console = PexpectConsole(child, slice_seconds=0.01)
        with pytest.raises(ConsoleTimeout):
            console.expect([], timeout=0.05)
        assert child.expect.call_count > 1
        assert all(call.kwargs["timeout"] <= 0.01 for call in child.expect.call_args_list)

    def test_cancel_interrupts_long_wait(self):
        cancel = threading.Event()
        child = MagicMock()

        def _silent(pattern, timeout):
            cancel.set()
            raise pexpect.TIMEOUT("timed out")

        child.expect.side_effect = _silent
        console = PexpectConsole(child, slice_seconds=0.01)
        with pytest.raises(ConsoleCancelled, match="stopped after"):
            console.expect([], timeout=900, cancel=cancel)
        assert child.expect.call_count == 1

    def test_progress_reported_while_waiting(self):
        child = MagicMock()
        child.expect.side_effect = [pexpect.TIMEOUT("t"), pexpect.TIMEOUT("t"), 0]
        child.before, child.after = "", "login:"
        console = PexpectConsole(child, slice_seconds=0.01, progress_interval=0)
        with patch("factoryvm.installer.log") as mock_log:
            assert console.expect([], timeout=60) == (0, "login:")
        progress = [call.args[1] for call in mock_log.call_args_list if "elapsed" in call.args[1]]
        assert len(progress) == 2

    def test_wait_closed_honours_cancel(self):
        cancel = threading.Event()
        cancel.set()
        child = MagicMock()
        console = PexpectConsole(child)
        with pytest.raises(ConsoleCancelled):
            console.wait_closed(120, cancel=cancel)
        child.expect.assert_not_called()


class TestInstallerCancel:
    def test_stop_during_boot_wait_fails_promptly(self, answers):
        cancel = threading.Event()
        child = MagicMock()

        def _booting(pattern, timeout):
            cancel.set()
            raise pexpect.TIMEOUT("still booting")

        child.expect.side_effect = _booting
        console = PexpectConsole(child, slice_seconds=0.01)
        with patch("factoryvm.installer.log"):
            result = InstallerDriver(console, answers, prompt_timeout=5, cancel=cancel).run()
        assert not result.completed
        assert result.state == "boot"
        assert "cancelled by operator" in result.detail
        assert child.expect.call_count == 1
        child.sendline.assert_not_called()
