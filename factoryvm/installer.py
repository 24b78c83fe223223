"""Unattended OS installation over the guest serial console.

The installer conversation is an explicit table: each state lists the
prompts it accepts, the reply to type and the state that follows. A prompt
that is not in the current state's table never gets an answer; the driver
times out and reports ``InstallFailed`` instead of typing into the wrong
question.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, IO, List, Optional, Pattern, Sequence, Tuple, Union

import pexpect

from factoryvm.exceptions import ConsoleCancelled, ConsoleClosed, ConsoleTimeout
from factoryvm.utils import ensure_directory, format_elapsed, log

# Longest single blocking read on the console; stop requests are checked between reads.
EXPECT_SLICE = 5.0
PROGRESS_INTERVAL = 60.0


class ConsoleChannel:
    """Bidirectional text stream to a guest console."""

    def expect(
        self,
        patterns: Sequence[Pattern],
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[int, str]:
        """Block until one of ``patterns`` matches; return its index and the consumed text.

        Raises ``ConsoleCancelled`` as soon as ``cancel`` is set.
        """
        raise NotImplementedError

    def sendline(self, text: str) -> None:
        raise NotImplementedError

    def wait_closed(self, timeout: float, cancel: Optional[threading.Event] = None) -> bool:
        """Return True once the stream reaches end-of-file within ``timeout``."""
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class PexpectConsole(ConsoleChannel):
    """Console channel backed by a ``pexpect`` child process (QEMU ``-nographic``)."""

    def __init__(
        self,
        child: pexpect.spawn,
        log_handle: Optional[IO[str]] = None,
        slice_seconds: float = EXPECT_SLICE,
        progress_interval: float = PROGRESS_INTERVAL,
    ) -> None:
        self.child = child
        self._log_handle = log_handle
        self.slice_seconds = slice_seconds
        self.progress_interval = progress_interval

    @classmethod
    def spawn(cls, cmd: List[str], log_path: Path, timeout: float = 300) -> "PexpectConsole":
        ensure_directory(log_path.parent)
        log_handle = open(log_path, "a", encoding="utf-8")
        child = pexpect.spawn(
            cmd[0],
            cmd[1:],
            encoding="utf-8",
            codec_errors="replace",
            timeout=timeout,
            dimensions=(50, 200),
        )
        # Only guest output is logged; typed replies (passwords) are not.
        child.logfile_read = log_handle
        log("DEBUG", f"Console log: {log_path}")
        return cls(child, log_handle)

    @property
    def pid(self) -> int:
        return self.child.pid

    def _wait(self, pattern, timeout: float, cancel: Optional[threading.Event]) -> int:
        """Run ``child.expect`` in slices; pexpect keeps unmatched output buffered between calls."""
        start = time.monotonic()
        deadline = start + timeout
        reported = start
        while True:
            if cancel is not None and cancel.is_set():
                raise ConsoleCancelled(f"stopped after {format_elapsed(time.monotonic() - start)}")
            remaining = deadline - time.monotonic()
            try:
                return self.child.expect(pattern, timeout=max(0.0, min(self.slice_seconds, remaining)))
            except pexpect.TIMEOUT:
                now = time.monotonic()
                if now >= deadline:
                    raise
                if now - reported >= self.progress_interval:
                    log("INFO", f"Still waiting on the guest console ({format_elapsed(now - start)} elapsed)")
                    reported = now

    def expect(
        self,
        patterns: Sequence[Pattern],
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[int, str]:
        try:
            index = self._wait(list(patterns), timeout, cancel)
        except pexpect.TIMEOUT:
            tail = (self.child.before or "")[-200:]
            raise ConsoleTimeout(f"no expected output within {int(timeout)}s; last output: {tail!r}")
        except pexpect.EOF:
            raise ConsoleClosed("guest console closed")
        return index, f"{self.child.before}{self.child.after}"

    def sendline(self, text: str) -> None:
        self.child.sendline(text)

    def wait_closed(self, timeout: float, cancel: Optional[threading.Event] = None) -> bool:
        try:
            self._wait(pexpect.EOF, timeout, cancel)
        except pexpect.TIMEOUT:
            return False
        return True

    def close(self) -> None:
        if self.child.isalive():
            self.child.close(force=True)
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None


@dataclass
class InstallAnswers:
    hostname: str
    root_password: str
    ssh_public_key: str
    disk: str = "vda"
    keymap: str = "us"
    keymap_variant: str = "us"
    interface: str = "eth0"
    timezone: str = "UTC"
    ntp_client: str = "chrony"
    mirror: str = "1"

    def __repr__(self) -> str:
        return f"InstallAnswers(hostname={self.hostname!r}, disk={self.disk!r})"


Reply = Union[str, Callable[[InstallAnswers], str]]


@dataclass(frozen=True)
class ConsoleRule:
    name: str
    pattern: str
    reply: Reply
    next_state: str
    secret: bool = False

    @property
    def regex(self) -> Pattern:
        return re.compile(self.pattern)

    def render(self, answers: InstallAnswers) -> str:
        return self.reply(answers) if callable(self.reply) else self.reply


START_STATE = "boot"
COMPLETE = "complete"

INSTALL_TABLE: Dict[str, List[ConsoleRule]] = {
    "boot": [ConsoleRule("login", r"login:", "root", "shell")],
    "shell": [ConsoleRule("shell-prompt", r"localhost:~#", "setup-alpine", "keymap")],
    "keymap": [ConsoleRule("keyboard-layout", r"Select keyboard layout", lambda a: a.keymap, "keymap-variant")],
    "keymap-variant": [
        ConsoleRule("keyboard-variant", r"Select variant", lambda a: a.keymap_variant, "hostname"),
        ConsoleRule("hostname", r"Enter system hostname", lambda a: a.hostname, "interfaces"),
    ],
    "hostname": [ConsoleRule("hostname", r"Enter system hostname", lambda a: a.hostname, "interfaces")],
    "interfaces": [
        ConsoleRule("interface", r"Which one do you want to initialize", lambda a: a.interface, "interfaces"),
        ConsoleRule("ip-address", r"Ip address for \w+\?", "dhcp", "interfaces"),
        ConsoleRule("manual-network", r"Do you want to do any manual network configuration", "n", "root-password"),
    ],
    "root-password": [
        ConsoleRule("root-password", r"New password:", lambda a: a.root_password, "root-password-confirm", secret=True),
    ],
    "root-password-confirm": [
        ConsoleRule("root-password-confirm", r"Retype password:", lambda a: a.root_password, "timezone", secret=True),
    ],
    "timezone": [ConsoleRule("timezone", r"Which timezone are you in", lambda a: a.timezone, "proxy")],
    "proxy": [ConsoleRule("proxy", r"HTTP/FTP proxy URL", "none", "ntp")],
    "ntp": [ConsoleRule("ntp", r"Which NTP client to run", lambda a: a.ntp_client, "mirror")],
    "mirror": [ConsoleRule("mirror", r"Enter mirror number", lambda a: a.mirror, "user")],
    "user": [ConsoleRule("setup-user", r"Setup a user\?", "no", "ssh-server")],
    "ssh-server": [ConsoleRule("ssh-server", r"Which ssh server\?", "openssh", "root-login")],
    "root-login": [ConsoleRule("root-login", r"Allow root ssh login\?", "prohibit-password", "root-key")],
    "root-key": [ConsoleRule("root-key", r"Enter ssh key or URL for root", lambda a: a.ssh_public_key, "disk")],
    "disk": [ConsoleRule("disk", r"Which disk\(s\) would you like to use\?", lambda a: a.disk, "disk-mode")],
    "disk-mode": [ConsoleRule("disk-mode", r"How would you like to use it\?", "sys", "erase")],
    "erase": [ConsoleRule("erase-disk", r"Erase the above disk\(s\) and continue\?", "y", "finishing")],
    "finishing": [ConsoleRule("install-complete", r"Installation is complete", "poweroff", COMPLETE)],
}

# Some states legitimately take much longer than a prompt round-trip.
STATE_TIMEOUTS = {
    "boot": 900,
    "finishing": 1800,
}

FAILURE_PATTERNS = (
    r"Kernel panic",
    r"Login incorrect",
    r"ERROR: unable to select packages",
    r"No disks? (?:available|found)",
    r"setup-disk: .*(?:fail|error)",
)


@dataclass
class InstallResult:
    completed: bool
    state: str
    detail: str = ""
    answered: List[str] = field(default_factory=list)
    powered_off: bool = False
    transcript_tail: str = ""


class InstallerDriver:
    def __init__(
        self,
        console: ConsoleChannel,
        answers: InstallAnswers,
        prompt_timeout: float = 300,
        table: Optional[Dict[str, List[ConsoleRule]]] = None,
        cancel: Optional[threading.Event] = None,
        shutdown_timeout: float = 120,
    ) -> None:
        self.console = console
        self.answers = answers
        self.prompt_timeout = prompt_timeout
        self.table = table if table is not None else INSTALL_TABLE
        self.cancel = cancel
        self.shutdown_timeout = shutdown_timeout
        self._failure_regexes = [re.compile(pattern) for pattern in FAILURE_PATTERNS]
        self._transcript: List[str] = []

    def _timeout_for(self, state: str) -> float:
        return max(self.prompt_timeout, STATE_TIMEOUTS.get(state, 0))

    def _tail(self) -> str:
        return "".join(self._transcript)[-500:]

    def _failed(self, state: str, detail: str, answered: List[str]) -> InstallResult:
        log("ERROR", f"Installer failed in state '{state}': {detail}")
        return InstallResult(False, state, detail, answered, transcript_tail=self._tail())

    def run(self) -> InstallResult:
        state = START_STATE
        answered: List[str] = []
        log("INFO", "Driving the OS installer (this can take 5-20 minutes)...")
        while state != COMPLETE:
            if self.cancel is not None and self.cancel.is_set():
                return self._failed(state, "cancelled by operator", answered)
            rules = self.table[state]
            patterns = [rule.regex for rule in rules] + self._failure_regexes
            timeout = self._timeout_for(state)
            try:
                index, text = self.console.expect(patterns, timeout, cancel=self.cancel)
            except ConsoleCancelled as exc:
                return self._failed(state, f"cancelled by operator ({exc})", answered)
            except ConsoleTimeout as exc:
                return self._failed(state, f"unexpected or missing prompt ({exc})", answered)
            except ConsoleClosed as exc:
                return self._failed(state, str(exc), answered)
            self._transcript.append(text)
            if index >= len(rules):
                return self._failed(state, f"installer reported an error: {text.strip()[-160:]!r}", answered)
            rule = rules[index]
            reply = rule.render(self.answers)
            shown = "<hidden>" if rule.secret else repr(reply)
            log("DEBUG", f"Installer [{state}] {rule.name} -> {shown}")
            self.console.sendline(reply)
            answered.append(rule.name)
            if rule.next_state != state:
                log("INFO", f"Installer: {rule.name} answered ({len(answered)} prompts)")
            state = rule.next_state

        log("INFO", "Installation complete; waiting for the installer VM to power off...")
        try:
            powered_off = self.console.wait_closed(self.shutdown_timeout, cancel=self.cancel)
        except ConsoleCancelled:
            powered_off = False
        if not powered_off:
            log("WARN", f"Installer VM did not power off within {int(self.shutdown_timeout)}s")
        log("SUCCESS", "Unattended installation finished")
        return InstallResult(True, COMPLETE, "installation complete", answered, powered_off, self._tail())
