"""Shared test fixtures: temporary config, replayed installer console, scripted guest shell."""

from __future__ import annotations

import copy
import re
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from factoryvm.constants import DEFAULT_PLUGINS
from factoryvm.exceptions import ConsoleTimeout, ReadinessTimeout, StepFailure
from factoryvm.installer import ConsoleChannel, InstallAnswers
from factoryvm.models import FactoryConfig, Profile, Secrets
from factoryvm.profiler import CANDIDATE_PROFILES
from factoryvm.steps import StepContext

FIXTURES = Path(__file__).parent / "fixtures"
REPLY_MARKER = "#>>> "


@pytest.fixture
def factory_config(tmp_path) -> FactoryConfig:
    """Return a FactoryConfig whose every path lives under tmp_path."""
    home = tmp_path / "home"
    return FactoryConfig(
        vm_dir=home / "vms" / "factory",
        state_dir=home / ".factory-vm",
        cache_dir=home / ".factory-vm" / "cache",
        hostname="factory.local",
        service_user="foreman",
        ssh_port=2222,
        https_port=8443,
        http_port=8080,
        ssh_key_path=home / ".ssh" / "factory-foreman",
        ssh_config_path=home / ".ssh" / "config",
        token_cache_path=home / ".jenkins-factory-token",
        cli_jar_path=home / ".java" / "jars" / "jenkins-cli-factory.jar",
        alpine_version="3.19",
        alpine_release="3.19.1",
        kubectl_version="1.28.4",
        helm_version="3.13.3",
        terraform_version="1.6.6",
        plugins=DEFAULT_PLUGINS,
        plugin_version="latest",
        ssh_ready_timeout=5,
        ci_ready_timeout=5,
        install_prompt_timeout=5,
        shutdown_grace=0,
        use_sudo=False,
    )


@pytest.fixture
def recommended_profile() -> Profile:
    return next(profile for profile in CANDIDATE_PROFILES if profile.name == "recommended")


@pytest.fixture
def secrets() -> Secrets:
    return Secrets(
        root_password="RootPass1234567890ab",
        service_password="UserPass1234567890ab",
        ci_admin_password="JenkPass1234567890ab",
    )


@pytest.fixture
def answers(secrets) -> InstallAnswers:
    return InstallAnswers(
        hostname="factory.local",
        root_password=secrets.root_password,
        ssh_public_key="ssh-ed25519 AAAATESTKEY factory-foreman",
    )


def load_transcript(name: str) -> List[str]:
    """Split a recorded console session into the output segments between operator replies."""
    segments: List[str] = []
    current: List[str] = []
    for line in (FIXTURES / name).read_text().splitlines(keepends=True):
        if line.startswith(REPLY_MARKER):
            segments.append("".join(current))
            current = []
        else:
            current.append(line)
    if current:
        segments.append("".join(current))
    return segments


class ReplayConsole(ConsoleChannel):
    """Console that plays back a recorded transcript, one segment per reply sent."""

    def __init__(self, segments: Sequence[str]) -> None:
        self.segments = list(segments)
        self.released = 1 if self.segments else 0
        self.buffer = self.segments[0] if self.segments else ""
        self.sent: List[str] = []
        self.closed = False

    def expect(self, patterns, timeout: float, cancel=None) -> Tuple[int, str]:
        best: Optional[Tuple[int, int, re.Match]] = None
        for index, pattern in enumerate(patterns):
            match = pattern.search(self.buffer)
            if match is not None and (best is None or match.start() < best[1]):
                best = (index, match.start(), match)
        if best is None:
            raise ConsoleTimeout(f"no expected prompt within {timeout}s")
        index, _, match = best
        consumed = self.buffer[: match.end()]
        self.buffer = self.buffer[match.end():]
        return index, consumed

    def sendline(self, text: str) -> None:
        self.sent.append(text)
        if self.released < len(self.segments):
            self.buffer += self.segments[self.released]
            self.released += 1

    def wait_closed(self, timeout: float, cancel=None) -> bool:
        return self.released >= len(self.segments)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def replay_console():
    def _factory(name: str) -> ReplayConsole:
        return ReplayConsole(load_transcript(name))

    return _factory


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["ssh"], returncode=returncode, stdout=stdout, stderr=stderr)


class FakeRemote:
    """Scripted stand-in for RemoteShell.

    ``failures`` maps a step log name to the stderr its script should fail with.
    """

    def __init__(
        self,
        failures: Optional[Dict[str, str]] = None,
        ready: bool = True,
        files: Optional[Dict[str, bytes]] = None,
        ci_gate: str = "confirmed",
        read_errors: Optional[Dict[str, Exception]] = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.read_errors = dict(read_errors or {})
        self.ready = ready
        self.files = dict(files or {})
        self.ci_gate = ci_gate
        self.user = "root"
        self.commands: List[Tuple[str, str]] = []
        self.scripts: List[Tuple[Optional[str], Dict[str, str]]] = []
        self.uploads: List[str] = []

    def as_user(self, user: str) -> "FakeRemote":
        view = copy.copy(self)
        view.user = user
        return view

    def wait_until_ready(self, timeout: float = 300, interval: float = 5, cancel=None) -> None:
        if not self.ready:
            raise ReadinessTimeout(f"Guest did not accept SSH commands within {timeout}s")

    def is_ready(self) -> bool:
        return self.ready

    def run(self, command: str, input: Optional[str] = None, timeout: float = 600,
            log_name: Optional[str] = None) -> subprocess.CompletedProcess:
        self.commands.append((self.user, command))
        if command == "id -un":
            return completed(stdout=f"{self.user}\n")
        return completed()

    def run_script(self, script: str, env: Optional[Dict[str, str]] = None, timeout: float = 1800,
                   log_name: Optional[str] = None, check: bool = True,
                   description: str = "remote script") -> subprocess.CompletedProcess:
        self.scripts.append((log_name, dict(env or {})))
        if "whoAmI" in script:
            return completed(stdout=f"{self.ci_gate}\n")
        if log_name in self.failures:
            stderr = self.failures[log_name]
            if check:
                raise StepFailure(f"{description} exited with status 1: {stderr}")
            return completed(returncode=1, stderr=stderr)
        if log_name == "docker":
            return completed(stdout="Docker version 24.0.7, build afdd53b\n")
        return completed()

    def copy_to(self, local: Path, remote_path: str, timeout: float = 600) -> None:
        self.uploads.append(remote_path)

    def read_file(self, remote_path: str, timeout: float = 60) -> bytes:
        if remote_path in self.read_errors:
            raise self.read_errors[remote_path]
        if remote_path not in self.files:
            raise StepFailure(f"Could not read {remote_path}: No such file or directory")
        return self.files[remote_path]

    def script_names(self) -> List[Optional[str]]:
        return [name for name, _ in self.scripts if name is not None]


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def step_context(factory_config, fake_remote, secrets, recommended_profile) -> StepContext:
    return StepContext(
        config=factory_config,
        remote=fake_remote,
        secrets=secrets,
        public_key="ssh-ed25519 AAAATESTKEY factory-foreman",
        profile=recommended_profile,
        poll_interval=0.01,
    )


@pytest.fixture
def remote_factory():
    """Build a FakeRemote with custom failures or readiness."""
    return FakeRemote
