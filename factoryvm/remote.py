"""Remote command channel to the guest over OpenSSH."""

from __future__ import annotations

import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from factoryvm.exceptions import ReadinessTimeout, StepFailure
from factoryvm.utils import ensure_directory, format_elapsed, log, poll_until

SSH_OPTIONS = (
    "-o", "BatchMode=yes",
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
    "-o", "ServerAliveInterval=15",
)


class RemoteShell:
    """Run commands and scripts in the guest.

    Scripts and any secrets they need are written to the remote shell's stdin;
    the ssh argument vector only ever carries the fixed interpreter command, so
    nothing sensitive shows up in a process listing on either side.
    """

    def __init__(
        self,
        port: int,
        key_path: Path,
        user: str = "root",
        host: str = "localhost",
        connect_timeout: int = 10,
        log_dir: Optional[Path] = None,
    ) -> None:
        self.port = port
        self.key_path = key_path
        self.user = user
        self.host = host
        self.connect_timeout = connect_timeout
        self.log_dir = log_dir

    def as_user(self, user: str) -> "RemoteShell":
        return RemoteShell(self.port, self.key_path, user, self.host, self.connect_timeout, self.log_dir)

    def _common_args(self) -> List[str]:
        return ["-i", str(self.key_path), *SSH_OPTIONS, "-o", f"ConnectTimeout={self.connect_timeout}"]

    def ssh_command(self, remote_command: str) -> List[str]:
        return ["ssh", *self._common_args(), "-p", str(self.port), f"{self.user}@{self.host}", remote_command]

    def _record(self, log_name: Optional[str], command: str, result: subprocess.CompletedProcess) -> None:
        if not log_name or self.log_dir is None:
            return
        ensure_directory(self.log_dir)
        with open(self.log_dir / f"{log_name}.log", "a") as handle:
            handle.write(f"=== {time.strftime('%Y-%m-%d %H:%M:%S')} $ {command} (exit {result.returncode})\n")
            if result.stdout:
                handle.write(result.stdout if isinstance(result.stdout, str) else result.stdout.decode(errors="replace"))
            if result.stderr:
                handle.write(result.stderr if isinstance(result.stderr, str) else result.stderr.decode(errors="replace"))

    def run(
        self,
        command: str,
        input: Optional[str] = None,
        timeout: float = 600,
        log_name: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        cmd = self.ssh_command(command)
        log("DEBUG", f"Remote ({self.user}): {command}")
        result = subprocess.run(
            cmd, input=input, capture_output=True, text=True, errors="replace", timeout=timeout, check=False
        )
        self._record(log_name, command, result)
        return result

    def run_script(
        self,
        script: str,
        env: Optional[Dict[str, str]] = None,
        timeout: float = 1800,
        log_name: Optional[str] = None,
        check: bool = True,
        description: str = "remote script",
    ) -> subprocess.CompletedProcess:
        """Execute a POSIX shell script in the guest, fed through stdin."""
        preamble = ["set -eu"]
        for key, value in (env or {}).items():
            preamble.append(f"export {key}={shlex.quote(value)}")
        payload = "\n".join(preamble) + "\n" + script
        result = self.run("sh -s", input=payload, timeout=timeout, log_name=log_name)
        if check and result.returncode != 0:
            tail = "\n".join((result.stderr or result.stdout or "").strip().splitlines()[-5:])
            message = f"{description} exited with status {result.returncode}"
            if tail:
                message += f": {tail}"
            raise StepFailure(message)
        return result

    def copy_to(self, local: Path, remote_path: str, timeout: float = 600) -> None:
        cmd = ["scp", *self._common_args(), "-q", "-P", str(self.port), str(local),
               f"{self.user}@{self.host}:{remote_path}"]
        log("DEBUG", f"Uploading {local} -> {remote_path}")
        result = subprocess.run(cmd, capture_output=True, text=True, errors="replace", timeout=timeout, check=False)
        if result.returncode != 0:
            raise StepFailure(f"Upload of {local.name} to {remote_path} failed: {result.stderr.strip()}")

    def read_file(self, remote_path: str, timeout: float = 60) -> bytes:
        cmd = self.ssh_command(f"cat {shlex.quote(remote_path)}")
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=timeout, check=False)
        except subprocess.TimeoutExpired as exc:
            raise StepFailure(f"Could not read {remote_path}: ssh timed out after {format_elapsed(timeout)}") from exc
        except OSError as exc:
            raise StepFailure(f"Could not read {remote_path}: {exc}") from exc
        if result.returncode != 0:
            raise StepFailure(f"Could not read {remote_path}: {result.stderr.decode(errors='replace').strip()}")
        return result.stdout

    def is_ready(self) -> bool:
        """True once a command actually executes, not merely once the port accepts."""
        try:
            result = self.run("echo ready", timeout=self.connect_timeout + 10)
        except (subprocess.TimeoutExpired, OSError):
            return False
        return result.returncode == 0 and result.stdout.strip() == "ready"

    def wait_until_ready(
        self,
        timeout: float = 300,
        interval: float = 5,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        log("INFO", f"Waiting for SSH on localhost:{self.port} (up to {format_elapsed(timeout)})...")
        start = time.monotonic()
        ready = poll_until(
            self.is_ready,
            timeout=timeout,
            interval=interval,
            description="Waiting for SSH",
            cancel=cancel,
        )
        elapsed = format_elapsed(time.monotonic() - start)
        if not ready:
            raise ReadinessTimeout(
                f"Guest did not accept SSH commands within {format_elapsed(timeout)} ({elapsed} elapsed).\n"
                "  Possible fixes:\n"
                "    - Check the guest is running: factory-vm status\n"
                f"    - Try manually: ssh -p {self.port} -i {self.key_path} {self.user}@{self.host}"
            )
        log("SUCCESS", f"SSH is ready ({elapsed})")
