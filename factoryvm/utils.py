"""Utility functions for factory-vm."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from factoryvm.constants import _LOG_VERBOSE
from factoryvm.exceptions import ConfigError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int_value(name: str, raw, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened read-write."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def ensure_directory(path: Path, mode: Optional[int] = None) -> None:
    path.mkdir(parents=True, exist_ok=True)
    if mode is not None:
        path.chmod(mode)


def atomic_write_bytes(destination: Path, payload: bytes, mode: int = 0o600) -> None:
    """Write ``payload`` next to ``destination`` and rename it into place.

    Readers never observe a partially written file; the permission bits are
    applied before the rename so the final path is never briefly world-readable.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        tmp_path.replace(destination)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def atomic_write_text(destination: Path, text: str, mode: int = 0o600) -> None:
    atomic_write_bytes(destination, text.encode("utf-8"), mode=mode)


def format_elapsed(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}m{secs:02d}s"


def poll_until(
    check: Callable[[], bool],
    timeout: float,
    interval: float,
    description: str,
    cancel: Optional[threading.Event] = None,
    report_every: float = 30.0,
) -> bool:
    """Call ``check`` until it returns True, the timeout expires, or ``cancel`` is set.

    Elapsed time is reported every ``report_every`` seconds so a slow wait is
    distinguishable from a hung one.
    """
    start = time.monotonic()
    deadline = start + timeout
    next_report = start + report_every
    while True:
        if cancel is not None and cancel.is_set():
            log("WARN", f"{description}: cancelled after {format_elapsed(time.monotonic() - start)}")
            return False
        if check():
            return True
        now = time.monotonic()
        if now >= deadline:
            return False
        if now >= next_report:
            log("INFO", f"{description}... ({format_elapsed(now - start)} elapsed)")
            next_report = now + report_every
        delay = min(interval, max(deadline - now, 0))
        if cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)


def pid_alive(pid: int) -> bool:
    """Return True if a process with ``pid`` exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user (e.g. QEMU started through sudo).
        return True
    return True


def get_available_disk_space(path: Path) -> int:
    """Return free bytes on the filesystem holding ``path`` or its nearest existing parent."""
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    return shutil.disk_usage(existing).free


def get_host_info() -> Dict[str, object]:
    """Collect basic host facts (memory, CPU count, model, kernel)."""
    info: Dict[str, object] = {
        "cpu_count": os.cpu_count() or 1,
        "kernel": platform.release(),
        "machine": platform.machine(),
        "system": platform.system(),
        "cpu_model": platform.processor() or "unknown",
        "mem_total": 0,
    }
    meminfo = Path("/proc/meminfo")
    if meminfo.exists():
        for line in meminfo.read_text().splitlines():
            if line.startswith("MemTotal:"):
                info["mem_total"] = int(line.split()[1]) * 1024
                break
        cpuinfo = Path("/proc/cpuinfo")
        if cpuinfo.exists():
            for line in cpuinfo.read_text().splitlines():
                if line.startswith("model name"):
                    info["cpu_model"] = line.split(":", 1)[1].strip()
                    break
    elif info["system"] == "Darwin":
        result = subprocess.run(["sysctl", "-n", "hw.memsize"], capture_output=True, text=True, check=False)
        if result.returncode == 0 and result.stdout.strip().isdigit():
            info["mem_total"] = int(result.stdout.strip())
    return info


def hash_password(password: str) -> str:
    """Generate a bcrypt hash in the ``$2a$`` form understood by jBCrypt."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(prefix=b"2a"))
    return hashed.decode("utf-8")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def privileged(cmd: List[str], use_sudo: bool = True) -> List[str]:
    """Prefix ``cmd`` with sudo when not already root."""
    if use_sudo and os.geteuid() != 0:
        return ["sudo", *cmd]
    return list(cmd)
