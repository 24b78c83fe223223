"""Host-side integration: SSH alias, name resolution, Jenkins CLI."""

from __future__ import annotations

import os
import socket
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

import requests

from factoryvm.constants import GUEST_CLI_JAR, SSH_HOST_ALIAS
from factoryvm.exceptions import FactoryError, StepFailure
from factoryvm.models import FactoryConfig
from factoryvm.remote import RemoteShell
from factoryvm.tokens import TokenCache
from factoryvm.utils import atomic_write_bytes, atomic_write_text, ensure_directory, log

BLOCK_BEGIN = "# BEGIN factory-vm"
BLOCK_END = "# END factory-vm"


def render_ssh_block(config: FactoryConfig) -> str:
    lines = [
        BLOCK_BEGIN,
        f"Host {SSH_HOST_ALIAS}",
        "    HostName localhost",
        f"    Port {config.ssh_port}",
        f"    User {config.service_user}",
        f"    IdentityFile {config.ssh_key_path}",
        "    IdentitiesOnly yes",
        "    StrictHostKeyChecking no",
        "    UserKnownHostsFile /dev/null",
        "    LogLevel ERROR",
        BLOCK_END,
    ]
    return "\n".join(lines) + "\n"


def _strip_block(text: str) -> str:
    kept: List[str] = []
    inside = False
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if stripped == BLOCK_BEGIN:
            inside = True
            continue
        if stripped == BLOCK_END and inside:
            inside = False
            continue
        if not inside:
            kept.append(line)
    return "".join(kept)


def configure_host_ssh(config: FactoryConfig) -> None:
    """Add (or replace) the ``Host factory`` entry in the user's SSH config."""
    path = config.ssh_config_path
    ensure_directory(path.parent, mode=0o700)
    existing = path.read_text() if path.exists() else ""
    remaining = _strip_block(existing).rstrip("\n")
    if any(line.split()[:2] == ["Host", SSH_HOST_ALIAS] for line in remaining.splitlines() if line.strip()):
        log("WARN", f"{path} already has an unmanaged 'Host {SSH_HOST_ALIAS}' entry; the first match wins in ssh")
    prefix = remaining + "\n\n" if remaining.strip() else ""
    atomic_write_text(path, prefix + render_ssh_block(config), mode=0o600)
    log("SUCCESS", f"SSH alias configured: ssh {SSH_HOST_ALIAS}")


def remove_host_ssh(config: FactoryConfig) -> bool:
    path = config.ssh_config_path
    if not path.exists():
        return False
    existing = path.read_text()
    remaining = _strip_block(existing)
    if remaining == existing:
        return False
    atomic_write_text(path, remaining.rstrip("\n") + "\n" if remaining.strip() else "", mode=0o600)
    log("INFO", f"Removed the '{SSH_HOST_ALIAS}' entry from {path}")
    return True


def check_hosts_entry(hostname: str) -> bool:
    """Warn unless ``hostname`` resolves to the loopback address."""
    try:
        address = socket.gethostbyname(hostname)
    except OSError:
        address = None
    if address is not None and address.startswith("127."):
        return True
    log(
        "WARN",
        f"{hostname} does not resolve to this machine.\n"
        "  Possible fixes:\n"
        f"    - echo '127.0.0.1 {hostname}' | sudo tee -a /etc/hosts",
    )
    return False


def _looks_like_jar(payload: bytes) -> bool:
    return payload[:2] == b"PK"


def fetch_cli_jar(
    config: FactoryConfig,
    remote: RemoteShell,
    https_ok: bool,
    session: Optional[requests.Session] = None,
) -> Path:
    """Store the Jenkins CLI jar on the host.

    Uses the HTTPS endpoint when the CA was verified, otherwise reads the jar
    from the unpacked WAR through the remote shell.
    """
    destination = config.cli_jar_path
    ensure_directory(destination.parent)
    if https_ok:
        url = f"{config.local_https_url}jnlpJars/jenkins-cli.jar"
        try:
            response = (session or requests).get(url, verify=str(config.ca_bundle), timeout=60)
            response.raise_for_status()
            if _looks_like_jar(response.content):
                atomic_write_bytes(destination, response.content, mode=0o644)
                log("SUCCESS", f"Jenkins CLI downloaded over HTTPS: {destination}")
                return destination
            log("WARN", f"{url} did not return a jar; using the fallback")
        except requests.RequestException as exc:
            log("WARN", f"HTTPS download of the Jenkins CLI failed ({exc}); using the fallback")
    try:
        payload = remote.read_file(GUEST_CLI_JAR, timeout=120)
    except StepFailure as exc:
        raise FactoryError(f"Could not retrieve the Jenkins CLI jar: {exc}") from exc
    if not _looks_like_jar(payload):
        raise FactoryError(f"{GUEST_CLI_JAR} in the guest is not a jar file")
    atomic_write_bytes(destination, payload, mode=0o644)
    log("SUCCESS", f"Jenkins CLI copied from the guest: {destination}")
    return destination


def jenkins_cli(config: FactoryConfig, tokens: TokenCache, args: List[str]) -> int:
    """Run the Jenkins CLI with credentials passed through a private file, not argv."""
    jar = config.cli_jar_path
    if not jar.exists():
        raise FactoryError(
            f"Jenkins CLI not found at {jar}.\n"
            "  Possible fixes:\n"
            "    - Run 'factory-vm setup' (or 'factory-vm token --refresh')"
        )
    token = tokens.get_token()
    ensure_directory(config.state_dir, mode=0o700)
    fd, auth_name = tempfile.mkstemp(prefix=".jenkins-auth-", dir=str(config.state_dir))
    auth_path = Path(auth_name)
    try:
        with os.fdopen(fd, "w") as handle:
            handle.write(f"{config.service_user}:{token}")
        os.chmod(auth_path, 0o600)
        cmd = ["java", "-jar", str(jar), "-s", config.public_url, "-webSocket", "-auth", f"@{auth_path}", *args]
        try:
            return subprocess.run(cmd, check=False).returncode
        except FileNotFoundError as exc:
            raise FactoryError("java not found. Install a Java runtime to use the Jenkins CLI.") from exc
    finally:
        auth_path.unlink(missing_ok=True)
