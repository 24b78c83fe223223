"""Propagate the guest's local CA into host trust stores."""

from __future__ import annotations

import os
import platform
import shlex
import shutil
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import requests

from factoryvm.constants import (
    CA_BUNDLE_NAME,
    CA_INTERMEDIATE_NAME,
    CA_ROOT_NAME,
    CHROMIUM_CONFIG_DIRS,
    FIREFOX_PROFILE_ROOTS,
    GUEST_CA_INTERMEDIATE,
    GUEST_CA_ROOT,
    JAVA_INTERMEDIATE_ALIAS,
    JAVA_KEYSTORE_PASSWORD,
    JAVA_ROOT_ALIAS,
    NSS_INTERMEDIATE_NICKNAME,
    NSS_ROOT_NICKNAME,
    REMOTE_VM_DIR,
    SHARED_NSS_DB,
)
from factoryvm.exceptions import FactoryError, StepFailure, TrustPropagationPartial
from factoryvm.models import StepOutcome, TrustAnchor, TrustReport, TrustTargetResult
from factoryvm.remote import RemoteShell
from factoryvm.utils import atomic_write_bytes, format_elapsed, log, privileged, run

PEM_HEADER = b"-----BEGIN CERTIFICATE-----"


class AnchorFiles:
    """Host copies of the CA certificates."""

    def __init__(self, root: Path, intermediate: Optional[Path], bundle: Path) -> None:
        self.root = root
        self.intermediate = intermediate
        self.bundle = bundle

    def pairs(self, root_name: str, intermediate_name: str) -> List[Tuple[str, Path]]:
        items = [(root_name, self.root)]
        if self.intermediate is not None:
            items.append((intermediate_name, self.intermediate))
        return items


def fetch_trust_anchor(remote: RemoteShell) -> TrustAnchor:
    """Read the reverse proxy's CA certificate (and intermediate, if any) from the guest."""
    try:
        root_pem = remote.read_file(GUEST_CA_ROOT)
    except StepFailure as exc:
        raise FactoryError(
            f"Could not read the guest CA certificate: {exc}\n"
            "  Possible fixes:\n"
            "    - Check the reverse proxy: ssh factory 'doas rc-service caddy status'"
        ) from exc
    if PEM_HEADER not in root_pem:
        raise FactoryError(f"{GUEST_CA_ROOT} in the guest is not a PEM certificate")
    try:
        intermediate_pem: Optional[bytes] = remote.read_file(GUEST_CA_INTERMEDIATE)
    except StepFailure:
        log("DEBUG", "Guest has no intermediate CA certificate")
        intermediate_pem = None
    if intermediate_pem is not None and PEM_HEADER not in intermediate_pem:
        intermediate_pem = None
    return TrustAnchor(root_pem=root_pem, intermediate_pem=intermediate_pem)


def _read_over_ssh(host: str, path: str, timeout: float) -> Optional[bytes]:
    cmd = ["ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=15", host, f"cat -- {shlex.quote(path)}"]
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired as exc:
        raise FactoryError(f"ssh {host} timed out after {format_elapsed(timeout)}") from exc
    except FileNotFoundError as exc:
        raise FactoryError("ssh not found. Install an OpenSSH client.") from exc
    if result.returncode == 255:
        raise FactoryError(
            f"Could not connect to {host}: {result.stderr.decode('utf-8', 'replace').strip()}\n"
            "  Possible fixes:\n"
            f"    - Check that 'ssh {host}' works without a password prompt\n"
            "    - Add the host to ~/.ssh/config or load its key into ssh-agent"
        )
    if result.returncode != 0:
        return None
    return result.stdout


def fetch_remote_anchor(host: str, remote_dir: str = REMOTE_VM_DIR, timeout: float = 60) -> TrustAnchor:
    """Read the CA copies another factory host saved after its own setup.

    ``remote_dir`` is resolved by the remote shell, so a relative path is
    taken from the remote user's home directory.
    """
    root_path = f"{remote_dir.rstrip('/')}/{CA_ROOT_NAME}"
    root_pem = _read_over_ssh(host, root_path, timeout)
    if root_pem is None:
        raise FactoryError(
            f"{host} has no {root_path}\n"
            "  Possible fixes:\n"
            f"    - Run 'factory-vm setup' (or 'factory-vm bootstrap --step reverse-proxy') on {host} first\n"
            "    - Pass --remote-dir if that host keeps its VM elsewhere"
        )
    if PEM_HEADER not in root_pem:
        raise FactoryError(f"{host}:{root_path} is not a PEM certificate")
    intermediate_pem = _read_over_ssh(host, f"{remote_dir.rstrip('/')}/{CA_INTERMEDIATE_NAME}", timeout)
    if intermediate_pem is not None and PEM_HEADER not in intermediate_pem:
        intermediate_pem = None
    log("INFO", f"Fetched the factory CA from {host}" + (" (with intermediate)" if intermediate_pem else ""))
    return TrustAnchor(root_pem=root_pem, intermediate_pem=intermediate_pem)


def write_anchor_files(anchor: TrustAnchor, directory: Path) -> AnchorFiles:
    root = directory / CA_ROOT_NAME
    atomic_write_bytes(root, anchor.root_pem, mode=0o644)
    intermediate = None
    bundle_pem = anchor.root_pem.rstrip(b"\n") + b"\n"
    if anchor.intermediate_pem:
        intermediate = directory / CA_INTERMEDIATE_NAME
        atomic_write_bytes(intermediate, anchor.intermediate_pem, mode=0o644)
        bundle_pem += anchor.intermediate_pem.rstrip(b"\n") + b"\n"
    bundle = directory / CA_BUNDLE_NAME
    atomic_write_bytes(bundle, bundle_pem, mode=0o644)
    return AnchorFiles(root, intermediate, bundle)


class TrustStore:
    name = "store"

    def install(self, files: AnchorFiles) -> TrustTargetResult:
        raise NotImplementedError

    def _result(self, outcome: StepOutcome, detail: str, updated: int = 0) -> TrustTargetResult:
        return TrustTargetResult(self.name, outcome, detail, updated)


class OsTrustStore(TrustStore):
    """System-wide trust store (Debian/Ubuntu, Fedora/RHEL, Arch, macOS)."""

    name = "os"

    def __init__(self, use_sudo: bool = True, system: Optional[str] = None) -> None:
        self.use_sudo = use_sudo
        self.system = system or platform.system()

    def detect_family(self) -> Optional[str]:
        if self.system == "Darwin":
            return "macos"
        if shutil.which("update-ca-certificates") and Path("/usr/local/share/ca-certificates").is_dir():
            return "debian"
        if shutil.which("update-ca-trust"):
            return "redhat"
        if shutil.which("trust"):
            return "arch"
        return None

    def _commands(self, family: str, files: AnchorFiles) -> List[List[str]]:
        sources = files.pairs("factory-caddy-root", "factory-caddy-intermediate")
        if family == "debian":
            target = Path("/usr/local/share/ca-certificates")
            cmds = [["cp", str(path), str(target / f"{label}.crt")] for label, path in sources]
            return cmds + [["update-ca-certificates"]]
        if family == "redhat":
            target = Path("/etc/pki/ca-trust/source/anchors")
            cmds = [["cp", str(path), str(target / f"{label}.crt")] for label, path in sources]
            return cmds + [["update-ca-trust", "extract"]]
        if family == "arch":
            return [["trust", "anchor", "--store", str(path)] for _, path in sources]
        return [[
            "security", "add-trusted-cert", "-d", "-r", "trustRoot",
            "-k", "/Library/Keychains/System.keychain", str(files.root),
        ]]

    def install(self, files: AnchorFiles) -> TrustTargetResult:
        family = self.detect_family()
        if family is None:
            return self._result(StepOutcome.SKIPPED, "no supported system trust tool found")
        log("INFO", f"Installing CA into the {family} system trust store (may prompt for sudo)...")
        try:
            for cmd in self._commands(family, files):
                run(privileged(cmd, self.use_sudo), capture_output=True)
        except subprocess.CalledProcessError as exc:
            return self._result(StepOutcome.FAILED, f"{' '.join(exc.cmd)}: {(exc.stderr or '').strip()}")
        except OSError as exc:
            return self._result(StepOutcome.FAILED, str(exc))
        return self._result(StepOutcome.SUCCESS, f"{family} system store updated", 1)


class JavaKeystore(TrustStore):
    """The default ``cacerts`` keystore of the JDK on PATH (or $JAVA_HOME)."""

    name = "java"

    def __init__(self, use_sudo: bool = True, java_home: Optional[str] = None) -> None:
        self.use_sudo = use_sudo
        self.java_home = java_home if java_home is not None else os.environ.get("JAVA_HOME")

    def locate(self) -> Optional[Tuple[Path, str]]:
        homes: List[Path] = []
        if self.java_home:
            homes.append(Path(self.java_home))
        java = shutil.which("java")
        if java:
            homes.append(Path(os.path.realpath(java)).parent.parent)
        for home in homes:
            for candidate in (home / "lib" / "security" / "cacerts", home / "jre" / "lib" / "security" / "cacerts"):
                if candidate.exists():
                    keytool = home / "bin" / "keytool"
                    return candidate, str(keytool) if keytool.exists() else (shutil.which("keytool") or "keytool")
        return None

    def install(self, files: AnchorFiles) -> TrustTargetResult:
        located = self.locate()
        if located is None:
            return self._result(StepOutcome.SKIPPED, "no JDK found")
        cacerts, keytool = located
        needs_root = not os.access(cacerts, os.W_OK)
        base = ["-keystore", str(cacerts), "-storepass", JAVA_KEYSTORE_PASSWORD]
        log("INFO", f"Importing CA into Java keystore {cacerts}...")
        try:
            for alias, path in files.pairs(JAVA_ROOT_ALIAS, JAVA_INTERMEDIATE_ALIAS):
                delete = [keytool, "-delete", "-alias", alias, *base]
                run(privileged(delete, self.use_sudo and needs_root), check=False, capture_output=True)
                add = [keytool, "-importcert", "-noprompt", "-trustcacerts", "-alias", alias, "-file", str(path), *base]
                run(privileged(add, self.use_sudo and needs_root), capture_output=True)
            listed = run([keytool, "-list", "-alias", JAVA_ROOT_ALIAS, *base], check=False, capture_output=True)
        except subprocess.CalledProcessError as exc:
            return self._result(StepOutcome.FAILED, f"keytool import failed: {(exc.stderr or exc.stdout or '').strip()}")
        except OSError as exc:
            return self._result(StepOutcome.FAILED, str(exc))
        if listed.returncode != 0:
            return self._result(StepOutcome.FAILED, f"alias {JAVA_ROOT_ALIAS} missing from {cacerts} after import")
        return self._result(StepOutcome.SUCCESS, f"imported into {cacerts}", 1)


def discover_nss_databases(home: Path) -> List[Path]:
    """Find NSS databases used by Chromium-family browsers and Firefox."""
    found: List[Path] = []
    chromium_present = False
    for relative in CHROMIUM_CONFIG_DIRS:
        base = home / relative
        if not base.is_dir():
            continue
        for profile in sorted([*base.glob("Default"), *base.glob("Profile *")]):
            if not ((profile / "Cookies").exists() or (profile / "History").exists()):
                continue
            chromium_present = True
            if (profile / "cert9.db").exists():
                found.append(profile)
    shared = home / SHARED_NSS_DB
    if shared.is_dir() or chromium_present:
        found.append(shared)
    for relative in FIREFOX_PROFILE_ROOTS:
        base = home / relative
        if not base.is_dir():
            continue
        for profile in sorted(base.iterdir()):
            if profile.is_dir() and ((profile / "cert9.db").exists() or (profile / "cert8.db").exists()):
                found.append(profile)
    return found


class BrowserStores(TrustStore):
    """Per-user NSS databases (Chrome, Chromium, Brave, Edge, Vivaldi, Opera, Firefox)."""

    name = "browsers"

    def __init__(self, home: Optional[Path] = None) -> None:
        self.home = home or Path.home()

    @staticmethod
    def _db_arg(db: Path) -> str:
        return f"dbm:{db}" if (db / "cert8.db").exists() and not (db / "cert9.db").exists() else f"sql:{db}"

    def _install_into(self, certutil: str, db: Path, files: AnchorFiles) -> None:
        db_arg = self._db_arg(db)
        if not db.exists():
            db.mkdir(parents=True, mode=0o700)
            run([certutil, "-N", "--empty-password", "-d", db_arg], capture_output=True)
        trust_flags = {NSS_ROOT_NICKNAME: "CT,C,C", NSS_INTERMEDIATE_NICKNAME: ",,"}
        for nickname, path in files.pairs(NSS_ROOT_NICKNAME, NSS_INTERMEDIATE_NICKNAME):
            # certutil -D removes one entry per call; clear duplicates from earlier runs.
            for _ in range(5):
                if run([certutil, "-D", "-n", nickname, "-d", db_arg], check=False, capture_output=True).returncode:
                    break
            run([certutil, "-A", "-n", nickname, "-t", trust_flags[nickname], "-i", str(path), "-d", db_arg],
                capture_output=True)

    def install(self, files: AnchorFiles) -> TrustTargetResult:
        databases = discover_nss_databases(self.home)
        if not databases:
            return self._result(StepOutcome.SKIPPED, "0 browser profiles updated (no browser profiles found)")
        certutil = shutil.which("certutil")
        if certutil is None:
            return self._result(
                StepOutcome.FAILED,
                f"certutil not found for {len(databases)} browser profiles "
                "(install libnss3-tools / nss-tools / nss)",
            )
        updated = 0
        errors: List[str] = []
        for db in databases:
            try:
                self._install_into(certutil, db, files)
            except (subprocess.CalledProcessError, OSError) as exc:
                errors.append(f"{db}: {getattr(exc, 'stderr', '') or exc}".strip())
                continue
            updated += 1
            log("DEBUG", f"CA added to NSS database {db}")
        detail = f"{updated} browser profiles updated"
        if errors:
            return self._result(StepOutcome.FAILED, f"{detail}; {len(errors)} failed: {'; '.join(errors)}", updated)
        return self._result(StepOutcome.SUCCESS, detail, updated)


def default_stores(use_sudo: bool = True, home: Optional[Path] = None) -> List[TrustStore]:
    return [OsTrustStore(use_sudo), JavaKeystore(use_sudo), BrowserStores(home)]


class TrustPropagator:
    def __init__(self, stores: Sequence[TrustStore]) -> None:
        self.stores = list(stores)

    def propagate(self, files: AnchorFiles) -> TrustReport:
        """Install the anchor into every store; one store failing never stops the others.

        Raises ``TrustPropagationPartial`` (carrying the full report) when any
        attempted store failed.
        """
        report = TrustReport()
        for store in self.stores:
            try:
                result = store.install(files)
            except (subprocess.SubprocessError, OSError) as exc:
                result = TrustTargetResult(store.name, StepOutcome.FAILED, str(exc))
            report.targets.append(result)
            level = {"success": "SUCCESS", "skipped": "INFO", "failed": "WARN"}[result.outcome.value]
            log(level, f"Trust store '{result.store}': {result.outcome.value} ({result.detail})")
        if report.partial:
            failed = [target.store for target in report.targets if target.outcome == StepOutcome.FAILED]
            raise TrustPropagationPartial(f"CA not installed in: {', '.join(failed)}", report)
        return report


def verify_https(url: str, ca_bundle: Path, attempts: int = 10, interval: float = 3) -> bool:
    """Return True once ``url`` completes a TLS handshake validated against ``ca_bundle``."""
    for attempt in range(1, attempts + 1):
        try:
            response = requests.get(url, verify=str(ca_bundle), timeout=5, allow_redirects=False)
        except requests.exceptions.SSLError as exc:
            log("DEBUG", f"HTTPS check {attempt}/{attempts}: certificate not trusted ({exc})")
        except requests.RequestException as exc:
            log("DEBUG", f"HTTPS check {attempt}/{attempts}: {exc}")
        else:
            response.close()
            log("SUCCESS", f"HTTPS verified against the guest CA: {url} (HTTP {response.status_code})")
            return True
        if attempt < attempts:
            time.sleep(interval)
    log("WARN", f"Could not verify HTTPS at {url} after {attempts} attempts")
    return False
