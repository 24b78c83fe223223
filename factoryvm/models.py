"""Data models for factory-vm."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from factoryvm.constants import (
    CA_BUNDLE_NAME,
    CREDENTIALS_FILENAME,
    DATA_DISK_NAME,
    PID_FILE_NAME,
    STATUS_FILENAME,
    SYSTEM_DISK_NAME,
    UEFI_VARS_NAME,
)


@dataclass(frozen=True)
class HostResources:
    memory_gb: float
    disk_gb: float
    cpus: int


@dataclass(frozen=True)
class Profile:
    name: str
    memory_gb: int
    cpus: int
    system_disk_gb: int
    data_disk_gb: int
    min_host_memory_gb: int = 0
    min_host_disk_gb: int = 0
    min_host_cpus: int = 1

    def fits(self, host: HostResources) -> bool:
        return (
            host.memory_gb >= self.min_host_memory_gb
            and host.disk_gb >= self.min_host_disk_gb
            and host.cpus >= self.min_host_cpus
        )

    def shortfalls(self, host: HostResources) -> List[str]:
        """Describe every requirement the host misses for this profile."""
        missing = []
        if host.memory_gb < self.min_host_memory_gb:
            missing.append(f"memory {host.memory_gb:.1f}G < {self.min_host_memory_gb}G")
        if host.disk_gb < self.min_host_disk_gb:
            missing.append(f"free disk {host.disk_gb:.1f}G < {self.min_host_disk_gb}G")
        if host.cpus < self.min_host_cpus:
            missing.append(f"cpus {host.cpus} < {self.min_host_cpus}")
        return missing


@dataclass(frozen=True)
class Secrets:
    root_password: str
    service_password: str
    ci_admin_password: str

    def __repr__(self) -> str:
        return "Secrets(<redacted>)"


@dataclass(frozen=True)
class ArtifactSpec:
    name: str
    version: str
    url: str
    suffix: str = ""
    sha256: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.version)

    @property
    def filename(self) -> str:
        return f"{self.version}{self.suffix}"


@dataclass(frozen=True)
class CachedArtifact:
    name: str
    version: str
    path: Path
    size_bytes: int


class GuestStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    STALE = "stale"


@dataclass
class GuestHandle:
    pid: int
    ssh_port: int
    https_port: int
    pid_file: Path


class StepOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    name: str
    optional: bool
    outcome: StepOutcome
    detail: str = ""
    remediation: Optional[str] = None
    elapsed: float = 0.0

    @property
    def failed(self) -> bool:
        return self.outcome == StepOutcome.FAILED

    @property
    def incomplete(self) -> bool:
        """A failure, or a required step that never ran."""
        return self.failed or (self.outcome == StepOutcome.SKIPPED and not self.optional)


@dataclass
class TrustAnchor:
    root_pem: bytes
    intermediate_pem: Optional[bytes] = None
    target_stores: Tuple[str, ...] = ("os", "java", "browsers")


@dataclass
class TrustTargetResult:
    store: str
    outcome: StepOutcome
    detail: str = ""
    updated: int = 0


@dataclass
class TrustReport:
    targets: List[TrustTargetResult] = field(default_factory=list)
    verified: bool = False

    @property
    def partial(self) -> bool:
        return any(target.outcome == StepOutcome.FAILED for target in self.targets)

    @property
    def browser_profiles_updated(self) -> int:
        return sum(target.updated for target in self.targets if target.store == "browsers")


@dataclass
class TokenCacheEntry:
    token: str
    fetched_at: float

    def is_valid(self, now: float, ttl: float) -> bool:
        return bool(self.token) and 0 <= now - self.fetched_at < ttl

    def __repr__(self) -> str:
        return f"TokenCacheEntry(token=<{len(self.token)} chars>, fetched_at={self.fetched_at})"


class RunOutcome(Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FATAL = "fatal"


@dataclass
class RunReport:
    profile: Optional[Profile] = None
    steps: List[StepResult] = field(default_factory=list)
    trust: Optional[TrustReport] = None
    token_cached: bool = False
    cli_jar: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)
    fatal: Optional[str] = None

    @property
    def outcome(self) -> RunOutcome:
        if self.fatal:
            return RunOutcome.FATAL
        if any(step.incomplete for step in self.steps) or self.warnings:
            return RunOutcome.DEGRADED
        if self.trust is not None and (self.trust.partial or not self.trust.verified):
            return RunOutcome.DEGRADED
        return RunOutcome.SUCCESS


@dataclass
class FactoryConfig:
    vm_dir: Path
    state_dir: Path
    cache_dir: Path
    hostname: str
    service_user: str
    ssh_port: int
    https_port: int
    http_port: int
    ssh_key_path: Path
    ssh_config_path: Path
    token_cache_path: Path
    cli_jar_path: Path
    alpine_version: str
    alpine_release: str
    kubectl_version: str
    helm_version: str
    terraform_version: str
    plugins: Tuple[str, ...]
    plugin_version: str
    profile_name: Optional[str] = None
    auto: bool = False
    accept_below_minimum: bool = False
    extras: Tuple[str, ...] = ()
    download_workers: int = 3
    download_retries: int = 3
    ssh_ready_timeout: int = 300
    ci_ready_timeout: int = 600
    install_prompt_timeout: int = 300
    shutdown_grace: int = 30
    use_sudo: bool = True

    @property
    def system_disk(self) -> Path:
        return self.vm_dir / SYSTEM_DISK_NAME

    @property
    def data_disk(self) -> Path:
        return self.vm_dir / DATA_DISK_NAME

    @property
    def pid_file(self) -> Path:
        return self.vm_dir / PID_FILE_NAME

    @property
    def uefi_vars(self) -> Path:
        return self.vm_dir / UEFI_VARS_NAME

    @property
    def ca_bundle(self) -> Path:
        return self.vm_dir / CA_BUNDLE_NAME

    @property
    def log_dir(self) -> Path:
        return self.vm_dir / "logs"

    @property
    def credentials_path(self) -> Path:
        return self.state_dir / CREDENTIALS_FILENAME

    @property
    def status_file(self) -> Path:
        return self.state_dir / STATUS_FILENAME

    @property
    def public_url(self) -> str:
        return f"https://{self.hostname}:{self.https_port}/"

    @property
    def local_https_url(self) -> str:
        return f"https://localhost:{self.https_port}/"
