"""End-to-end provisioning pipeline and run summary."""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from factoryvm.bootstrap import CANCELLED_DETAIL, BootstrapOrchestrator
from factoryvm.cache import ISO_ARTIFACT, DownloadCache, default_artifacts
from factoryvm.credentials import (
    ensure_ssh_keypair,
    generate_secrets,
    load_credential_record,
    write_credential_record,
)
from factoryvm.exceptions import FactoryError, FatalInstallError, TrustPropagationPartial
from factoryvm.guest import GuestController
from factoryvm.host import check_hosts_entry, configure_host_ssh, fetch_cli_jar
from factoryvm.installer import InstallAnswers, InstallerDriver
from factoryvm.models import (
    CachedArtifact,
    FactoryConfig,
    GuestStatus,
    HostResources,
    Profile,
    RunOutcome,
    RunReport,
    Secrets,
    StepOutcome,
)
from factoryvm.profiler import CANDIDATE_PROFILES, detect_host_resources, select_profile
from factoryvm.remote import RemoteShell
from factoryvm.status import StatusBroadcaster
from factoryvm.steps import StepContext, default_steps
from factoryvm.tokens import TokenCache, guest_token_fetcher
from factoryvm.trust import (
    TrustPropagator,
    TrustStore,
    default_stores,
    fetch_trust_anchor,
    verify_https,
    write_anchor_files,
)
from factoryvm.utils import ensure_directory, log

VM_STATE_NAME = "factory.yaml"

HOST_INTEGRATION_ERRORS = (FactoryError, subprocess.SubprocessError, OSError)


def save_vm_state(config: FactoryConfig, profile: Profile) -> None:
    data = {
        "profile": profile.name,
        "memory_gb": profile.memory_gb,
        "cpus": profile.cpus,
        "system_disk_gb": profile.system_disk_gb,
        "data_disk_gb": profile.data_disk_gb,
    }
    ensure_directory(config.vm_dir)
    (config.vm_dir / VM_STATE_NAME).write_text(yaml.safe_dump(data, sort_keys=False))


def load_vm_profile(config: FactoryConfig) -> Profile:
    """Return the profile the guest was installed with."""
    path = config.vm_dir / VM_STATE_NAME
    if not path.exists():
        raise FactoryError(
            f"No installed Factory VM found in {config.vm_dir}.\n"
            "  Possible fixes:\n"
            "    - Run 'factory-vm setup' first"
        )
    data = yaml.safe_load(path.read_text()) or {}
    try:
        return Profile(
            name=str(data["profile"]),
            memory_gb=int(data["memory_gb"]),
            cpus=int(data["cpus"]),
            system_disk_gb=int(data["system_disk_gb"]),
            data_disk_gb=int(data["data_disk_gb"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise FactoryError(f"{path} is malformed ({exc})") from exc


def secrets_from_record(record: Dict) -> Secrets:
    try:
        return Secrets(
            root_password=record["vm"]["root_password"],
            service_password=record["service_account"]["password"],
            ci_admin_password=record["jenkins"]["password"],
        )
    except (KeyError, TypeError) as exc:
        raise FactoryError(f"Credential record is missing a field ({exc})") from exc


class Provisioner:
    """Take the guest from blank disks to a configured, reachable build server."""

    def __init__(
        self,
        config: FactoryConfig,
        guest: Optional[GuestController] = None,
        cache: Optional[DownloadCache] = None,
        remote: Optional[RemoteShell] = None,
        trust_stores: Optional[Sequence[TrustStore]] = None,
        cancel: Optional[threading.Event] = None,
        prompt: Callable[[str], str] = input,
        resources: Optional[HostResources] = None,
    ) -> None:
        self.cfg = config
        self.guest = guest or GuestController(config)
        self.cache = cache or DownloadCache(
            config.cache_dir, workers=config.download_workers, retries=config.download_retries
        )
        self.remote = remote or RemoteShell(config.ssh_port, config.ssh_key_path, log_dir=config.log_dir)
        self.trust_stores = list(trust_stores) if trust_stores is not None else default_stores(config.use_sudo)
        self.cancel = cancel or threading.Event()
        self.prompt = prompt
        self.resources = resources
        self.status = StatusBroadcaster(config.status_file)

    # -- phases -------------------------------------------------------------

    def choose_profile(self) -> Profile:
        self.status.update("Checking host resources")
        resources = self.resources or detect_host_resources(self.cfg.vm_dir)
        return select_profile(
            resources,
            auto=self.cfg.auto,
            requested=self.cfg.profile_name,
            accept_below_minimum=self.cfg.accept_below_minimum,
            candidates=CANDIDATE_PROFILES,
            prompt=self.prompt,
        )

    def fetch_artifacts(self) -> Dict[str, CachedArtifact]:
        self.status.update("Downloading installer media and tools")
        artifacts, failures = self.cache.fetch_all(default_artifacts(self.cfg))
        if ISO_ARTIFACT not in artifacts:
            reason = failures.get(ISO_ARTIFACT)
            raise FatalInstallError(
                f"Installer ISO could not be downloaded: {reason}",
                guidance="Check network access to dl-cdn.alpinelinux.org and re-run 'factory-vm setup'",
            )
        if failures:
            log("WARN", f"{len(failures)} artifacts unavailable: {', '.join(sorted(failures))}")
        return artifacts

    def install(self, profile: Profile, iso: Path, secrets: Secrets, public_key: str) -> None:
        """Run the unattended installer. Any failure here aborts the whole run."""
        self.status.update("Installing Alpine Linux")
        self.guest.create_disks(profile)
        handle, console = self.guest.spawn_installer(profile, iso, self.cfg.install_prompt_timeout)
        answers = InstallAnswers(
            hostname=self.cfg.hostname,
            root_password=secrets.root_password,
            ssh_public_key=public_key,
        )
        try:
            result = InstallerDriver(console, answers, self.cfg.install_prompt_timeout, cancel=self.cancel).run()
        finally:
            console.close()
            self.guest.release(handle)
        if not result.completed:
            console_log = self.cfg.log_dir / "install-console.log"
            raise FatalInstallError(
                f"Unattended installation failed in state '{result.state}': {result.detail}",
                guidance=(
                    f"Inspect the console log: {console_log}\n"
                    "Start over with: factory-vm setup --reinstall"
                ),
            )

    def step_context(self, secrets: Secrets, public_key: str, profile: Profile,
                     artifacts: Dict[str, CachedArtifact]) -> StepContext:
        return StepContext(
            config=self.cfg,
            remote=self.remote,
            secrets=secrets,
            public_key=public_key,
            profile=profile,
            artifacts=artifacts,
            cancel=self.cancel,
        )

    def integrate_host(self, report: RunReport) -> None:
        """Trust propagation, SSH alias, CLI jar and token cache. Never fatal."""
        outcomes = {step.name: step.outcome for step in report.steps}
        try:
            configure_host_ssh(self.cfg)
        except OSError as exc:
            report.warnings.append(f"Could not update {self.cfg.ssh_config_path}: {exc}")
        check_hosts_entry(self.cfg.hostname)

        https_ok = False
        if outcomes.get("reverse-proxy") == StepOutcome.SUCCESS:
            self.status.update("Installing the guest CA on this host")
            try:
                files = write_anchor_files(fetch_trust_anchor(self.remote), self.cfg.vm_dir)
            except HOST_INTEGRATION_ERRORS as exc:
                report.warnings.append(f"Trust propagation skipped: {exc}")
            else:
                try:
                    report.trust = TrustPropagator(self.trust_stores).propagate(files)
                except TrustPropagationPartial as exc:
                    report.trust = exc.report
                    report.warnings.append(f"Trust propagation incomplete: {exc}")
                https_ok = verify_https(self.cfg.local_https_url, files.bundle)
                report.trust.verified = https_ok
        else:
            report.warnings.append("Reverse proxy not configured; HTTPS trust was not set up")

        if outcomes.get("ci-server") != StepOutcome.SUCCESS:
            return
        self.status.update("Caching Jenkins CLI access")
        try:
            report.cli_jar = fetch_cli_jar(self.cfg, self.remote, https_ok)
        except HOST_INTEGRATION_ERRORS as exc:
            report.warnings.append(f"Jenkins CLI not downloaded: {exc}")
        try:
            TokenCache(self.cfg.token_cache_path, guest_token_fetcher(self.remote)).get_token(force_refresh=True)
            report.token_cached = True
        except HOST_INTEGRATION_ERRORS as exc:
            report.warnings.append(f"API token not cached: {exc}")

    def _finish_steps(self, report: RunReport) -> None:
        if self.cancel.is_set():
            not_run = [step.name for step in report.steps if step.detail == CANCELLED_DETAIL]
            report.warnings.append(
                "Run stopped before completion"
                + (f"; not run: {', '.join(not_run)}" if not_run else "")
                + ". Resume with: factory-vm bootstrap"
            )
            return
        self.integrate_host(report)

    # -- entry points -------------------------------------------------------

    def run(self, reinstall: bool = False) -> RunReport:
        """Full setup. Raises FatalInstallError if the OS could not be installed."""
        report = RunReport()
        try:
            if self.guest.status() == GuestStatus.RUNNING:
                raise FactoryError(
                    "Factory VM is running.\n"
                    "  Possible fixes:\n"
                    "    - Re-run configuration only: factory-vm bootstrap\n"
                    "    - Stop it and reinstall: factory-vm stop && factory-vm setup --reinstall"
                )
            if self.cfg.system_disk.exists():
                if not reinstall:
                    raise FactoryError(
                        f"Factory VM is already installed ({self.cfg.system_disk}).\n"
                        "  Possible fixes:\n"
                        "    - Re-run configuration only: factory-vm bootstrap\n"
                        "    - Wipe and reinstall: factory-vm setup --reinstall"
                    )
                self.guest.reset_disks()

            profile = self.choose_profile()
            report.profile = profile
            ensure_directory(self.cfg.state_dir, mode=0o700)
            secrets = generate_secrets()
            write_credential_record(self.cfg.credentials_path, secrets, self.cfg)
            _, public_key = ensure_ssh_keypair(self.cfg.ssh_key_path)

            artifacts = self.fetch_artifacts()
            self.install(profile, artifacts[ISO_ARTIFACT].path, secrets, public_key)
            save_vm_state(self.cfg, profile)

            self.status.update("Booting the installed system")
            self.guest.start(profile, cancel=self.cancel)
            ctx = self.step_context(secrets, public_key, profile, artifacts)
            report.steps = BootstrapOrchestrator(ctx, default_steps(self.cfg.extras), self.status).run()
            self._finish_steps(report)
            return report
        finally:
            self.status.finish()

    def bootstrap(self, only: Optional[Iterable[str]] = None) -> RunReport:
        """Re-run configuration steps against an installed guest."""
        report = RunReport()
        try:
            profile = load_vm_profile(self.cfg)
            report.profile = profile
            secrets = secrets_from_record(load_credential_record(self.cfg.credentials_path))
            _, public_key = ensure_ssh_keypair(self.cfg.ssh_key_path)
            artifacts, _ = self.cache.fetch_all(
                [spec for spec in default_artifacts(self.cfg) if spec.name != ISO_ARTIFACT]
            )
            self.guest.start(profile, cancel=self.cancel)
            ctx = self.step_context(secrets, public_key, profile, artifacts)
            steps = default_steps(self.cfg.extras)
            known = {step.name for step in steps}
            unknown = sorted(set(only or ()) - known)
            if unknown:
                raise FactoryError(f"Unknown step(s): {', '.join(unknown)}. Known: {', '.join(sorted(known))}")
            report.steps = BootstrapOrchestrator(ctx, steps, self.status).run(only=only)
            self._finish_steps(report)
            return report
        finally:
            self.status.finish()


def _outcome_marker(outcome: StepOutcome) -> str:
    return {StepOutcome.SUCCESS: "[ok]  ", StepOutcome.FAILED: "[FAIL]", StepOutcome.SKIPPED: "[skip]"}[outcome]


def summary_lines(report: RunReport, config: FactoryConfig) -> List[str]:
    lines: List[str] = []
    if report.profile is not None:
        profile = report.profile
        lines.append(f"  Profile: {profile.name} ({profile.memory_gb}G RAM, {profile.cpus} CPUs)")
    if report.steps:
        lines.append("  Steps:")
        for step in report.steps:
            optional = " (optional)" if step.optional else ""
            lines.append(f"    {_outcome_marker(step.outcome)} {step.name}{optional}")
            if step.outcome != StepOutcome.SUCCESS and step.detail:
                lines.append(f"           {step.detail.splitlines()[0][:100]}")
            if step.incomplete and step.remediation:
                lines.append(f"           fix: {step.remediation}")
    if report.trust is not None:
        lines.append("  Trust:")
        for target in report.trust.targets:
            lines.append(f"    {_outcome_marker(target.outcome)} {target.store}: {target.detail}")
        lines.append(f"    HTTPS verified: {'yes' if report.trust.verified else 'no'}")
    for warning in report.warnings:
        lines.append(f"  ! {warning.splitlines()[0]}")
    lines.append("")
    lines.append(f"  SSH:         ssh factory   (or ssh -p {config.ssh_port} {config.service_user}@localhost)")
    lines.append(f"  Jenkins:     {config.public_url}")
    lines.append(f"  Credentials: {config.credentials_path}")
    if report.token_cached:
        lines.append(f"  CLI:         factory-vm jenkins who-am-i")
    return lines


def print_summary(report: RunReport, config: FactoryConfig) -> None:
    """Print a visually distinct result banner."""
    outcome = report.outcome
    title = {
        RunOutcome.SUCCESS: "  Factory VM is ready",
        RunOutcome.DEGRADED: "  Factory VM is running with problems (degraded)",
        RunOutcome.FATAL: "  Factory VM setup failed",
    }[outcome]
    colour = {RunOutcome.SUCCESS: "\033[0;32m", RunOutcome.DEGRADED: "\033[1;33m", RunOutcome.FATAL: "\033[0;31m"}[outcome]
    lines = [title, *summary_lines(report, config)]
    border = "=" * (max(len(line) for line in lines) + 2)
    reset = "\033[0m"
    print(f"{colour}{border}{reset}", flush=True)
    for line in lines:
        print(f"{colour}{line}{reset}", flush=True)
    print(f"{colour}{border}{reset}", flush=True)
