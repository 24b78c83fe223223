"""End-to-end tests for factoryvm.orchestrator with a scripted guest."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests
import yaml

from factoryvm.cache import HELM_ARTIFACT, ISO_ARTIFACT, KUBECTL_ARTIFACT, TERRAFORM_ARTIFACT
from factoryvm.constants import GUEST_CA_ROOT, GUEST_CLI_JAR, GUEST_TOKEN_FILE
from factoryvm.credentials import write_credential_record
from factoryvm.exceptions import DownloadError, FactoryError, FatalInstallError
from factoryvm.models import (
    CachedArtifact,
    GuestHandle,
    GuestStatus,
    HostResources,
    RunOutcome,
    RunReport,
    StepOutcome,
    StepResult,
    TrustTargetResult,
)
from factoryvm.orchestrator import (
    Provisioner,
    load_vm_profile,
    save_vm_state,
    secrets_from_record,
    summary_lines,
)
from factoryvm.trust import TrustStore

ROOT_PEM = b"-----BEGIN CERTIFICATE-----\nMIIBroot\n-----END CERTIFICATE-----\n"
TOKEN = "11d2f0a7c4b9e83f5a6d7c8b9e0f1a2b3c"
PUBLIC_KEY = "ssh-ed25519 AAAATESTKEY factory-foreman"
ROOMY_HOST = HostResources(memory_gb=32, disk_gb=500, cpus=16)
SMALL_HOST = HostResources(memory_gb=6, disk_gb=120, cpus=2)


class OkStore(TrustStore):
    name = "os"

    def install(self, files):
        return self._result(StepOutcome.SUCCESS, "test store updated", 1)


def _artifacts(tmp_path):
    names = (ISO_ARTIFACT, KUBECTL_ARTIFACT, HELM_ARTIFACT, TERRAFORM_ARTIFACT)
    return {name: CachedArtifact(name, "1", tmp_path / name, 10) for name in names}


def _guest(console):
    guest = MagicMock()
    guest.status.return_value = GuestStatus.STOPPED
    handle = GuestHandle(pid=4242, ssh_port=2222, https_port=8443, pid_file=Path("/tmp/factory.pid"))
    guest.spawn_installer.return_value = (handle, console)
    guest.start.return_value = handle
    return guest


def _guest_files():
    return {
        GUEST_CA_ROOT: ROOT_PEM,
        GUEST_TOKEN_FILE: f"{TOKEN}\n".encode(),
        GUEST_CLI_JAR: b"PK\x03\x04jar",
    }


@pytest.fixture
def provision(factory_config, tmp_path, replay_console, remote_factory):
    """Build a Provisioner wired to fakes; returns (provisioner, guest, remote, cache)."""
    factory_config.auto = True

    def _build(transcript="alpine-install.transcript", failures=None, fetch_result=None,
               read_errors=None, resources=ROOMY_HOST):
        console = replay_console(transcript)
        guest = _guest(console)
        remote = remote_factory(failures=failures, files=_guest_files(), read_errors=read_errors)
        cache = MagicMock()
        cache.fetch_all.return_value = fetch_result or (_artifacts(tmp_path), {})
        provisioner = Provisioner(
            factory_config,
            guest=guest,
            cache=cache,
            remote=remote,
            trust_stores=[OkStore()],
            resources=resources,
        )
        return provisioner, guest, remote, cache

    with patch("factoryvm.orchestrator.ensure_ssh_keypair",
               return_value=(factory_config.ssh_key_path, PUBLIC_KEY)), \
            patch("factoryvm.orchestrator.check_hosts_entry", return_value=True), \
            patch("factoryvm.orchestrator.verify_https", return_value=True), \
            patch("factoryvm.host.requests.get", side_effect=requests.ConnectionError("offline")):
        yield _build


class TestProvisionerRun:
    def test_full_setup_succeeds(self, provision, factory_config):
        provisioner, guest, remote, _ = provision()
        report = provisioner.run()
        assert report.outcome == RunOutcome.SUCCESS
        assert report.profile.name == "optimal"
        assert [step.outcome for step in report.steps] == [StepOutcome.SUCCESS] * 7
        guest.create_disks.assert_called_once_with(report.profile)
        guest.release.assert_called_once()
        guest.start.assert_called_once()
        assert report.token_cached
        assert report.trust.verified
        assert factory_config.cli_jar_path.read_bytes().startswith(b"PK")
        assert "Host factory" in factory_config.ssh_config_path.read_text()
        assert not factory_config.status_file.exists()

    def test_small_host_installs_minimum_profile(self, provision, factory_config):
        provisioner, guest, _, _ = provision(resources=SMALL_HOST)
        report = provisioner.run()
        assert report.outcome == RunOutcome.SUCCESS
        assert report.profile.name == "minimum"
        guest.create_disks.assert_called_once_with(report.profile)
        assert [step.outcome for step in report.steps] == [StepOutcome.SUCCESS] * 7
        assert yaml.safe_load((factory_config.vm_dir / "factory.yaml").read_text())["memory_gb"] == 2

    def test_token_read_timeout_degrades_instead_of_crashing(self, provision, factory_config):
        timeout = subprocess.TimeoutExpired(["ssh"], 60)
        provisioner, _, _, _ = provision(read_errors={GUEST_TOKEN_FILE: timeout})
        report = provisioner.run()
        assert [step.outcome for step in report.steps] == [StepOutcome.SUCCESS] * 7
        assert report.outcome == RunOutcome.DEGRADED
        assert not report.token_cached
        assert any(warning.startswith("API token not cached") for warning in report.warnings)
        assert report.trust.verified
        assert not factory_config.token_cache_path.exists()

    def test_ca_read_failure_keeps_guest_configuration(self, provision):
        provisioner, _, _, _ = provision(read_errors={GUEST_CA_ROOT: OSError("Broken pipe")})
        report = provisioner.run()
        assert report.outcome == RunOutcome.DEGRADED
        assert report.trust is None
        assert any("Trust propagation skipped" in warning for warning in report.warnings)
        assert report.token_cached

    def test_stop_during_boot_is_never_reported_ready(self, provision, factory_config):
        provisioner, guest, remote, _ = provision()
        guest.start.side_effect = lambda profile, cancel: cancel.set()
        report = provisioner.run()
        assert report.outcome == RunOutcome.DEGRADED
        assert all(step.detail == "cancelled" for step in report.steps)
        assert remote.scripts == []
        assert "factory-vm bootstrap" in report.warnings[-1]
        assert not factory_config.ssh_config_path.exists()

    def test_credentials_recorded_before_install(self, provision, factory_config):
        provisioner, _, _, _ = provision()
        provisioner.run()
        record = yaml.safe_load(factory_config.credentials_path.read_text())
        assert set(record) >= {"vm", "service_account", "jenkins"}
        assert (factory_config.credentials_path.stat().st_mode & 0o777) == 0o600

    def test_installer_failure_is_fatal_and_skips_bootstrap(self, provision):
        provisioner, guest, remote, _ = provision(transcript="alpine-install-unexpected.transcript")
        with pytest.raises(FatalInstallError) as exc:
            provisioner.run()
        assert "keymap-variant" in str(exc.value)
        assert "install-console.log" in exc.value.guidance
        guest.release.assert_called_once()
        guest.start.assert_not_called()
        assert remote.scripts == []

    def test_missing_iso_is_fatal(self, provision):
        provisioner, guest, _, _ = provision(fetch_result=({}, {ISO_ARTIFACT: DownloadError("HTTP 404")}))
        with pytest.raises(FatalInstallError, match="Installer ISO"):
            provisioner.run()
        guest.create_disks.assert_not_called()

    def test_failed_optional_step_degrades(self, provision):
        provisioner, _, _, _ = provision(failures={"reverse-proxy": "caddy: address already in use"})
        report = provisioner.run()
        assert report.outcome == RunOutcome.DEGRADED
        by_name = {step.name: step for step in report.steps}
        assert by_name["reverse-proxy"].outcome == StepOutcome.FAILED
        assert by_name["ci-server"].outcome == StepOutcome.SUCCESS
        assert report.trust is None
        assert report.token_cached

    def test_existing_install_requires_reinstall_flag(self, provision, factory_config):
        provisioner, guest, _, _ = provision()
        factory_config.vm_dir.mkdir(parents=True)
        factory_config.system_disk.write_bytes(b"qcow")
        with pytest.raises(FactoryError, match="already installed"):
            provisioner.run()
        guest.spawn_installer.assert_not_called()

    def test_reinstall_resets_disks(self, provision, factory_config):
        provisioner, guest, _, _ = provision()
        factory_config.vm_dir.mkdir(parents=True)
        factory_config.system_disk.write_bytes(b"qcow")
        provisioner.run(reinstall=True)
        guest.reset_disks.assert_called_once_with()


class TestProvisionerBootstrap:
    def test_reruns_selected_step(self, provision, factory_config, secrets, recommended_profile):
        provisioner, _, remote, _ = provision()
        save_vm_state(factory_config, recommended_profile)
        write_credential_record(factory_config.credentials_path, secrets, factory_config)
        report = provisioner.bootstrap(only=["docker"])
        assert [step.name for step in report.steps] == ["docker"]
        assert remote.script_names() == ["docker"]

    def test_unknown_step_rejected(self, provision, factory_config, secrets, recommended_profile):
        provisioner, _, _, _ = provision()
        save_vm_state(factory_config, recommended_profile)
        write_credential_record(factory_config.credentials_path, secrets, factory_config)
        with pytest.raises(FactoryError, match="Unknown step"):
            provisioner.bootstrap(only=["jenkins"])


class TestVmState:
    def test_profile_round_trip(self, factory_config, recommended_profile):
        save_vm_state(factory_config, recommended_profile)
        loaded = load_vm_profile(factory_config)
        assert loaded.name == "recommended"
        assert loaded.memory_gb == recommended_profile.memory_gb

    def test_missing_state_explains_setup(self, factory_config):
        with pytest.raises(FactoryError, match="factory-vm setup"):
            load_vm_profile(factory_config)

    def test_secrets_from_incomplete_record(self):
        with pytest.raises(FactoryError):
            secrets_from_record({"vm": {}})


class TestSummary:
    def test_failed_step_shows_remediation(self, factory_config):
        report = RunReport(steps=[
            StepResult("docker", False, StepOutcome.FAILED, "docker daemon did not come up",
                       remediation="factory-vm bootstrap --step docker"),
            StepResult("ci-server", False, StepOutcome.SKIPPED, "requires docker"),
        ])
        lines = "\n".join(summary_lines(report, factory_config))
        assert "[FAIL] docker" in lines
        assert "fix: factory-vm bootstrap --step docker" in lines
        assert "[skip] ci-server" in lines
        assert report.outcome == RunOutcome.DEGRADED

    def test_trust_targets_listed(self, factory_config):
        report = RunReport()
        report.trust = MagicMock(targets=[TrustTargetResult("browsers", StepOutcome.SKIPPED,
                                                            "0 browser profiles updated")], verified=True)
        lines = "\n".join(summary_lines(report, factory_config))
        assert "browsers: 0 browser profiles updated" in lines
        assert "HTTPS verified: yes" in lines
