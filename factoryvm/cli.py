"""CLI entry points for factory-vm."""

from __future__ import annotations

import argparse
import dataclasses
import shutil
import signal
import threading
import time
from pathlib import Path
from typing import List, Optional

from factoryvm.cache import DownloadCache, default_artifacts
from factoryvm.config import parse_env
from factoryvm.constants import DATA_DISK_MAX_GB, DATA_DISK_MIN_GB, REMOTE_VM_DIR
from factoryvm.exceptions import FactoryError, FatalInstallError, TrustPropagationPartial
from factoryvm.guest import GuestController
from factoryvm.host import jenkins_cli, remove_host_ssh
from factoryvm.models import FactoryConfig, GuestStatus, RunOutcome
from factoryvm.orchestrator import Provisioner, load_vm_profile, print_summary
from factoryvm.profiler import CANDIDATE_PROFILES, detect_host_resources, select_profile
from factoryvm.remote import RemoteShell
from factoryvm.runtime import detect_runtime
from factoryvm.steps import default_steps
from factoryvm.tokens import TokenCache, guest_token_fetcher
from factoryvm.trust import TrustPropagator, default_stores, fetch_remote_anchor, write_anchor_files
from factoryvm.utils import get_host_info, has_controlling_tty, kvm_available, log

EXIT_CODES = {RunOutcome.SUCCESS: 0, RunOutcome.FATAL: 1, RunOutcome.DEGRADED: 2}


def show_config(cfg: FactoryConfig) -> None:
    """Print the resolved configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if isinstance(value, tuple):
            value = ", ".join(value) if value else "-"
        print(f"  {field.name}: {value}")


def _remote(cfg: FactoryConfig, user: str = "root") -> RemoteShell:
    return RemoteShell(cfg.ssh_port, cfg.ssh_key_path, user=user, log_dir=cfg.log_dir)


def _install_cancel_handlers(cancel: threading.Event) -> dict:
    """First signal requests a clean stop; a second one aborts immediately."""

    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        log("WARN", "Interrupt received; stopping after the current operation (repeat to abort)")
        cancel.set()

    return {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}


def _restore_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def dry_run(cfg: FactoryConfig) -> int:
    """Validate host and configuration without changing anything."""
    log("INFO", "=== Configuration ===")
    show_config(cfg)
    log("INFO", "=== Environment Checks ===")
    host_info = get_host_info()
    log("INFO", f"Host: {host_info.get('cpu_model', 'unknown')} ({host_info.get('cpu_count', '?')} cores)")
    runtime = detect_runtime()
    if runtime.accel == "tcg":
        log("WARN", "Acceleration: none (TCG emulation, expect a much slower install)")
    else:
        log("SUCCESS", f"Acceleration: {runtime.accel}")
    for tool in (runtime.qemu_binary, "qemu-img", "ssh", "scp", "ssh-keygen"):
        if shutil.which(tool):
            log("SUCCESS", f"{tool + ':':<22}found")
        else:
            log("ERROR", f"{tool + ':':<22}NOT FOUND")
    try:
        code, _ = GuestController(cfg, runtime).find_firmware()
        log("SUCCESS", f"UEFI firmware:        {code}")
    except FactoryError as exc:
        log("ERROR", str(exc))
    resources = detect_host_resources(cfg.vm_dir)
    log("INFO", f"Resources: {resources.memory_gb:.1f}G RAM, {resources.disk_gb:.1f}G free, {resources.cpus} CPUs")
    try:
        profile = select_profile(resources, auto=True, requested=cfg.profile_name,
                                 accept_below_minimum=cfg.accept_below_minimum)
        log("INFO", f"Profile: {profile.name} ({profile.memory_gb}G RAM, {profile.cpus} CPUs)")
    except FactoryError as exc:
        log("ERROR", str(exc))
    names = ", ".join(step.name for step in default_steps(cfg.extras))
    log("INFO", f"Bootstrap steps: {names}")
    log("INFO", "=== Dry-run complete (nothing was changed) ===")
    return 0


def cmd_setup(cfg: FactoryConfig, args: argparse.Namespace, cancel: threading.Event) -> int:
    if args.dry_run:
        return dry_run(cfg)
    if kvm_available():
        log("INFO", "KVM: available")
    report = Provisioner(cfg, cancel=cancel).run(reinstall=args.reinstall)
    print_summary(report, cfg)
    return EXIT_CODES[report.outcome]


def cmd_bootstrap(cfg: FactoryConfig, args: argparse.Namespace, cancel: threading.Event) -> int:
    report = Provisioner(cfg, cancel=cancel).bootstrap(only=args.step or None)
    print_summary(report, cfg)
    return EXIT_CODES[report.outcome]


def cmd_start(cfg: FactoryConfig, cancel: threading.Event) -> int:
    profile = load_vm_profile(cfg)
    GuestController(cfg).start(profile, cancel=cancel)
    remote = _remote(cfg)
    remote.wait_until_ready(timeout=cfg.ssh_ready_timeout, cancel=cancel)
    log("SUCCESS", f"Factory VM ready: ssh factory | {cfg.public_url}")
    return 0


def cmd_stop(cfg: FactoryConfig, cancel: threading.Event) -> int:
    GuestController(cfg).stop(remote=_remote(cfg), cancel=cancel)
    return 0


def cmd_status(cfg: FactoryConfig) -> int:
    guest = GuestController(cfg)
    state = guest.status()
    handle = guest.handle() if state == GuestStatus.RUNNING else None
    print(f"  VM:       {state.value}" + (f" (PID {handle.pid})" if handle else ""))
    print(f"  SSH:      localhost:{cfg.ssh_port}")
    print(f"  Jenkins:  {cfg.public_url}")
    entry = TokenCache(cfg.token_cache_path, fetch=lambda: "").read()
    if entry is None:
        print("  Token:    not cached")
    else:
        age_days = (time.time() - entry.fetched_at) / 86400
        print(f"  Token:    cached ({age_days:.1f} days old)")
    print(f"  Cache:    {cfg.cache_dir}")
    return 0 if state == GuestStatus.RUNNING else 3


def cmd_cache(cfg: FactoryConfig, args: argparse.Namespace) -> int:
    cache = DownloadCache(cfg.cache_dir, workers=cfg.download_workers, retries=cfg.download_retries)
    if args.clear:
        cache.clear()
        return 0
    if args.fetch:
        _, failures = cache.fetch_all(default_artifacts(cfg))
        for name, reason in sorted(failures.items()):
            log("ERROR", f"{name}: {reason}")
        return 1 if failures else 0
    entries = cache.entries()
    if not entries:
        log("INFO", f"Cache at {cfg.cache_dir} is empty")
        return 0
    width = max(len(entry.name) for entry in entries)
    for entry in entries:
        print(f"  {entry.name:<{width}}  {entry.version:<12} {entry.size_bytes / (1024 ** 2):8.1f} MiB")
    return 0


def cmd_token(cfg: FactoryConfig, args: argparse.Namespace) -> int:
    tokens = TokenCache(cfg.token_cache_path, guest_token_fetcher(_remote(cfg)))
    tokens.get_token(force_refresh=args.refresh)
    entry = tokens.read()
    assert entry is not None
    log("INFO", f"API token cached at {cfg.token_cache_path} (fetched {time.ctime(entry.fetched_at)})")
    return 0


def cmd_jenkins(cfg: FactoryConfig, args: argparse.Namespace) -> int:
    tokens = TokenCache(cfg.token_cache_path, guest_token_fetcher(_remote(cfg)))
    return jenkins_cli(cfg, tokens, list(args.cli_args))


def cmd_expand_data_disk(cfg: FactoryConfig, args: argparse.Namespace) -> int:
    _, size = GuestController(cfg).expand_data_disk(args.size_gb)
    print("  Next steps (the filesystem still has its old size):")
    print("    factory-vm start")
    print("    ssh factory 'doas resize2fs /dev/vdb && df -h /data'")
    log("INFO", f"/data will show about {size}G once resize2fs completes")
    return 0


def cmd_trust_remote(cfg: FactoryConfig, args: argparse.Namespace) -> int:
    anchor = fetch_remote_anchor(args.host, args.remote_dir)
    files = write_anchor_files(anchor, cfg.state_dir / "remote-certs" / args.host.replace("/", "_"))
    try:
        report = TrustPropagator(default_stores(cfg.use_sudo)).propagate(files)
    except TrustPropagationPartial as exc:
        log("WARN", str(exc))
        report = exc.report
    for target in report.targets:
        print(f"  {target.store}: {target.outcome.value} ({target.detail})")
    print(f"  CA bundle: {files.bundle}")
    return 2 if report.partial else 0


def cmd_uninstall(cfg: FactoryConfig, args: argparse.Namespace, cancel: threading.Event) -> int:
    guest = GuestController(cfg)
    guest.stop(remote=_remote(cfg), cancel=cancel)
    guest.destroy()
    remove_host_ssh(cfg)
    TokenCache(cfg.token_cache_path, fetch=lambda: "").invalidate()
    cfg.cli_jar_path.unlink(missing_ok=True)
    if args.all:
        for path in (cfg.cache_dir, cfg.state_dir):
            if path.exists():
                shutil.rmtree(path)
                log("INFO", f"Removed {path}")
        for key in (cfg.ssh_key_path, Path(f"{cfg.ssh_key_path}.pub")):
            key.unlink(missing_ok=True)
    log("SUCCESS", "Factory VM removed")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="factory-vm", description="Provision and manage the Factory build VM")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file (default: ~/.factory-vm/config.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    setup = sub.add_parser("setup", help="Install and configure the Factory VM")
    setup.add_argument("-y", "--auto", action="store_true", help="Pick the largest fitting profile without asking")
    setup.add_argument("--accept-minimum", action="store_true",
                       help="Proceed with the minimum profile on an undersized host")
    setup.add_argument("--profile", choices=[profile.name for profile in CANDIDATE_PROFILES], default=None)
    setup.add_argument("--reinstall", action="store_true", help="Wipe existing disks and install from scratch")
    setup.add_argument("--dry-run", action="store_true", help="Validate host and configuration, then exit")

    bootstrap = sub.add_parser("bootstrap", help="Re-run configuration steps on the installed VM")
    bootstrap.add_argument("--step", action="append", metavar="NAME", help="Run only this step (repeatable)")

    sub.add_parser("start", help="Boot the installed VM")
    sub.add_parser("stop", help="Shut the VM down")
    sub.add_parser("status", help="Show VM state")

    cache = sub.add_parser("cache", help="Inspect or manage the download cache")
    group = cache.add_mutually_exclusive_group()
    group.add_argument("--list", action="store_true", help="List cached artifacts (default)")
    group.add_argument("--clear", action="store_true", help="Delete every cached artifact")
    group.add_argument("--fetch", action="store_true", help="Download everything setup needs")

    token = sub.add_parser("token", help="Cache the Jenkins API token on this host")
    token.add_argument("--refresh", action="store_true", help="Fetch a fresh copy even if the cache is valid")

    jenkins = sub.add_parser("jenkins", help="Run a Jenkins CLI command with the cached token")
    jenkins.add_argument("cli_args", nargs=argparse.REMAINDER)

    expand = sub.add_parser("expand-data-disk", help="Grow the data disk image (VM must be stopped)")
    expand.add_argument("size_gb", type=int, metavar="SIZE_GB",
                        help=f"New size in GB ({DATA_DISK_MIN_GB}-{DATA_DISK_MAX_GB})")

    trust_remote = sub.add_parser("trust-remote", help="Trust the CA of a Factory VM running on another host")
    trust_remote.add_argument("host", metavar="HOST", help="SSH destination of the other host (user@host or alias)")
    trust_remote.add_argument("--remote-dir", default=REMOTE_VM_DIR,
                              help=f"VM directory on that host, relative to its home (default: {REMOTE_VM_DIR})")

    uninstall = sub.add_parser("uninstall", help="Stop and delete the VM")
    uninstall.add_argument("--all", action="store_true", help="Also delete the cache, credentials and SSH key")

    sub.add_parser("show-config", help="Show resolved configuration and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = parse_env(args.config)
    except FactoryError as exc:
        log("ERROR", str(exc))
        return 1

    if args.command == "setup":
        if args.auto:
            cfg.auto = True
        elif not has_controlling_tty() and not args.dry_run:
            log("INFO", "No terminal attached; selecting the profile automatically")
            cfg.auto = True
        if args.accept_minimum:
            cfg.accept_below_minimum = True
        if args.profile:
            cfg.profile_name = args.profile

    if args.command == "show-config":
        show_config(cfg)
        return 0

    cancel = threading.Event()
    previous = _install_cancel_handlers(cancel)
    try:
        if args.command == "setup":
            return cmd_setup(cfg, args, cancel)
        if args.command == "bootstrap":
            return cmd_bootstrap(cfg, args, cancel)
        if args.command == "start":
            return cmd_start(cfg, cancel)
        if args.command == "stop":
            return cmd_stop(cfg, cancel)
        if args.command == "status":
            return cmd_status(cfg)
        if args.command == "cache":
            return cmd_cache(cfg, args)
        if args.command == "token":
            return cmd_token(cfg, args)
        if args.command == "jenkins":
            return cmd_jenkins(cfg, args)
        if args.command == "expand-data-disk":
            return cmd_expand_data_disk(cfg, args)
        if args.command == "trust-remote":
            return cmd_trust_remote(cfg, args)
        if args.command == "uninstall":
            return cmd_uninstall(cfg, args, cancel)
        parser.error(f"unknown command {args.command}")
        return 2
    except FatalInstallError as exc:
        log("ERROR", str(exc))
        if exc.guidance:
            print("  Next steps:")
            for line in exc.guidance.splitlines():
                print(f"    {line}")
        return 1
    except FactoryError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Aborted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug. Re-run with LOG_VERBOSE=1 and include the output when reporting it.")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        _restore_handlers(previous)
