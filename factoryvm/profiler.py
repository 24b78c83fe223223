"""Host resource detection and VM sizing profile selection."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional, Sequence

from factoryvm.exceptions import InsufficientResourcesError
from factoryvm.models import HostResources, Profile
from factoryvm.utils import get_available_disk_space, get_host_info, log

GIB = 1024**3

# Ordered from most to least generous; the first one the host fits wins.
CANDIDATE_PROFILES = (
    Profile("optimal", memory_gb=8, cpus=6, system_disk_gb=50, data_disk_gb=200,
            min_host_memory_gb=16, min_host_disk_gb=200, min_host_cpus=8),
    Profile("recommended", memory_gb=4, cpus=4, system_disk_gb=50, data_disk_gb=200,
            min_host_memory_gb=8, min_host_disk_gb=140, min_host_cpus=4),
    Profile("minimum", memory_gb=2, cpus=2, system_disk_gb=50, data_disk_gb=100,
            min_host_memory_gb=6, min_host_disk_gb=50, min_host_cpus=2),
)


def detect_host_resources(vm_dir: Path) -> HostResources:
    """Measure total memory, free disk where the VM will live, and CPU count."""
    info = get_host_info()
    memory_gb = int(info.get("mem_total", 0)) / GIB
    disk_gb = get_available_disk_space(vm_dir) / GIB
    cpus = int(info.get("cpu_count", 1))
    return HostResources(memory_gb=memory_gb, disk_gb=disk_gb, cpus=cpus)


def fitting_profiles(resources: HostResources, candidates: Sequence[Profile] = CANDIDATE_PROFILES) -> List[Profile]:
    return [profile for profile in candidates if profile.fits(resources)]


def _confirm(prompt: Callable[[str], str], question: str) -> bool:
    try:
        answer = prompt(question)
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _choose(prompt: Callable[[str], str], options: List[Profile]) -> Profile:
    print("Available profiles for this host:")
    for idx, profile in enumerate(options, start=1):
        print(
            f"  {idx}) {profile.name:<12} {profile.memory_gb}G RAM, {profile.cpus} CPUs, "
            f"{profile.system_disk_gb}G system + {profile.data_disk_gb}G data"
        )
    while True:
        try:
            raw = prompt(f"Select profile [1-{len(options)}] (default 1): ").strip()
        except EOFError:
            return options[0]
        if not raw:
            return options[0]
        if raw.isdigit() and 1 <= int(raw) <= len(options):
            return options[int(raw) - 1]
        print(f"Please enter a number between 1 and {len(options)}")


def select_profile(
    resources: HostResources,
    auto: bool = True,
    requested: Optional[str] = None,
    accept_below_minimum: bool = False,
    candidates: Sequence[Profile] = CANDIDATE_PROFILES,
    prompt: Callable[[str], str] = input,
) -> Profile:
    """Pick the sizing profile for this host.

    The best fitting candidate is chosen automatically in ``auto`` mode; an
    interactive run offers every fitting candidate. When nothing fits, the
    smallest profile is used only after explicit operator confirmation
    (``accept_below_minimum`` or an interactive yes); otherwise
    ``InsufficientResourcesError`` is raised.
    """
    log(
        "INFO",
        f"Host resources: {resources.memory_gb:.1f}G RAM, {resources.disk_gb:.1f}G free disk, {resources.cpus} CPUs",
    )
    floor = candidates[-1]
    options = fitting_profiles(resources, candidates)

    if requested is not None:
        matches = [profile for profile in candidates if profile.name == requested]
        if not matches:
            raise InsufficientResourcesError(f"Unknown profile '{requested}'")
        chosen = matches[0]
        if chosen.fits(resources):
            log("INFO", f"Using requested profile: {chosen.name}")
            return chosen
        options = []
        floor = chosen

    if options:
        if auto or len(options) == 1:
            chosen = options[0]
        else:
            chosen = _choose(prompt, options)
        log(
            "SUCCESS",
            f"Selected profile '{chosen.name}': {chosen.memory_gb}G RAM, {chosen.cpus} CPUs, "
            f"{chosen.system_disk_gb}G system disk, {chosen.data_disk_gb}G data disk",
        )
        return chosen

    shortfalls = "; ".join(floor.shortfalls(resources))
    message = (
        f"Host does not meet the '{floor.name}' profile requirements ({shortfalls}).\n"
        f"  Required: {floor.min_host_memory_gb}G RAM, {floor.min_host_disk_gb}G free disk, "
        f"{floor.min_host_cpus} CPUs\n"
        f"  Available: {resources.memory_gb:.1f}G RAM, {resources.disk_gb:.1f}G free disk, {resources.cpus} CPUs"
    )
    if accept_below_minimum:
        log("WARN", message)
        log("WARN", f"Continuing with '{floor.name}' profile as confirmed; expect slow builds")
        return floor
    if not auto:
        log("WARN", message)
        if _confirm(prompt, f"Continue with the '{floor.name}' profile anyway? [y/N]: "):
            log("WARN", f"Continuing with '{floor.name}' profile as confirmed")
            return floor
    raise InsufficientResourcesError(
        f"{message}\n"
        "  Possible fixes:\n"
        "    - Free disk space or memory on the host\n"
        "    - Re-run with --accept-minimum to proceed anyway"
    )
