"""Content-addressed download cache for installer media, tools and plugins."""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import shutil
import tempfile
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import requests

from factoryvm.constants import ALPINE_MIRROR, JENKINS_UPDATE_CENTER
from factoryvm.exceptions import CacheCorruption, DownloadError, FactoryError
from factoryvm.models import ArtifactSpec, CachedArtifact, FactoryConfig
from factoryvm.utils import ensure_directory, log

ISO_ARTIFACT = "alpine-virt-iso"
KUBECTL_ARTIFACT = "kubectl"
HELM_ARTIFACT = "helm"
TERRAFORM_ARTIFACT = "terraform"
PLUGIN_PREFIX = "jenkins-plugin-"

CHUNK_SIZE = 1024 * 256  # 256 KiB
USER_AGENT = "factory-vm/1.0"


def plugin_artifact(plugin: str, version: str) -> ArtifactSpec:
    if version == "latest":
        url = f"{JENKINS_UPDATE_CENTER}/latest/{plugin}.hpi"
    else:
        url = f"{JENKINS_UPDATE_CENTER}/download/plugins/{plugin}/{version}/{plugin}.hpi"
    return ArtifactSpec(f"{PLUGIN_PREFIX}{plugin}", version, url, suffix=".hpi")


def default_artifacts(config: FactoryConfig) -> List[ArtifactSpec]:
    """Everything a full setup downloads, ISO first."""
    release = config.alpine_release
    specs = [
        ArtifactSpec(
            ISO_ARTIFACT,
            release,
            f"{ALPINE_MIRROR}/v{config.alpine_version}/releases/aarch64/alpine-virt-{release}-aarch64.iso",
            suffix=".iso",
        ),
        ArtifactSpec(
            KUBECTL_ARTIFACT,
            config.kubectl_version,
            f"https://dl.k8s.io/release/v{config.kubectl_version}/bin/linux/arm64/kubectl",
        ),
        ArtifactSpec(
            HELM_ARTIFACT,
            config.helm_version,
            f"https://get.helm.sh/helm-v{config.helm_version}-linux-arm64.tar.gz",
            suffix=".tar.gz",
        ),
        ArtifactSpec(
            TERRAFORM_ARTIFACT,
            config.terraform_version,
            "https://releases.hashicorp.com/terraform/"
            f"{config.terraform_version}/terraform_{config.terraform_version}_linux_arm64.zip",
            suffix=".zip",
        ),
    ]
    specs.extend(plugin_artifact(plugin, config.plugin_version) for plugin in config.plugins)
    return specs


class DownloadCache:
    """Fetch artifacts once and serve them from ``root`` afterwards.

    Layout is ``<root>/<name>/<version><suffix>`` with a JSON sidecar holding
    the recorded size and SHA-256. Files only appear at their final path via
    rename, so a crash mid-download never leaves a file that looks complete.
    """

    def __init__(
        self,
        root: Path,
        workers: int = 3,
        retries: int = 3,
        backoff: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.root = root
        self.workers = max(1, workers)
        self.retries = max(1, retries)
        self.backoff = backoff
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, spec: ArtifactSpec) -> Path:
        return self.root / spec.name / spec.filename

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + ".json")

    def _key_lock(self, key: Tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def _locked(self, spec: ArtifactSpec) -> Iterator[None]:
        directory = self.root / spec.name
        ensure_directory(directory)
        with self._key_lock(spec.key):
            with open(directory / f".{spec.filename}.lock", "w") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _validate(self, spec: ArtifactSpec) -> Optional[CachedArtifact]:
        """Return the cached artifact, None when absent, or raise CacheCorruption."""
        path = self.path_for(spec)
        if not path.exists():
            return None
        size = path.stat().st_size
        if size == 0:
            raise CacheCorruption(f"{path} is empty")
        meta_path = self._meta_path(path)
        try:
            meta = json.loads(meta_path.read_text())
        except (OSError, ValueError) as exc:
            raise CacheCorruption(f"{path} has no readable integrity record ({exc})")
        if meta.get("size") != size:
            raise CacheCorruption(f"{path} is {size} bytes, expected {meta.get('size')}")
        if spec.sha256:
            digest = _sha256_file(path)
            if digest != spec.sha256.lower():
                raise CacheCorruption(f"{path} checksum {digest[:12]}... does not match {spec.sha256[:12]}...")
        return CachedArtifact(spec.name, spec.version, path, size)

    def lookup(self, spec: ArtifactSpec) -> Optional[CachedArtifact]:
        """Return a valid cached artifact without touching the network."""
        try:
            return self._validate(spec)
        except CacheCorruption:
            return None

    def fetch(self, spec: ArtifactSpec) -> CachedArtifact:
        with self._locked(spec):
            try:
                cached = self._validate(spec)
            except CacheCorruption as exc:
                log("WARN", f"Cached {spec.name} {spec.version} is corrupt ({exc}); re-downloading")
                self._discard(spec)
                cached = None
            if cached is not None:
                log("INFO", f"Using cached {spec.name} {spec.version}: {cached.path}")
                return cached
            return self._download(spec)

    def fetch_with_retry(self, spec: ArtifactSpec) -> CachedArtifact:
        for attempt in range(1, self.retries + 1):
            try:
                return self.fetch(spec)
            except DownloadError as exc:
                if not exc.retryable or attempt >= self.retries:
                    raise
                delay = self.backoff * attempt
                log("WARN", f"Download attempt {attempt}/{self.retries} for {spec.name} failed: {exc}")
                log("INFO", f"Retrying in {delay:.0f}s...")
                time.sleep(delay)
        raise DownloadError(f"Failed to download {spec.name} after {self.retries} attempts")  # pragma: no cover

    def fetch_all(
        self, specs: Sequence[ArtifactSpec]
    ) -> Tuple[Dict[str, CachedArtifact], Dict[str, DownloadError]]:
        """Fetch independent artifacts concurrently, at most ``workers`` at a time.

        Results are keyed by artifact name, so each name may be requested once.
        Failures are collected per artifact rather than raised so one bad
        mirror or a full disk does not hide the artifacts that did arrive.
        """
        artifacts: Dict[str, CachedArtifact] = {}
        failures: Dict[str, DownloadError] = {}
        if not specs:
            return artifacts, failures
        names = Counter(spec.name for spec in specs)
        duplicated = sorted(name for name, count in names.items() if count > 1)
        if duplicated:
            raise FactoryError(f"Artifacts requested more than once: {', '.join(duplicated)}")
        log("INFO", f"Fetching {len(specs)} artifacts ({self.workers} parallel)")
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="fetch") as pool:
            futures = {pool.submit(self.fetch_with_retry, spec): spec for spec in specs}
            for future in as_completed(futures):
                spec = futures[future]
                try:
                    artifacts[spec.name] = future.result()
                except DownloadError as exc:
                    log("ERROR", f"Could not fetch {spec.name} {spec.version}: {exc}")
                    failures[spec.name] = exc
                except OSError as exc:
                    log("ERROR", f"Could not store {spec.name} {spec.version}: {exc}")
                    failures[spec.name] = DownloadError(f"Could not store {spec.name}: {exc}", retryable=False)
        return artifacts, failures

    def _discard(self, spec: ArtifactSpec) -> None:
        path = self.path_for(spec)
        path.unlink(missing_ok=True)
        self._meta_path(path).unlink(missing_ok=True)

    def _download(self, spec: ArtifactSpec) -> CachedArtifact:
        destination = self.path_for(spec)
        log("INFO", f"Downloading {spec.name} {spec.version}: {spec.url}")
        start_time = time.time()
        try:
            response = self.session.get(spec.url, stream=True, timeout=(15, 60))
        except requests.RequestException as exc:
            raise DownloadError(f"Failed to download {spec.url}: {exc}")
        with response:
            if response.status_code >= 400:
                raise DownloadError(
                    f"HTTP error downloading {spec.url}: {response.status_code} {response.reason}",
                    retryable=response.status_code >= 500 or response.status_code == 429,
                )
            total = response.headers.get("Content-Length")
            expected = int(total) if total and total.isdigit() else None
            digest = hashlib.sha256()
            downloaded = 0
            fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.", suffix=".part")
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as tmp:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        tmp.write(chunk)
                        digest.update(chunk)
                        downloaded += len(chunk)
                if downloaded == 0:
                    raise DownloadError(f"Empty response from {spec.url}")
                if expected is not None and downloaded != expected:
                    raise DownloadError(f"Truncated download of {spec.url}: {downloaded} of {expected} bytes")
                sha256 = digest.hexdigest()
                if spec.sha256 and sha256 != spec.sha256.lower():
                    raise DownloadError(f"Checksum mismatch for {spec.url}", retryable=False)
                meta = {"size": downloaded, "sha256": sha256, "url": spec.url}
                self._meta_path(destination).write_text(json.dumps(meta, indent=2))
                tmp_path.replace(destination)
            except requests.RequestException as exc:
                tmp_path.unlink(missing_ok=True)
                raise DownloadError(f"Connection lost while downloading {spec.url}: {exc}")
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise
        elapsed = time.time() - start_time
        log("SUCCESS", f"Downloaded {spec.name} {spec.version}: {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
        return CachedArtifact(spec.name, spec.version, destination, downloaded)

    def entries(self) -> List[CachedArtifact]:
        """List every file in the cache that still passes its integrity record."""
        found: List[CachedArtifact] = []
        if not self.root.exists():
            return found
        for meta_path in sorted(self.root.glob("*/*.json")):
            path = meta_path.with_name(meta_path.name[: -len(".json")])
            if not path.exists():
                continue
            try:
                meta = json.loads(meta_path.read_text())
            except ValueError:
                continue
            if meta.get("size") == path.stat().st_size:
                found.append(CachedArtifact(path.parent.name, path.name, path, meta["size"]))
        return found

    def clear(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
            log("INFO", f"Removed download cache {self.root}")


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()
