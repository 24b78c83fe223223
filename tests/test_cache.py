"""Tests for factoryvm.cache module."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from unittest.mock import patch

import pytest
import requests

from factoryvm.cache import (
    ISO_ARTIFACT,
    PLUGIN_PREFIX,
    DownloadCache,
    default_artifacts,
    plugin_artifact,
)
from factoryvm.exceptions import DownloadError, FactoryError
from factoryvm.models import ArtifactSpec


class FakeResponse:
    def __init__(self, chunks, status_code=200, reason="OK", content_length=None, fail_after=None):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.reason = reason
        self.headers = {}
        if content_length is not None:
            self.headers["Content-Length"] = str(content_length)
        self.fail_after = fail_after

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def iter_content(self, chunk_size=None):
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise requests.ConnectionError("connection reset by peer")
            yield chunk


class FakeSession:
    """Serves canned responses and counts requests per URL."""

    def __init__(self, responses=None, delay=0.0):
        self.headers = {}
        self.responses = responses or {}
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, stream=False, timeout=None):
        with self._lock:
            self.calls.append(url)
        if self.delay:
            time.sleep(self.delay)
        factory = self.responses.get(url)
        if factory is None:
            return FakeResponse([b"payload for " + url.encode()])
        return factory()


def _spec(name="tool", version="1.0", url="https://example.com/tool", sha256=None):
    return ArtifactSpec(name, version, url, suffix=".bin", sha256=sha256)


@pytest.fixture(autouse=True)
def quiet_log():
    with patch("factoryvm.cache.log"):
        yield


class TestDownloadCache:
    def test_second_fetch_uses_cache_without_network(self, tmp_path):
        session = FakeSession()
        cache = DownloadCache(tmp_path, session=session)
        first = cache.fetch(_spec())
        second = cache.fetch(_spec())
        assert session.calls == ["https://example.com/tool"]
        assert first.path == second.path
        assert first.path.read_bytes() == b"payload for https://example.com/tool"

    def test_fetch_all_twice_is_network_free_the_second_time(self, tmp_path, factory_config):
        session = FakeSession()
        cache = DownloadCache(tmp_path, session=session)
        specs = default_artifacts(factory_config)
        artifacts, failures = cache.fetch_all(specs)
        assert not failures
        assert len(session.calls) == len(specs)
        session.calls.clear()
        again, failures = cache.fetch_all(specs)
        assert session.calls == []
        assert set(again) == set(artifacts)

    def test_integrity_record_written(self, tmp_path):
        cache = DownloadCache(tmp_path, session=FakeSession())
        artifact = cache.fetch(_spec())
        meta = json.loads(artifact.path.with_name(artifact.path.name + ".json").read_text())
        assert meta["size"] == artifact.size_bytes
        assert meta["sha256"] == hashlib.sha256(artifact.path.read_bytes()).hexdigest()

    def test_corrupt_artifact_is_refetched(self, tmp_path):
        session = FakeSession()
        cache = DownloadCache(tmp_path, session=session)
        artifact = cache.fetch(_spec())
        artifact.path.write_bytes(b"trunc")
        refetched = cache.fetch(_spec())
        assert len(session.calls) == 2
        assert refetched.path.read_bytes() == b"payload for https://example.com/tool"

    def test_checksum_mismatch_in_cache_is_refetched(self, tmp_path):
        good = b"expected contents"
        digest = hashlib.sha256(good).hexdigest()
        url = "https://example.com/tool"
        session = FakeSession({url: lambda: FakeResponse([good])})
        cache = DownloadCache(tmp_path, session=session)
        artifact = cache.fetch(_spec(sha256=digest))
        artifact.path.write_bytes(b"tampered contents")
        cache.fetch(_spec(sha256=digest))
        assert len(session.calls) == 2
        assert artifact.path.read_bytes() == good

    def test_interrupted_download_leaves_no_partial_file(self, tmp_path):
        url = "https://example.com/tool"
        session = FakeSession({url: lambda: FakeResponse([b"a" * 10, b"b" * 10], fail_after=1)})
        cache = DownloadCache(tmp_path, session=session)
        with pytest.raises(DownloadError):
            cache.fetch(_spec())
        directory = tmp_path / "tool"
        assert not cache.path_for(_spec()).exists()
        assert not list(directory.glob("*.part"))

    def test_truncated_download_rejected(self, tmp_path):
        url = "https://example.com/tool"
        session = FakeSession({url: lambda: FakeResponse([b"abc"], content_length=100)})
        cache = DownloadCache(tmp_path, session=session)
        with pytest.raises(DownloadError, match="Truncated"):
            cache.fetch(_spec())
        assert cache.lookup(_spec()) is None

    def test_client_error_is_not_retried(self, tmp_path):
        url = "https://example.com/tool"
        session = FakeSession({url: lambda: FakeResponse([], status_code=404, reason="Not Found")})
        cache = DownloadCache(tmp_path, retries=3, backoff=0, session=session)
        with pytest.raises(DownloadError) as exc:
            cache.fetch_with_retry(_spec())
        assert not exc.value.retryable
        assert len(session.calls) == 1

    def test_server_error_is_retried(self, tmp_path):
        url = "https://example.com/tool"
        responses = iter([FakeResponse([], status_code=503, reason="Unavailable"), FakeResponse([b"ok"])])
        session = FakeSession({url: lambda: next(responses)})
        cache = DownloadCache(tmp_path, retries=3, backoff=0, session=session)
        with patch("factoryvm.cache.time.sleep"):
            artifact = cache.fetch_with_retry(_spec())
        assert artifact.path.read_bytes() == b"ok"
        assert len(session.calls) == 2

    def test_concurrent_fetch_of_same_key_downloads_once(self, tmp_path):
        session = FakeSession(delay=0.05)
        cache = DownloadCache(tmp_path, session=session)
        results = []

        def _worker():
            results.append(cache.fetch(_spec()))

        threads = [threading.Thread(target=_worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(session.calls) == 1
        assert len({result.path for result in results}) == 1

    def test_fetch_all_reports_failures_per_artifact(self, tmp_path):
        bad_url = "https://example.com/broken"
        session = FakeSession({bad_url: lambda: FakeResponse([], status_code=404, reason="Not Found")})
        cache = DownloadCache(tmp_path, backoff=0, session=session)
        artifacts, failures = cache.fetch_all([_spec(), _spec("broken", url=bad_url)])
        assert set(artifacts) == {"tool"}
        assert set(failures) == {"broken"}

    def test_fetch_all_disk_error_is_per_artifact(self, tmp_path):
        cache = DownloadCache(tmp_path, backoff=0, session=FakeSession())
        real_download = cache._download

        def _disk_full(spec):
            if spec.name == "helm":
                raise OSError(28, "No space left on device")
            return real_download(spec)

        with patch.object(cache, "_download", side_effect=_disk_full):
            artifacts, failures = cache.fetch_all([_spec(), _spec("helm", url="https://example.com/helm")])
        assert set(artifacts) == {"tool"}
        assert "No space left" in str(failures["helm"])
        assert not failures["helm"].retryable

    def test_fetch_all_rejects_two_versions_of_one_artifact(self, tmp_path):
        session = FakeSession()
        cache = DownloadCache(tmp_path, session=session)
        with pytest.raises(FactoryError, match="more than once: tool"):
            cache.fetch_all([_spec(version="1.0"), _spec(version="2.0")])
        assert session.calls == []

    def test_entries_and_clear(self, tmp_path):
        root = tmp_path / "cache"
        cache = DownloadCache(root, session=FakeSession())
        cache.fetch(_spec())
        entries = cache.entries()
        assert [entry.name for entry in entries] == ["tool"]
        cache.clear()
        assert not root.exists()
        assert cache.entries() == []


class TestArtifactSpecs:
    def test_default_artifacts_iso_first(self, factory_config):
        specs = default_artifacts(factory_config)
        assert specs[0].name == ISO_ARTIFACT
        assert specs[0].url.endswith("alpine-virt-3.19.1-aarch64.iso")
        plugins = [spec for spec in specs if spec.name.startswith(PLUGIN_PREFIX)]
        assert len(plugins) == len(factory_config.plugins)

    def test_pinned_plugin_url(self):
        spec = plugin_artifact("git", "5.2.1")
        assert spec.url.endswith("/download/plugins/git/5.2.1/git.hpi")
        assert spec.key == ("jenkins-plugin-git", "5.2.1")

    def test_latest_plugin_url(self):
        assert plugin_artifact("git", "latest").url.endswith("/latest/git.hpi")
