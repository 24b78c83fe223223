"""Host-side cache of the CI API token."""

from __future__ import annotations

import fcntl
import json
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from factoryvm.constants import GUEST_TOKEN_FILE, TOKEN_TTL_SECONDS
from factoryvm.exceptions import FactoryError, StepFailure
from factoryvm.models import TokenCacheEntry
from factoryvm.remote import RemoteShell
from factoryvm.utils import atomic_write_text, ensure_directory, log


class TokenCache:
    """Reuse the API token for ``ttl`` seconds, then refetch it exactly once.

    The cache file is rewritten atomically with owner-only permissions. The
    token itself is never logged; messages mention only its length.
    """

    def __init__(
        self,
        path: Path,
        fetch: Callable[[], str],
        ttl: float = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = path
        self.fetch = fetch
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()

    def _lock_path(self) -> Path:
        return self.path.with_name(f".{self.path.name}.lock")

    def read(self) -> Optional[TokenCacheEntry]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            log("WARN", f"Ignoring unreadable token cache {self.path}")
            return None
        if not isinstance(data, dict) or not isinstance(data.get("token"), str):
            return None
        try:
            fetched_at = float(data.get("fetched_at", 0))
        except (TypeError, ValueError):
            return None
        return TokenCacheEntry(token=data["token"].strip(), fetched_at=fetched_at)

    def write(self, entry: TokenCacheEntry) -> None:
        payload = json.dumps({"token": entry.token, "fetched_at": entry.fetched_at})
        atomic_write_text(self.path, payload + "\n", mode=0o600)

    def get_token(self, force_refresh: bool = False) -> str:
        with self._lock:
            ensure_directory(self.path.parent)
            with open(self._lock_path(), "w") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    return self._get_locked(force_refresh)
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _get_locked(self, force_refresh: bool) -> str:
        now = self.clock()
        entry = None if force_refresh else self.read()
        if entry is not None and entry.is_valid(now, self.ttl):
            age_days = (now - entry.fetched_at) / 86400
            log("DEBUG", f"Using cached API token ({age_days:.1f} days old)")
            return entry.token
        if entry is not None:
            log("INFO", "Cached API token expired; fetching a fresh one")
        token = self.fetch().strip()
        if not token:
            raise FactoryError("The CI server returned an empty API token")
        self.write(TokenCacheEntry(token=token, fetched_at=now))
        log("SUCCESS", f"API token cached at {self.path} ({len(token)} chars, mode 600)")
        return token

    def invalidate(self) -> None:
        self.path.unlink(missing_ok=True)
        self._lock_path().unlink(missing_ok=True)


def guest_token_fetcher(remote: RemoteShell) -> Callable[[], str]:
    """Return a callable that reads the persisted API token from the guest."""

    def _fetch() -> str:
        try:
            return remote.read_file(GUEST_TOKEN_FILE).decode("ascii").strip()
        except UnicodeDecodeError as exc:
            raise FactoryError(f"{GUEST_TOKEN_FILE} in the guest does not hold an API token") from exc
        except StepFailure as exc:
            raise FactoryError(
                f"Could not read the API token from the guest: {exc}\n"
                "  Possible fixes:\n"
                "    - Check Jenkins finished starting: factory-vm bootstrap --step ci-server"
            ) from exc

    return _fetch
