"""Setup progress broadcasting for factory-vm."""

from __future__ import annotations

import time
from pathlib import Path

from factoryvm.utils import log


class StatusBroadcaster:
    """Append setup progress to a status file that other tools can poll.

    The file disappears when the run finishes, which is how pollers detect
    completion.
    """

    def __init__(self, status_file: Path) -> None:
        self.status_file = status_file
        self._done = False

    def update(self, msg: str) -> None:
        """Append a status message to the status file."""
        if self._done:
            return
        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.status_file, "a") as f:
                f.write(f"{time.strftime('%H:%M:%S')} {msg}\n")
                f.flush()
        except OSError as exc:
            log("DEBUG", f"Could not write status file {self.status_file}: {exc}")
        log("DEBUG", f"Status: {msg}")

    def finish(self) -> None:
        """Signal that the run is over; remove the status file so polling detects completion."""
        self._done = True
        try:
            self.status_file.unlink(missing_ok=True)
        except OSError as exc:
            log("DEBUG", f"Could not remove status file {self.status_file}: {exc}")
        log("DEBUG", "Status: setup finished")
