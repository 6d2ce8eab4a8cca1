"""Single-instance lock file.

Only one monitor may poll at a time, otherwise two processes would both
act on the same opportunity. The lock file holds the owner's PID; a file
whose PID is no longer running is treated as stale and replaced.

The PID is written to a private staging file first and hard-linked into
place, so the lock file never exists without its owner.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path

LOGGER = logging.getLogger(__name__)

# Age after which a lock file without a readable PID counts as abandoned.
UNREADABLE_LOCK_GRACE_SECONDS = 10.0


class InstanceLockError(RuntimeError):
    """Another live process already holds the lock."""


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class InstanceLock:
    def __init__(self, path: str | Path, grace_seconds: float = UNREADABLE_LOCK_GRACE_SECONDS) -> None:
        self._path = Path(path)
        self._grace_seconds = grace_seconds
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                self._publish_pid()
            except FileExistsError:
                self._remove_if_stale()
                continue
            self._held = True
            return
        raise InstanceLockError(f"could not acquire lock file {self._path}")

    def release(self) -> None:
        """Removes the lock file if this process owns it. Idempotent."""
        if not self._held:
            return
        self._held = False
        owner = self._read_owner()
        if owner is not None and owner != os.getpid():
            LOGGER.warning("lock file %s now owned by pid %s; leaving it", self._path, owner)
            return
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.error("failed to remove lock file %s: %s", self._path, exc)

    def _publish_pid(self) -> None:
        staging = self._path.with_name(f"{self._path.name}.{os.getpid()}.tmp")
        staging.write_text(str(os.getpid()), encoding="utf-8")
        try:
            os.link(staging, self._path)
        finally:
            staging.unlink(missing_ok=True)

    def _remove_if_stale(self) -> None:
        """Raises ``InstanceLockError`` unless the existing lock file is abandoned."""
        owner = self._read_owner()
        if owner is None:
            age = self._age_seconds()
            if age is None:
                return
            if age < self._grace_seconds:
                raise InstanceLockError(
                    f"lock file {self._path} has no readable pid yet ({age:.1f}s old); "
                    "another monitor may be starting"
                )
        elif owner != os.getpid() and _pid_alive(owner):
            raise InstanceLockError(f"monitor already running (pid {owner}); lock file {self._path}")
        LOGGER.warning("removing stale lock file %s (pid %s)", self._path, owner)
        self._path.unlink(missing_ok=True)

    def _age_seconds(self) -> float | None:
        try:
            return time.time() - self._path.stat().st_mtime
        except OSError:
            return None

    def _read_owner(self) -> int | None:
        try:
            text = self._path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            return int(text)
        except ValueError:
            return None
