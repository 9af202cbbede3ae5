"""Single-run advisory locking for vhostcert.

A reconciliation pass mutates the web server configuration and the
certificate authority's state directory, so only one pass may run per host.
The lock is a file created with ``O_EXCL`` whose JSON body records the holder
and an expiry timestamp. A lock whose time-to-live elapsed, or whose holder
process no longer exists, is considered stale and replaced.
"""
from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DEFAULT_LOCK_NAME = "vhostcert"


class LockError(RuntimeError):
    """Raised when the lock file cannot be created or inspected."""


class LockBusyError(LockError):
    """Raised when another live process holds the lock."""

    def __init__(self, path: Path, holder: Mapping[str, object] | None) -> None:
        """Capture the lock path and the recorded holder metadata."""
        self.path = path
        self.holder = dict(holder or {})
        pid = self.holder.get("pid", "unknown")
        super().__init__(f"Lock {path} is held by pid {pid}.")


@dataclass(frozen=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int
    replaced_stale: bool = False


class LockManager:
    """Create and release TTL-bound lock files under ``runtime_dir``."""

    def __init__(self, runtime_dir: Path, ttl: float = 3600.0) -> None:
        """Remember where lock files live and how long they stay valid."""
        self.runtime_dir = Path(runtime_dir)
        self.ttl = float(ttl)

    def path_for(self, name: str = DEFAULT_LOCK_NAME) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def run_lock(self, name: str = DEFAULT_LOCK_NAME) -> Iterator[LockHandle]:
        """Hold the run lock for the duration of the ``with`` block.

        Raises :class:`LockBusyError` immediately when a live holder exists.
        """
        handle = self.acquire(name)
        try:
            yield handle
        finally:
            self.release(handle)

    def acquire(self, name: str = DEFAULT_LOCK_NAME) -> LockHandle:
        """Acquire the lock without waiting."""
        started = time.monotonic()
        path = self.path_for(name)
        try:
            self.runtime_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LockError(f"Cannot create lock directory {self.runtime_dir}: {exc}") from exc

        replaced = False
        # Two attempts: the second follows removal of a stale lock.
        for _attempt in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._read_metadata(path)
                if replaced or not self._is_stale(path, holder):
                    raise LockBusyError(path, holder) from None
                LOGGER.warning("Removing stale lock %s (holder %s).", path, holder or "unknown")
                path.unlink(missing_ok=True)
                replaced = True
                continue
            except OSError as exc:
                raise LockError(f"Cannot create lock file {path}: {exc}") from exc
            now = time.time()
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": now,
                "expires_at": now + self.ttl,
            }
            with os.fdopen(fd, "w", encoding="utf-8") as stream:
                json.dump(metadata, stream)
            wait_ms = int((time.monotonic() - started) * 1000)
            return LockHandle(path=path, wait_ms=wait_ms, replaced_stale=replaced)
        raise LockBusyError(path, self._read_metadata(path))  # pragma: no cover

    def release(self, handle: LockHandle) -> None:
        """Remove the lock file if this process still owns it."""
        holder = self._read_metadata(handle.path)
        if holder and holder.get("pid") not in (None, os.getpid()):
            LOGGER.warning(
                "Lock %s was taken over by pid %s; leaving it.", handle.path, holder["pid"]
            )
            return
        handle.path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    def _read_metadata(self, path: Path) -> dict[str, object] | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def _is_stale(self, path: Path, holder: Mapping[str, object] | None) -> bool:
        now = time.time()
        if holder is None:
            # Unreadable or half-written lock: fall back to the file age.
            try:
                return now - path.stat().st_mtime > self.ttl
            except FileNotFoundError:
                return True
        expires_at = holder.get("expires_at")
        if isinstance(expires_at, (int, float)) and now > expires_at:
            return True
        pid = holder.get("pid")
        if isinstance(pid, int) and not _pid_alive(pid):
            return True
        return False


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


__all__ = ["LockBusyError", "LockError", "LockHandle", "LockManager"]
