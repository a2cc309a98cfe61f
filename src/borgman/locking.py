from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

LOG = logging.getLogger(__name__)

LOCK_SUFFIX = ".borgman.lock"
GUARD_SUFFIX = ".guard"


class LockBusy(Exception):
    """Raised when another live holder owns the repository lock."""

    def __init__(self, path: Path, holder: Optional[Dict[str, Any]] = None) -> None:
        self.path = path
        self.holder = holder or {}
        pid = self.holder.get("pid", "?")
        host = self.holder.get("hostname", "?")
        since = self.holder.get("acquired_at", "?")
        super().__init__(f"Repository {path} is locked by pid {pid} on {host} since {since}")


class LockReleaseError(Exception):
    """Raised when a held lock could not be removed."""


@dataclass
class LockHandle:
    repository_path: Path
    lock_path: Path
    token: str
    pid: int
    hostname: str
    acquired_at: datetime
    released: bool = field(default=False, compare=False)

    def to_record(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "token": self.token,
            "acquired_at": self.acquired_at.isoformat(),
            "repository": str(self.repository_path),
        }


def lock_path_for(repository_path: Path) -> Path:
    """Lock file sits beside the repository so syncing the repository never copies it."""
    repository_path = Path(repository_path)
    return repository_path.parent / f".{repository_path.name}{LOCK_SUFFIX}"


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RepositoryLockManager:
    """Host-wide exclusive locks over backup repositories.

    The lock itself is a file created with ``O_EXCL``. Inspecting, reclaiming
    and removing it happen while holding ``flock`` on a sibling guard file, so
    two callers can never both decide the same stale lock is theirs.
    """

    def __init__(self, stale_after: float = 3600.0, hostname: Optional[str] = None) -> None:
        self._stale_after = stale_after
        self._hostname = hostname or socket.gethostname()
        self._held: Dict[str, LockHandle] = {}

    def acquire(self, repository_path: Path) -> LockHandle:
        repository_path = Path(repository_path)
        lock_path = lock_path_for(repository_path)
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        with self._guard(lock_path):
            if lock_path.exists():
                holder = self._read_record(lock_path)
                if not self._is_stale(lock_path, holder):
                    raise LockBusy(repository_path, holder)
                LOG.warning(
                    "Reclaiming stale lock %s (previous holder pid %s on %s)",
                    lock_path,
                    (holder or {}).get("pid", "?"),
                    (holder or {}).get("hostname", "?"),
                )
                lock_path.unlink()

            handle = LockHandle(
                repository_path=repository_path,
                lock_path=lock_path,
                token=uuid.uuid4().hex,
                pid=os.getpid(),
                hostname=self._hostname,
                acquired_at=datetime.now(timezone.utc),
            )
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError as exc:
                raise LockBusy(repository_path, self._read_record(lock_path)) from exc
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(handle.to_record(), fh)
                fh.flush()
                os.fsync(fh.fileno())

        self._held[handle.token] = handle
        LOG.info("Acquired lock %s", lock_path)
        return handle

    def release(self, handle: LockHandle) -> None:
        if handle.released:
            return

        with self._guard(handle.lock_path):
            holder = self._read_record(handle.lock_path)
            if holder is None and not handle.lock_path.exists():
                LOG.warning("Lock %s already removed", handle.lock_path)
            elif holder is not None and holder.get("token") != handle.token:
                raise LockReleaseError(
                    f"Lock {handle.lock_path} is now owned by pid {holder.get('pid')}; not removing it"
                )
            else:
                try:
                    handle.lock_path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    raise LockReleaseError(f"Failed to remove lock {handle.lock_path}: {exc}") from exc

        handle.released = True
        self._held.pop(handle.token, None)
        LOG.info("Released lock %s", handle.lock_path)

    @contextmanager
    def hold(self, repository_path: Path) -> Iterator[LockHandle]:
        handle = self.acquire(repository_path)
        try:
            yield handle
        finally:
            self.release(handle)

    def is_locked(self, repository_path: Path) -> bool:
        lock_path = lock_path_for(Path(repository_path))
        with self._guard(lock_path):
            if not lock_path.exists():
                return False
            return not self._is_stale(lock_path, self._read_record(lock_path))

    # Internal helpers ------------------------------------------------------
    @contextmanager
    def _guard(self, lock_path: Path) -> Iterator[None]:
        guard_path = lock_path.with_name(lock_path.name + GUARD_SUFFIX)
        fd = os.open(guard_path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _is_stale(self, lock_path: Path, holder: Optional[Dict[str, Any]]) -> bool:
        if holder is None:
            try:
                age = time.time() - lock_path.stat().st_mtime
            except FileNotFoundError:
                return True
            return age >= self._stale_after

        if holder.get("token") in self._held:
            return False
        if holder.get("hostname") != self._hostname:
            # Liveness of a remote holder cannot be checked from here.
            return False
        try:
            pid = int(holder.get("pid", 0))
        except (TypeError, ValueError):
            return False
        return not pid_alive(pid)

    @staticmethod
    def _read_record(lock_path: Path) -> Optional[Dict[str, Any]]:
        try:
            raw = lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOG.warning("Cannot read lock %s: %s", lock_path, exc)
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            LOG.warning("Lock %s is not valid JSON", lock_path)
            return None
        return record if isinstance(record, dict) else None
