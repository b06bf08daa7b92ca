"""Per-host run locks.

Each host has one JSON lock file under ``lock_dir``. Files are created with
``O_CREAT | O_EXCL`` so only one holder exists at a time; an in-process mutex
serialises the check-then-reclaim path between scheduler threads.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional
import json
import logging
import os
import re
import threading
import time

from .errors import LockContention, StaleLock

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class HostLock:
    host: str
    owner: str
    pid: int
    acquired_at: float
    heartbeat_at: float
    path: Path
    reclaimed_from: Optional[str] = None
    stale_age: float = 0.0

    def payload(self) -> dict:
        data = asdict(self)
        data.pop("path")
        data.pop("reclaimed_from")
        data.pop("stale_age")
        return data


class LockManager:
    def __init__(
        self,
        lock_dir: Path,
        timeout: float = 3600.0,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.lock_dir = Path(lock_dir)
        self.timeout = timeout
        self.clock = clock
        self._mutex = threading.Lock()

    def path_for(self, host: str) -> Path:
        return self.lock_dir / f"{_UNSAFE_CHARS.sub('_', host)}.lock"

    def acquire(self, host: str, owner: str) -> HostLock:
        """Take the lock for ``host`` or raise :class:`LockContention`.

        A lock whose heartbeat is older than ``timeout`` is reclaimed.
        """

        path = self.path_for(host)
        with self._mutex:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            now = self.clock()
            lock = HostLock(host, owner, os.getpid(), now, now, path)
            if self._create(lock):
                logger.debug("Acquired lock for %s (run %s)", host, owner)
                return lock

            current = self._read(path)
            holder = current.get("owner") if current else None
            age = now - float(current.get("heartbeat_at", 0)) if current else self._file_age(path, now)
            if age <= self.timeout:
                raise LockContention(host, holder)

            stale = StaleLock(host, holder, age)
            logger.warning("Reclaiming stale lock: %s", stale)
            path.unlink(missing_ok=True)
            if not self._create(lock):
                raise LockContention(host, holder)
            lock.reclaimed_from = holder or "unknown"
            lock.stale_age = age
            return lock

    def heartbeat(self, lock: HostLock) -> bool:
        """Refresh ``lock``; ``False`` when it is no longer ours."""

        with self._mutex:
            current = self._read(lock.path)
            if not current or current.get("owner") != lock.owner:
                logger.warning("Lock for %s is no longer held by run %s", lock.host, lock.owner)
                return False
            lock.heartbeat_at = self.clock()
            tmp = lock.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(lock.payload(), sort_keys=True))
            os.replace(tmp, lock.path)
            return True

    def release(self, lock: HostLock) -> None:
        with self._mutex:
            current = self._read(lock.path)
            if not current or current.get("owner") != lock.owner:
                logger.warning(
                    "Not releasing lock for %s: owned by %s", lock.host, current.get("owner") if current else None
                )
                return
            lock.path.unlink(missing_ok=True)
            logger.debug("Released lock for %s (run %s)", lock.host, lock.owner)

    def holder(self, host: str) -> Optional[str]:
        current = self._read(self.path_for(host))
        return current.get("owner") if current else None

    @staticmethod
    def _create(lock: HostLock) -> bool:
        try:
            fd = os.open(lock.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(lock.payload(), sort_keys=True))
        return True

    @staticmethod
    def _read(path: Path) -> Optional[dict]:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    @staticmethod
    def _file_age(path: Path, now: float) -> float:
        try:
            return now - path.stat().st_mtime
        except FileNotFoundError:
            return 0.0


class Heartbeat(threading.Thread):
    """Refreshes a held lock until stopped."""

    def __init__(self, manager: LockManager, lock: HostLock, interval: float):
        super().__init__(name=f"heartbeat-{lock.host}", daemon=True)
        self.manager = manager
        self.lock = lock
        self.interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.interval):
            if not self.manager.heartbeat(self.lock):
                return

    def stop(self) -> None:
        self._stopped.set()
        if self.is_alive():
            self.join()
