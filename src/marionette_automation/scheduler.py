"""Pull-mode agent: one loop thread per host, each guarded by the host lock.

Loop states::

    idle -> acquiring -> running -> releasing -> idle
    acquiring -> blocked -> idle    (lock held elsewhere; retried next interval)
    idle -> stopped                 (stop requested)

A stop request never interrupts a running attempt; the loop finishes the
attempt, releases the lock and then stops.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Iterable, Optional
import logging
import threading
import uuid

from .audit import AuditLog
from .errors import FetchError, LockContention
from .locks import Heartbeat, LockManager
from .repository import ConfigRepository

logger = logging.getLogger(__name__)

RunOnce = Callable[[str, str], Any]


class LoopState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    RUNNING = "running"
    RELEASING = "releasing"
    BLOCKED = "blocked"
    STOPPED = "stopped"


class HostLoop(threading.Thread):
    def __init__(
        self,
        host: str,
        run_once: RunOnce,
        lock_manager: LockManager,
        *,
        interval: float,
        repository: Optional[ConfigRepository] = None,
        audit: Optional[AuditLog] = None,
        fetch_timeout: Optional[float] = None,
        redact: Optional[Callable[[str], str]] = None,
    ):
        super().__init__(name=f"pull-{host}", daemon=True)
        self.host = host
        self.run_once = run_once
        self.lock_manager = lock_manager
        self.interval = interval
        self.repository = repository
        self.audit = audit
        self.fetch_timeout = fetch_timeout
        self.redact = redact or (lambda text: text)
        self.state = LoopState.IDLE
        self.transitions: list[LoopState] = [LoopState.IDLE]
        self._state_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_requested = threading.Event()

    def run(self) -> None:
        while not self._stop_requested.is_set():
            # Cleared before the attempt: a trigger that lands while it runs
            # makes the following wait return at once.
            self._wake.clear()
            self.attempt()
            if self._stop_requested.is_set():
                break
            self._wake.wait(self.interval)
        self._set(LoopState.STOPPED)

    def attempt(self) -> Any:
        """One acquire, fetch, run and release cycle. Returns the run outcome."""

        owner = uuid.uuid4().hex
        self._set(LoopState.ACQUIRING)
        try:
            lock = self.lock_manager.acquire(self.host, owner)
        except LockContention as exc:
            self._set(LoopState.BLOCKED)
            logger.info("Skipping run for %s: %s", self.host, exc)
            self._event("lock_contention", str(exc), level="info", holder=exc.owner)
            self._set(LoopState.IDLE)
            return None

        self._set(LoopState.RUNNING)
        if lock.reclaimed_from is not None:
            self._event("stale_lock", f"reclaimed lock held by {lock.reclaimed_from}", age=round(lock.stale_age, 1))
        heartbeat = Heartbeat(self.lock_manager, lock, max(self.lock_manager.timeout / 4, 1.0))
        heartbeat.start()
        try:
            if self.repository is not None:
                self.repository.sync(self.fetch_timeout)
            return self.run_once(self.host, owner)
        except FetchError as exc:
            logger.error("Config fetch failed for %s: %s", self.host, exc)
            self._event("fetch_failed", str(exc), level="error")
            return None
        except Exception as exc:  # noqa: BLE001
            message = self.redact(str(exc))
            logger.error("Run failed for %s: %s", self.host, message, exc_info=True)
            self._event("run_error", message, level="error")
            return None
        finally:
            heartbeat.stop()
            self._set(LoopState.RELEASING)
            self.lock_manager.release(lock)
            self._set(LoopState.IDLE)

    def trigger(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self._stop_requested.set()
        self._wake.set()

    def _set(self, state: LoopState) -> None:
        with self._state_lock:
            if state is self.state:
                return
            logger.debug("loop=%s %s -> %s", self.host, self.state.value, state.value)
            self.state = state
            self.transitions.append(state)

    def _event(self, event: str, detail: str, *, level: str = "warning", **extra: Any) -> None:
        if self.audit is not None:
            self.audit.record_event(event, self.host, detail, level=level, **extra)


class PullScheduler:
    def __init__(
        self,
        hosts: Iterable[str],
        run_once: RunOnce,
        lock_manager: LockManager,
        *,
        interval: float,
        repository: Optional[ConfigRepository] = None,
        audit: Optional[AuditLog] = None,
        fetch_timeout: Optional[float] = None,
        redact: Optional[Callable[[str], str]] = None,
    ):
        self.loops = {
            host: HostLoop(
                host,
                run_once,
                lock_manager,
                interval=interval,
                repository=repository,
                audit=audit,
                fetch_timeout=fetch_timeout,
                redact=redact,
            )
            for host in hosts
        }

    def start(self) -> None:
        for loop in self.loops.values():
            logger.info("Starting pull loop for %s (every %ss)", loop.host, loop.interval)
            loop.start()

    def run_once(self) -> dict[str, Any]:
        """Run a single attempt per host in the calling thread."""

        return {host: loop.attempt() for host, loop in self.loops.items()}

    def trigger(self, host: Optional[str] = None) -> None:
        if host is None:
            for loop in self.loops.values():
                loop.trigger()
            return
        try:
            self.loops[host].trigger()
        except KeyError:
            raise ValueError(f"no pull loop for host '{host}'") from None

    def stop(self) -> None:
        logger.info("Stopping pull loops")
        for loop in self.loops.values():
            loop.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        for loop in self.loops.values():
            if loop.is_alive():
                loop.join(timeout)

    def alive(self) -> bool:
        return any(loop.is_alive() for loop in self.loops.values())

    def states(self) -> dict[str, LoopState]:
        return {host: loop.state for host, loop in self.loops.items()}
