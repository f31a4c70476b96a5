"""
sync.py
-------
Keeps persisted VM records and subscribers in step with what KubeVirt reports.

:class:`StatusSynchronizer` supervises one :class:`WatchSession` thread per
tracked VM id. Each session consumes a label-filtered watch stream, derives the
canonical phase for every event and, when the phase differs from the stored
one, writes the record first and then publishes a :class:`VMEvent`.

A stream that closes normally is re-opened after the policy's base delay; a
stream that fails is re-opened with exponential backoff.

Sessions end when the record disappears, when the watched object is deleted,
when they are untracked, or when the reconnect budget runs out. A session only
ever unregisters itself, so a replacement session for the same id is never
removed by its predecessor.
"""
from __future__ import annotations

import logging
import random
import threading
from typing import Dict, List, Optional, Protocol

from .errors import PublishError, RecordNotFoundError
from .kubevirt import WatchEvent
from .models import VMEvent, VMRecord
from .phase import Phase, phase_for_event
from .store import RecordStore

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    def publish(self, event: VMEvent) -> int: ...


class Watcher(Protocol):
    def stream(self, namespace: str, vm_id: str, stop: threading.Event): ...


class Reporter(Protocol):
    def report(self, vm_id: str, phase: Phase) -> None: ...


class ReconnectPolicy:
    """Capped exponential backoff with proportional jitter.

    ``max_attempts=None`` retries forever; otherwise a session gives up after
    that many consecutive failed attempts.
    """

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 60.0,
        jitter: float = 0.1,
        max_attempts: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        if base_delay < 0 or max_delay < 0:
            raise ValueError("reconnect delays must not be negative")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect *attempt* (1-based)."""
        raw = min(self.max_delay, self.base_delay * 2 ** (max(attempt, 1) - 1))
        if self.jitter:
            raw *= 1 + self._rng.uniform(-self.jitter, self.jitter)
        return max(0.0, raw)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt > self.max_attempts


class WatchSession(threading.Thread):
    """Watch loop for a single VM id."""

    def __init__(self, owner: "StatusSynchronizer", vm_id: str, namespace: str):
        super().__init__(name=f"watch-{vm_id}", daemon=True)
        self.owner = owner
        self.vm_id = vm_id
        self.namespace = namespace
        self.stop_event = threading.Event()
        self.reconnects = 0
        self.failures = 0

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def stop(self) -> None:
        self.stop_event.set()

    def run(self) -> None:
        logger.info("Starting watch for VM %s in %s", self.vm_id, self.namespace)
        try:
            self._watch()
        finally:
            self.owner._remove(self)
            logger.info("Stopped watch for VM %s", self.vm_id)

    def _watch(self) -> None:
        policy = self.owner.policy
        while not self.stopped:
            try:
                for event in self.owner.watcher.stream(self.namespace, self.vm_id, self.stop_event):
                    self.failures = 0
                    if not self.owner.handle_event(self, event) or self.stopped:
                        return
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                if policy.exhausted(self.failures):
                    logger.error(
                        "Giving up on watch for VM %s after %d failed attempts: %s",
                        self.vm_id, self.failures, exc,
                    )
                    return
                delay = policy.delay(self.failures)
                self.reconnects += 1
                logger.warning(
                    "Watch for VM %s failed (%s), reconnecting in %.1fs (attempt %d)",
                    self.vm_id, exc, delay, self.failures,
                )
                if self.stop_event.wait(delay):
                    return
            else:
                if self.stopped:
                    return
                # A closed stream is re-opened after the base delay, never at once.
                delay = policy.delay(1)
                self.reconnects += 1
                logger.debug("Watch stream for VM %s closed, re-establishing in %.1fs", self.vm_id, delay)
                if self.stop_event.wait(delay):
                    return


class StatusSynchronizer:
    """Supervisor for per-VM watch sessions."""

    def __init__(
        self,
        store: RecordStore,
        publisher: Publisher,
        watcher: Watcher,
        policy: Optional[ReconnectPolicy] = None,
        reporter: Optional[Reporter] = None,
    ):
        self.store = store
        self.publisher = publisher
        self.watcher = watcher
        self.policy = policy or ReconnectPolicy()
        self.reporter = reporter
        self._sessions: Dict[str, WatchSession] = {}
        self._lock = threading.Lock()

    # -- supervision -------------------------------------------------------

    def start_all(self, stop_event: threading.Event) -> None:
        """Track every stored VM, then block until *stop_event* is set."""
        try:
            records = self.store.list()
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to list VM records, starting with no watches: %s", exc)
            records = []

        for record in records:
            self.track(record.id, record.namespace)
        logger.info("Status synchronizer tracking %d VM(s)", len(records))

        stop_event.wait()
        self.stop()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal every session and wait for them to finish."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.stop()
        for session in sessions:
            if session is not threading.current_thread():
                session.join(timeout)
        logger.info("Stopped %d watch session(s)", len(sessions))

    def track(self, vm_id: str, namespace: str) -> bool:
        """Start a session for *vm_id*; ``False`` if one is already running."""
        with self._lock:
            if vm_id in self._sessions:
                return False
            session = WatchSession(self, vm_id, namespace)
            self._sessions[vm_id] = session
            session.start()
        return True

    def untrack(self, vm_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(vm_id, None)
        if session is None:
            return False
        session.stop()
        return True

    def is_tracking(self, vm_id: str) -> bool:
        with self._lock:
            return vm_id in self._sessions

    def tracked_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def session(self, vm_id: str) -> Optional[WatchSession]:
        with self._lock:
            return self._sessions.get(vm_id)

    def _remove(self, session: WatchSession) -> None:
        with self._lock:
            if self._sessions.get(session.vm_id) is session:
                del self._sessions[session.vm_id]

    # -- event handling ----------------------------------------------------

    def handle_event(self, session: WatchSession, event: WatchEvent) -> bool:
        """Apply one watch event. Returns ``False`` when the session must end."""
        vm_id = session.vm_id
        phase = phase_for_event(event.type, event.status)
        logger.info("%s event for VM %s (%s): phase %s", event.type, vm_id, event.name, phase.value)

        try:
            record: Optional[VMRecord] = self.store.get(vm_id)
        except RecordNotFoundError:
            if event.type != "DELETED":
                logger.info("Record for VM %s no longer exists, stopping watch", vm_id)
                return False
            record = None
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to load record for VM %s: %s", vm_id, exc)
            if event.type != "DELETED":
                return True
            record = None

        if event.type == "DELETED":
            if record is not None and record.status != phase.value:
                self._write_status(record, phase)
            self._notify(session, event, phase)
            return False

        if record is None or record.status == phase.value:
            return True
        if not self._write_status(record, phase):
            return True
        self._notify(session, event, phase)
        return True

    def _write_status(self, record: VMRecord, phase: Phase) -> bool:
        try:
            self.store.update(record.model_copy(update={"status": phase.value}))
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to update status of VM %s to %s: %s", record.id, phase.value, exc)
            return False
        logger.info("VM %s status %s -> %s", record.id, record.status, phase.value)
        return True

    def _notify(self, session: WatchSession, event: WatchEvent, phase: Phase) -> None:
        vm_event = VMEvent(
            vm_id=session.vm_id,
            vm_name=event.name,
            namespace=event.namespace or session.namespace,
            phase=phase.value,
        )
        try:
            self.publisher.publish(vm_event)
        except PublishError as exc:
            logger.warning("Dropping %s event for VM %s: %s", phase.value, session.vm_id, exc)
        if self.reporter is not None:
            self.reporter.report(session.vm_id, phase)
