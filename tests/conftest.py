import threading
import time
from collections import defaultdict

import pytest

from kubevirt_provider.errors import PublishError, RecordNotFoundError
from kubevirt_provider.kubevirt import WatchEvent
from kubevirt_provider.models import VMRecord
from kubevirt_provider.phase import RuntimeInstanceStatus
from kubevirt_provider.sync import ReconnectPolicy, StatusSynchronizer

NAMESPACE = "vms"


class FakeRecordStore:
    """In-memory RecordStore. ``journal`` is shared with FakePublisher to check ordering."""

    def __init__(self, journal=None):
        self.records = {}
        self.journal = journal if journal is not None else []
        self.fail_updates = False
        self.fail_gets = False
        self._lock = threading.Lock()

    def add(self, vm_id, status="IN_PROGRESS", namespace=NAMESPACE):
        record = VMRecord(
            id=vm_id,
            namespace=namespace,
            name=f"dcm-{vm_id}",
            vcpu=2,
            memory="2Gi",
            os_image="fedora",
            status=status,
        )
        self.records[vm_id] = record
        return record

    def get(self, vm_id):
        with self._lock:
            if self.fail_gets:
                raise RuntimeError("database timeout")
            try:
                return self.records[vm_id]
            except KeyError:
                raise RecordNotFoundError(vm_id) from None

    def update(self, record):
        with self._lock:
            if self.fail_updates:
                raise RuntimeError("database unavailable")
            if record.id not in self.records:
                raise RecordNotFoundError(record.id)
            self.records[record.id] = record
            self.journal.append(("update", record.id, record.status))

    def list(self):
        with self._lock:
            return list(self.records.values())

    def create(self, record):
        with self._lock:
            self.records[record.id] = record


class FakePublisher:
    def __init__(self, journal=None):
        self.events = []
        self.journal = journal if journal is not None else []
        self.error = None

    def publish(self, event):
        if self.error is not None:
            raise self.error
        self.events.append(event)
        self.journal.append(("publish", event.vm_id, event.phase))
        return 1

    def close(self):
        pass


class FakeReporter:
    def __init__(self):
        self.reports = []
        self.closed = False

    def report(self, vm_id, phase):
        self.reports.append((vm_id, phase))

    def close(self):
        self.closed = True


class FakeWatcher:
    """Plays scripted streams per VM id.

    Each script item is either a list of WatchEvents (one stream) or an
    exception raised when the stream is opened. Once a script runs out, an open
    stream waits until more is scripted or the session is stopped.
    """

    def __init__(self):
        self.scripts = defaultdict(list)
        self.calls = defaultdict(int)
        self._changed = threading.Condition()

    def script(self, vm_id, *streams):
        with self._changed:
            self.scripts[vm_id].extend(streams)
            self._changed.notify_all()

    def stream(self, namespace, vm_id, stop):
        with self._changed:
            self.calls[vm_id] += 1
            while not self.scripts[vm_id]:
                if stop.is_set():
                    return
                self._changed.wait(0.05)
            item = self.scripts[vm_id].pop(0)
        if isinstance(item, Exception):
            raise item
        for event in item:
            yield event


def vmi_event(vm_id, phase, event_type="MODIFIED", name=None, namespace=NAMESPACE):
    return WatchEvent(
        type=event_type,
        vm_id=vm_id,
        name=name or f"dcm-{vm_id}",
        namespace=namespace,
        status=RuntimeInstanceStatus(phase=phase),
    )


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def journal():
    return []


@pytest.fixture
def store(journal):
    return FakeRecordStore(journal)


@pytest.fixture
def publisher(journal):
    return FakePublisher(journal)


@pytest.fixture
def watcher():
    return FakeWatcher()


@pytest.fixture
def reporter():
    return FakeReporter()


@pytest.fixture
def fast_policy():
    return ReconnectPolicy(base_delay=0, max_delay=0, jitter=0)


@pytest.fixture
def synchronizer(store, publisher, watcher, fast_policy):
    sync = StatusSynchronizer(store, publisher, watcher, fast_policy)
    yield sync
    sync.stop(timeout=5)


@pytest.fixture
def publish_error():
    return PublishError("redis down")
