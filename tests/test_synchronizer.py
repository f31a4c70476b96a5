import random
import threading
import time

import pytest

from conftest import vmi_event, wait_for
from kubevirt_provider.errors import WatchError
from kubevirt_provider.phase import Phase
from kubevirt_provider.sync import ReconnectPolicy, StatusSynchronizer


# ---------------------------------------------------------------------------
# Reconnect policy -----------------------------------------------------------
# ---------------------------------------------------------------------------

def test_reconnect_delay_doubles_and_caps():
    policy = ReconnectPolicy(base_delay=5, max_delay=60, jitter=0)
    assert [policy.delay(n) for n in range(1, 7)] == [5, 10, 20, 40, 60, 60]


def test_reconnect_delay_jitter_stays_within_bounds():
    policy = ReconnectPolicy(base_delay=10, max_delay=60, jitter=0.2, rng=random.Random(7))
    for _ in range(100):
        assert 8.0 <= policy.delay(1) <= 12.0


def test_reconnect_policy_unbounded_by_default():
    assert not ReconnectPolicy().exhausted(10_000)
    bounded = ReconnectPolicy(max_attempts=3)
    assert not bounded.exhausted(3)
    assert bounded.exhausted(4)


def test_reconnect_policy_rejects_bad_jitter():
    with pytest.raises(ValueError):
        ReconnectPolicy(jitter=1.5)


# ---------------------------------------------------------------------------
# Event handling -------------------------------------------------------------
# ---------------------------------------------------------------------------

def test_phase_change_writes_record_before_publishing(synchronizer, store, publisher, watcher, journal):
    store.add("vm-1", status="IN_PROGRESS")
    watcher.script("vm-1", [vmi_event("vm-1", "Running")])

    assert synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: len(publisher.events) == 1)

    assert store.records["vm-1"].status == "Running"
    assert journal == [("update", "vm-1", "Running"), ("publish", "vm-1", "Running")]
    event = publisher.events[0]
    assert event.vm_name == "dcm-vm-1"
    assert event.namespace == "vms"


def test_unchanged_phase_is_not_published(synchronizer, store, publisher, watcher):
    store.add("vm-1", status="Running")
    watcher.script("vm-1", [vmi_event("vm-1", "Running"), vmi_event("vm-1", "Running")])

    synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: watcher.calls["vm-1"] >= 2)

    assert publisher.events == []


def test_one_event_per_transition(synchronizer, store, publisher, watcher):
    store.add("vm-1")
    watcher.script(
        "vm-1",
        [
            vmi_event("vm-1", "Pending", event_type="ADDED"),
            vmi_event("vm-1", "Pending"),
            vmi_event("vm-1", "Scheduled"),
            vmi_event("vm-1", "Running"),
            vmi_event("vm-1", "Running"),
        ],
    )

    synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: watcher.calls["vm-1"] >= 2)

    assert [e.phase for e in publisher.events] == ["Pending", "Scheduled", "Running"]


def test_store_update_failure_skips_publish(synchronizer, store, publisher, watcher):
    store.add("vm-1")
    store.fail_updates = True
    watcher.script("vm-1", [vmi_event("vm-1", "Running")])

    synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: watcher.calls["vm-1"] >= 2)

    assert publisher.events == []
    assert synchronizer.is_tracking("vm-1")


def test_publish_error_is_dropped(synchronizer, store, publisher, watcher, publish_error):
    store.add("vm-1")
    publisher.error = publish_error
    watcher.script("vm-1", [vmi_event("vm-1", "Failed")])

    synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: watcher.calls["vm-1"] >= 2)

    assert store.records["vm-1"].status == "Failed"
    assert synchronizer.is_tracking("vm-1")


def test_deleted_event_publishes_single_stopped_and_ends_session(synchronizer, store, publisher, watcher):
    store.add("vm-1", status="Running")
    watcher.script(
        "vm-1",
        [
            vmi_event("vm-1", "Running"),
            vmi_event("vm-1", "Running", event_type="DELETED"),
            vmi_event("vm-1", "Failed"),
        ],
    )

    synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: not synchronizer.is_tracking("vm-1"))

    assert [(e.vm_id, e.phase) for e in publisher.events] == [("vm-1", "Stopped")]
    assert store.records["vm-1"].status == "Stopped"


def test_deleted_event_without_record_still_publishes_stopped(synchronizer, publisher, watcher):
    watcher.script("vm-1", [vmi_event("vm-1", "Succeeded", event_type="DELETED")])

    synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: not synchronizer.is_tracking("vm-1"))

    assert [e.phase for e in publisher.events] == ["Stopped"]


def test_missing_record_ends_session(synchronizer, publisher, watcher):
    watcher.script("vm-1", [vmi_event("vm-1", "Running")])

    synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: not synchronizer.is_tracking("vm-1"))

    assert publisher.events == []


def test_status_callback_receives_transition(store, publisher, watcher, fast_policy, reporter):
    sync = StatusSynchronizer(store, publisher, watcher, fast_policy, reporter)
    store.add("vm-1")
    watcher.script("vm-1", [vmi_event("vm-1", "Running")])
    try:
        sync.track("vm-1", "vms")
        assert wait_for(lambda: reporter.reports == [("vm-1", Phase.RUNNING)])
    finally:
        sync.stop(timeout=5)


# ---------------------------------------------------------------------------
# Session bookkeeping --------------------------------------------------------
# ---------------------------------------------------------------------------

def test_track_is_a_noop_for_tracked_id(synchronizer, store):
    store.add("vm-1")
    assert synchronizer.track("vm-1", "vms") is True
    assert synchronizer.track("vm-1", "vms") is False
    assert synchronizer.tracked_ids() == ["vm-1"]


def test_concurrent_track_starts_one_session(synchronizer, store):
    store.add("vm-1")
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(synchronizer.track("vm-1", "vms"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert synchronizer.tracked_ids() == ["vm-1"]


def test_untrack_stops_session(synchronizer, store):
    store.add("vm-1")
    synchronizer.track("vm-1", "vms")
    session = synchronizer.session("vm-1")

    assert synchronizer.untrack("vm-1") is True
    session.join(5)

    assert not session.is_alive()
    assert not synchronizer.is_tracking("vm-1")
    assert synchronizer.untrack("vm-1") is False


def test_finished_session_does_not_remove_its_replacement(synchronizer, store):
    store.add("vm-1")
    synchronizer.track("vm-1", "vms")
    old = synchronizer.session("vm-1")
    synchronizer.untrack("vm-1")
    synchronizer.track("vm-1", "vms")
    replacement = synchronizer.session("vm-1")

    old.join(5)

    assert replacement is not old
    assert synchronizer.session("vm-1") is replacement


def test_reconnects_after_stream_failures(synchronizer, store, publisher, watcher):
    store.add("vm-1")
    watcher.script(
        "vm-1",
        RuntimeError("connection reset"),
        WatchError("too old resource version"),
        [vmi_event("vm-1", "Running")],
    )

    synchronizer.track("vm-1", "vms")
    session = synchronizer.session("vm-1")
    # Two failed opens, one stream that closes normally, then an idle fourth stream.
    assert wait_for(lambda: watcher.calls["vm-1"] >= 4)

    assert len(publisher.events) == 1
    assert session.reconnects == 3
    assert session.failures == 0


class ClosingWatcher:
    """Every stream closes immediately without yielding anything."""

    def __init__(self):
        self.calls = 0

    def stream(self, namespace, vm_id, stop):
        self.calls += 1
        return iter(())


def test_closed_stream_is_reopened_after_base_delay(store, publisher):
    watcher = ClosingWatcher()
    policy = ReconnectPolicy(base_delay=0.25, max_delay=0.25, jitter=0)
    sync = StatusSynchronizer(store, publisher, watcher, policy)
    store.add("vm-1")
    try:
        sync.track("vm-1", "vms")
        time.sleep(0.5)
    finally:
        sync.stop(timeout=5)

    assert 1 <= watcher.calls <= 3


def test_deleted_event_while_store_is_failing(synchronizer, store, publisher, watcher):
    store.add("vm-1", status="Running")
    store.fail_gets = True
    watcher.script("vm-1", [vmi_event("vm-1", "Running", event_type="DELETED")])

    synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: not synchronizer.is_tracking("vm-1"))

    assert [e.phase for e in publisher.events] == ["Stopped"]


def test_failed_write_is_retried_on_next_event(synchronizer, store, publisher, watcher, journal):
    store.add("vm-1", status="IN_PROGRESS")
    store.fail_updates = True
    watcher.script("vm-1", [vmi_event("vm-1", "Running")])

    synchronizer.track("vm-1", "vms")
    assert wait_for(lambda: watcher.calls["vm-1"] >= 2)
    assert publisher.events == []

    store.fail_updates = False
    watcher.script("vm-1", [vmi_event("vm-1", "Running")])

    assert wait_for(lambda: len(publisher.events) == 1)
    assert journal == [("update", "vm-1", "Running"), ("publish", "vm-1", "Running")]
    assert store.records["vm-1"].status == "Running"


def test_session_gives_up_after_max_attempts(store, publisher, watcher):
    policy = ReconnectPolicy(base_delay=0, max_delay=0, jitter=0, max_attempts=2)
    sync = StatusSynchronizer(store, publisher, watcher, policy)
    store.add("vm-1")
    watcher.script("vm-1", RuntimeError("a"), RuntimeError("b"), RuntimeError("c"))
    try:
        sync.track("vm-1", "vms")
        assert wait_for(lambda: not sync.is_tracking("vm-1"))
        assert watcher.calls["vm-1"] == 3
    finally:
        sync.stop(timeout=5)


def test_start_all_tracks_stored_records_until_stopped(synchronizer, store):
    store.add("vm-1")
    store.add("vm-2")
    stop = threading.Event()
    thread = threading.Thread(target=synchronizer.start_all, args=(stop,))
    thread.start()

    assert wait_for(lambda: synchronizer.tracked_ids() == ["vm-1", "vm-2"])

    stop.set()
    thread.join(5)
    assert not thread.is_alive()
    assert synchronizer.tracked_ids() == []
