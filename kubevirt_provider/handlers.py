"""
handlers.py
-----------
Kopf event handlers wiring the status synchronizer and the VMI monitor into an
operator process.

* ``on.startup`` loads settings and clients, then runs the synchronizer in a
  daemon thread. All shared objects live in kopf's ``memo``.
* ``on.create`` starts tracking every newly created managed VirtualMachine.
* ``on.event`` (only with ``MONITOR_ENABLED``) publishes the phase of every
  observed VMI event, without touching the record store.
* ``on.cleanup`` stops the synchronizer and closes the connections.
"""
from __future__ import annotations

import threading
from typing import Dict

import kopf
from kopf import OperatorSettings
from kubernetes.client import CustomObjectsApi

from .config import Settings
from .constants import (
    INSTANCE_ID_LABEL,
    KUBEVIRT_GROUP,
    KUBEVIRT_VERSION,
    KUBEVIRT_VM_PLURAL,
    KUBEVIRT_VMI_PLURAL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
)
from .errors import ConfigError, PublishError
from .events import EventPublisher
from .kubevirt import VirtualMachineWatcher, load_kubernetes_config
from .models import VMEvent
from .phase import phase_for_event, status_from_resource
from .reporter import StatusReporter
from .store import SupabaseRecordStore
from .sync import ReconnectPolicy, StatusSynchronizer

SYNC_JOIN_TIMEOUT = 30.0

MANAGED_LABELS = {MANAGED_BY_LABEL: MANAGED_BY_VALUE}


@kopf.on.startup()
def configure(settings: OperatorSettings, memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    """Build clients from the environment and start the status synchronizer."""
    settings.watching.server_timeout = 210

    try:
        config = Settings.from_env()
    except ConfigError as exc:
        raise kopf.PermanentError(f"Invalid configuration: {exc}") from exc
    memo.settings = config

    load_kubernetes_config(config.kubeconfig)
    api = CustomObjectsApi()

    memo.publisher = EventPublisher(
        config.pubsub_url,
        flush_timeout=config.pubsub_flush_timeout,
        source=config.event_source,
        event_type=config.event_type,
    )
    if not memo.publisher.is_connected():
        logger.warning("Pub/sub server at %s is not reachable yet, events will be dropped", config.pubsub_url)

    if not config.status_sync_enabled:
        logger.info("Status synchronization disabled")
        return

    try:
        store = SupabaseRecordStore.from_credentials(
            config.supabase_url, config.supabase_key, config.records_table
        )
    except ConfigError as exc:
        logger.critical("%s", exc)
        raise kopf.PermanentError("Record store init failed") from exc

    memo.reporter = StatusReporter(config.dcm_url) if config.dcm_url else None
    memo.synchronizer = StatusSynchronizer(
        store,
        memo.publisher,
        VirtualMachineWatcher(api, config.watch_resource, config.watch_timeout_seconds),
        ReconnectPolicy(
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
            max_attempts=config.reconnect_max_attempts,
        ),
        memo.reporter,
    )
    memo.sync_stop = threading.Event()
    memo.sync_thread = threading.Thread(
        target=memo.synchronizer.start_all,
        args=(memo.sync_stop,),
        name="status-sync",
        daemon=True,
    )
    memo.sync_thread.start()
    logger.info("Status synchronizer started in namespace %s", config.namespace)


@kopf.on.create(
    KUBEVIRT_GROUP,
    KUBEVIRT_VERSION,
    KUBEVIRT_VM_PLURAL,
    labels={**MANAGED_LABELS, INSTANCE_ID_LABEL: kopf.PRESENT},
)
def track_new_vm(meta: dict, namespace: str, memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    """Start a watch session for a freshly created managed VM."""
    synchronizer = memo.get("synchronizer")
    if synchronizer is None:
        return
    vm_id = meta["labels"][INSTANCE_ID_LABEL]
    if synchronizer.track(vm_id, namespace):
        logger.info("Tracking VM %s (%s)", vm_id, meta.get("name"))


def _monitor_enabled(memo: kopf.Memo, **_: Dict[str, object]) -> bool:
    config = memo.get("settings")
    return bool(config is not None and config.monitor_enabled)


@kopf.on.event(
    KUBEVIRT_GROUP,
    KUBEVIRT_VERSION,
    KUBEVIRT_VMI_PLURAL,
    labels=MANAGED_LABELS,
    when=_monitor_enabled,
)
def monitor_vmi(event: dict, body: dict, meta: dict, memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    """Publish the phase carried by every managed VMI event."""
    vm_id = (meta.get("labels") or {}).get(INSTANCE_ID_LABEL)
    if not vm_id:
        logger.debug("VMI %s has no %s label, skipping", meta.get("name"), INSTANCE_ID_LABEL)
        return

    phase = phase_for_event(event.get("type"), status_from_resource(body))
    vm_event = VMEvent(
        vm_id=vm_id,
        vm_name=meta.get("name", ""),
        namespace=meta.get("namespace", ""),
        phase=phase.value,
    )
    try:
        memo.publisher.publish(vm_event)
    except PublishError as exc:
        logger.warning("Dropping %s event for VM %s: %s", phase.value, vm_id, exc)
        return
    logger.info("Published phase %s for VM %s", phase.value, vm_id)


@kopf.on.cleanup()
def shutdown(memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    """Stop the synchronizer thread and release connections."""
    stop = memo.get("sync_stop")
    if stop is not None:
        stop.set()
        memo.sync_thread.join(SYNC_JOIN_TIMEOUT)
        if memo.sync_thread.is_alive():
            logger.warning("Status synchronizer did not stop within %.0fs", SYNC_JOIN_TIMEOUT)

    if memo.get("reporter") is not None:
        memo.reporter.close()
    if memo.get("publisher") is not None:
        memo.publisher.close()
    logger.info("Operator cleanup complete")
