"""
kubevirt.py
-----------
Everything that talks to the Kubernetes API about KubeVirt objects:

* cluster configuration bootstrap (kube-config first, in-cluster second);
* :class:`VirtualMachineWatcher`, the label-filtered watch stream that turns raw
  documents into typed :class:`WatchEvent` values at the boundary;
* :class:`KubeVirtClient`, thin CRUD over ``CustomObjectsApi`` addressed by the
  instance-id label rather than by object name.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional

import kopf
import kubernetes
from kubernetes.client import ApiException, CustomObjectsApi

from .constants import (
    INSTANCE_ID_LABEL,
    KUBEVIRT_GROUP,
    KUBEVIRT_VERSION,
    KUBEVIRT_VM_PLURAL,
    KUBEVIRT_VMI_PLURAL,
    MANAGED_SELECTOR,
    instance_selector,
)
from .errors import ResourceNotFoundError, WatchError
from .phase import RawStatus, status_from_resource

logger = logging.getLogger(__name__)

WATCH_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})


# ---------------------------------------------------------------------------
# Bootstrap ------------------------------------------------------------------
# ---------------------------------------------------------------------------

def load_kubernetes_config(kubeconfig: Optional[str] = None) -> None:
    """Load kube-config (or in-cluster config) or raise ``kopf.PermanentError``."""
    try:
        kubernetes.config.load_kube_config(config_file=kubeconfig)
        logger.info("Loaded kube-config from local file")
    except kubernetes.config.config_exception.ConfigException:
        try:
            kubernetes.config.load_incluster_config()
            logger.info("Loaded in-cluster kube-config")
        except kubernetes.config.config_exception.ConfigException as exc:
            logger.critical("Failed to load Kubernetes configuration: %s", exc)
            raise kopf.PermanentError("Cannot load Kubernetes config") from exc


# ---------------------------------------------------------------------------
# Watch adapter --------------------------------------------------------------
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WatchEvent:
    """A change notification for one VM, already resolved to a status variant."""

    type: str
    vm_id: str
    name: str
    namespace: str
    status: RawStatus


def parse_watch_event(raw: Mapping[str, Any]) -> Optional[WatchEvent]:
    """Convert one item of ``Watch.stream`` into a :class:`WatchEvent`.

    Returns ``None`` for events that carry nothing we can act on (bookmarks,
    unsupported kinds). A stream ``ERROR`` raises :class:`WatchError` so the
    caller re-establishes the watch.
    """
    event_type = raw.get("type")
    obj = raw.get("object")
    if event_type == "ERROR":
        message = obj.get("message") if isinstance(obj, Mapping) else obj
        raise WatchError(f"watch stream error: {message}")
    if event_type not in WATCH_EVENT_TYPES or not isinstance(obj, Mapping):
        return None

    meta = obj.get("metadata") or {}
    name = meta.get("name", "")
    vm_id = (meta.get("labels") or {}).get(INSTANCE_ID_LABEL)
    if not vm_id:
        logger.warning("%s %s has no %s label, using its name", obj.get("kind"), name, INSTANCE_ID_LABEL)
        vm_id = name

    try:
        status = status_from_resource(obj)
    except ValueError as exc:
        logger.warning("Ignoring %s event for %s: %s", event_type, name, exc)
        return None

    return WatchEvent(
        type=event_type,
        vm_id=vm_id,
        name=name,
        namespace=meta.get("namespace", ""),
        status=status,
    )


class VirtualMachineWatcher:
    """Opens label-filtered watch streams on VMs or VMIs."""

    def __init__(
        self,
        api: CustomObjectsApi,
        plural: str = KUBEVIRT_VMI_PLURAL,
        timeout_seconds: int = 60,
    ):
        if plural not in (KUBEVIRT_VM_PLURAL, KUBEVIRT_VMI_PLURAL):
            raise ValueError(f"cannot watch {plural!r}")
        self.api = api
        self.plural = plural
        self.timeout_seconds = timeout_seconds

    def stream(
        self, namespace: str, vm_id: str, stop: threading.Event
    ) -> Iterator[WatchEvent]:
        """Yield events for *vm_id* until the server-side timeout or *stop*.

        The first events of every stream are synthetic ``ADDED`` events for the
        objects that already exist, so a fresh stream always reports the
        current state. ``ApiException`` and :class:`WatchError` propagate.
        """
        watch = kubernetes.watch.Watch()
        try:
            for raw in watch.stream(
                self.api.list_namespaced_custom_object,
                KUBEVIRT_GROUP,
                KUBEVIRT_VERSION,
                namespace,
                self.plural,
                label_selector=instance_selector(vm_id),
                timeout_seconds=self.timeout_seconds,
            ):
                if stop.is_set():
                    return
                event = parse_watch_event(raw)
                if event is not None:
                    yield event
        finally:
            watch.stop()


# ---------------------------------------------------------------------------
# CRUD -----------------------------------------------------------------------
# ---------------------------------------------------------------------------

class KubeVirtClient:
    """CRUD on ``VirtualMachine`` objects in one namespace."""

    def __init__(self, api: CustomObjectsApi, namespace: str):
        self.api = api
        self.namespace = namespace

    def create(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        created = self.api.create_namespaced_custom_object(
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=self.namespace,
            plural=KUBEVIRT_VM_PLURAL,
            body=resource,
        )
        logger.info("Created VirtualMachine %s in %s", created["metadata"]["name"], self.namespace)
        return created

    def list(self, label_selector: str = MANAGED_SELECTOR) -> List[Dict[str, Any]]:
        resp = self.api.list_namespaced_custom_object(
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=self.namespace,
            plural=KUBEVIRT_VM_PLURAL,
            label_selector=label_selector,
        )
        return list(resp.get("items", []))

    def get_by_instance_id(self, vm_id: str) -> Dict[str, Any]:
        """Return the VM labelled with *vm_id* or raise :class:`ResourceNotFoundError`."""
        items = self.list(label_selector=instance_selector(vm_id))
        if not items:
            raise ResourceNotFoundError(vm_id)
        if len(items) > 1:
            logger.warning("%d VirtualMachines carry instance id %s, using the first", len(items), vm_id)
        return items[0]

    def update(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        name = resource["metadata"]["name"]
        return self.api.replace_namespaced_custom_object(
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=self.namespace,
            plural=KUBEVIRT_VM_PLURAL,
            name=name,
            body=resource,
        )

    def delete_by_instance_id(self, vm_id: str) -> str:
        """Delete the VM labelled with *vm_id* and return its name."""
        name = self.get_by_instance_id(vm_id)["metadata"]["name"]
        try:
            self.api.delete_namespaced_custom_object(
                group=KUBEVIRT_GROUP,
                version=KUBEVIRT_VERSION,
                namespace=self.namespace,
                plural=KUBEVIRT_VM_PLURAL,
                name=name,
            )
        except ApiException as exc:
            if exc.status in (404, 410):
                raise ResourceNotFoundError(vm_id) from exc
            raise
        logger.info("Deleted VirtualMachine %s (instance %s)", name, vm_id)
        return name
