"""
mapper.py
---------
Pure translation between :class:`~kubevirt_provider.models.VMSpec` and the
KubeVirt ``VirtualMachine`` document. Nothing in here talks to the cluster.

The forward mapping is complete; the reverse mapping is deliberately lossy. It
answers "what is running right now", so disk capacities are not recovered and
the guest OS is inferred from the boot image name. A spec therefore does not
always come back unchanged:

* an empty disk list comes back as the single ``boot`` disk the VM was given;
* a guest OS with no known image comes back as ``cirros``, the image it ran;
* guest OS names are lower-case once validated, so ``Fedora`` reads ``fedora``.
"""
from __future__ import annotations

import logging
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml
from kubernetes.utils import parse_quantity

from .constants import (
    INSTANCE_ID_LABEL,
    KUBEVIRT_API_VERSION,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    VM_KIND,
)
from .errors import VMValidationError
from .models import Disk, VMSpec

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants -----------------------------------------------------------------
# ---------------------------------------------------------------------------
GENERATE_NAME_PREFIX = "dcm-"
BOOT_DISK_NAME = "boot"
CLOUD_INIT_DISK_NAME = "cloudinitdisk"
DATA_DISK_CAPACITY = "10Gi"
NETWORK_NAME = "default"
MACHINE_TYPE = "q35"
TERMINATION_GRACE_PERIOD_SECONDS = 180

DEFAULT_CPU = 1
DEFAULT_MEMORY = "1Gi"

# Order matters: reverse inference returns the first substring hit.
CONTAINER_DISK_IMAGES: Dict[str, str] = {
    "ubuntu": "quay.io/kubevirt/ubuntu-container-disk-demo:latest",
    "centos": "quay.io/kubevirt/centos-container-disk-demo:latest",
    "fedora": "quay.io/kubevirt/fedora-container-disk-demo:latest",
    "cirros": "quay.io/kubevirt/cirros-container-disk-demo:latest",
}
DEFAULT_GUEST_OS = "cirros"

BINARY_UNITS = (
    ("Ei", 2**60),
    ("Pi", 2**50),
    ("Ti", 2**40),
    ("Gi", 2**30),
    ("Mi", 2**20),
    ("Ki", 2**10),
)
DECIMAL_UNITS = (
    ("E", 10**18),
    ("P", 10**15),
    ("T", 10**12),
    ("G", 10**9),
    ("M", 10**6),
    ("k", 10**3),
)
# Shorthand accepted on input but not understood by Kubernetes.
DECIMAL_SHORTHAND = {"GB": 10**9, "MB": 10**6}


# ---------------------------------------------------------------------------
# Quantity helpers -----------------------------------------------------------
# ---------------------------------------------------------------------------

def parse_memory_size(value: str) -> str:
    """Normalize a memory size into a canonical Kubernetes quantity string.

    * a bare integer means mebibytes (``"512"`` -> ``"512Mi"``);
    * ``GB``/``MB`` (any case) are decimal units, converted exactly
      (``"2GB"`` -> ``"2G"``, i.e. 2 * 10**9 bytes);
    * anything else must be a valid Kubernetes quantity and is re-rendered in
      the canonical form of its own suffix family (``"2048Mi"`` -> ``"2Gi"``).

    Raises :class:`VMValidationError` for empty, non-positive or unparseable
    input.
    """
    size = (value or "").strip()
    if not size:
        raise VMValidationError("memory size must not be empty")

    if size.isdecimal():
        mebibytes = int(size)
        if mebibytes <= 0:
            raise VMValidationError(f"memory size must be positive: {value!r}")
        return f"{mebibytes}Mi"

    upper = size.upper()
    for suffix, factor in DECIMAL_SHORTHAND.items():
        if upper.endswith(suffix):
            try:
                number = Decimal(size[: -len(suffix)])
            except InvalidOperation as exc:
                raise VMValidationError(f"unable to parse memory size: {value!r}") from exc
            return format_quantity(_whole_bytes(number * factor, value), binary=False)

    try:
        number = parse_quantity(size)
    except ValueError as exc:
        raise VMValidationError(f"unable to parse memory size: {value!r}") from exc
    return format_quantity(_whole_bytes(number, value), binary=size.endswith("i"))


def format_quantity(num_bytes: int, binary: bool) -> str:
    """Render *num_bytes* with the largest suffix that divides it evenly."""
    for suffix, factor in BINARY_UNITS if binary else DECIMAL_UNITS:
        if num_bytes % factor == 0:
            return f"{num_bytes // factor}{suffix}"
    return str(num_bytes)


def _whole_bytes(number: Decimal, original: str) -> int:
    if not number.is_finite() or number <= 0:
        raise VMValidationError(f"memory size must be a positive amount: {original!r}")
    # Kubernetes rounds memory requests up to the next byte.
    return int(number.to_integral_value(rounding=ROUND_CEILING))


# ---------------------------------------------------------------------------
# Cloud-init -----------------------------------------------------------------
# ---------------------------------------------------------------------------

def build_cloud_init(hostname: Optional[str], ssh_keys: Sequence[str]) -> Optional[str]:
    """Return ``#cloud-config`` user data, or ``None`` when there is nothing to set."""
    config: Dict[str, Any] = {}
    if hostname:
        config["hostname"] = hostname
    keys = [key.strip() for key in ssh_keys if key and key.strip()]
    if keys:
        config["ssh_authorized_keys"] = keys
    if not config:
        return None
    return "#cloud-config\n" + yaml.safe_dump(config, default_flow_style=False, sort_keys=False)


def extract_cloud_init(user_data: Optional[str]) -> Dict[str, Any]:
    """Parse cloud-init user data; malformed input yields an empty dict."""
    if not user_data:
        return {}
    try:
        # The "#cloud-config" header is a YAML comment.
        data = yaml.safe_load(user_data)
    except yaml.YAMLError as exc:
        logger.debug("Failed to parse cloud-init user data: %s", exc)
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Mapper ---------------------------------------------------------------------
# ---------------------------------------------------------------------------

def get_container_image(guest_os: str) -> str:
    """Map a guest OS name (case-insensitive) to its container disk image."""
    return CONTAINER_DISK_IMAGES.get(
        (guest_os or "").strip().lower(), CONTAINER_DISK_IMAGES[DEFAULT_GUEST_OS]
    )


def infer_guest_os(image: str) -> str:
    """Best-effort reverse of :func:`get_container_image`."""
    image = (image or "").lower()
    for os_name in CONTAINER_DISK_IMAGES:
        if os_name in image:
            return os_name
    return DEFAULT_GUEST_OS


def _nested(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _boot_index(disks: Sequence[Disk]) -> int:
    for index, disk in enumerate(disks):
        if disk.name == BOOT_DISK_NAME:
            return index
    return 0


class Mapper:
    """Converts between VMSpec and KubeVirt VirtualMachine documents."""

    def __init__(self, namespace: str):
        self.namespace = namespace

    def to_native_resource(
        self, spec: VMSpec, vm_id: str, vm_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """Build the ``VirtualMachine`` for *spec*, labelled with *vm_id*."""
        labels = {MANAGED_BY_LABEL: MANAGED_BY_VALUE, INSTANCE_ID_LABEL: vm_id}
        metadata: Dict[str, Any] = {"namespace": self.namespace, "labels": dict(labels)}
        if vm_name:
            metadata["name"] = vm_name
        else:
            metadata["generateName"] = GENERATE_NAME_PREFIX

        disks = list(spec.disks) or [Disk(name=BOOT_DISK_NAME)]
        boot_index = _boot_index(disks)
        disk_specs: List[Dict[str, Any]] = []
        volumes: List[Dict[str, Any]] = []
        for index, disk in enumerate(disks):
            disk_spec: Dict[str, Any] = {"name": disk.name, "disk": {"bus": "virtio"}}
            volume: Dict[str, Any] = {"name": disk.name}
            if index == boot_index:
                disk_spec["bootOrder"] = 1
                volume["containerDisk"] = {"image": get_container_image(spec.guest_os)}
            else:
                volume["emptyDisk"] = {"capacity": DATA_DISK_CAPACITY}
            disk_specs.append(disk_spec)
            volumes.append(volume)

        user_data = build_cloud_init(spec.hostname, spec.ssh_keys)
        if user_data is not None:
            disk_specs.append({"name": CLOUD_INIT_DISK_NAME, "disk": {"bus": "virtio"}})
            volumes.append({"name": CLOUD_INIT_DISK_NAME, "cloudInitNoCloud": {"userData": user_data}})

        template_spec: Dict[str, Any] = {
            "domain": {
                "machine": {"type": MACHINE_TYPE},
                "resources": {
                    "requests": {
                        "cpu": str(spec.vcpu),
                        "memory": parse_memory_size(spec.memory),
                    }
                },
                "devices": {
                    "disks": disk_specs,
                    # Interface and network names must match; masquerade only
                    # works with the pod network.
                    "interfaces": [
                        {"name": NETWORK_NAME, "masquerade": {}, "model": "virtio"}
                    ],
                },
            },
            "networks": [{"name": NETWORK_NAME, "pod": {}}],
            "volumes": volumes,
            "terminationGracePeriodSeconds": TERMINATION_GRACE_PERIOD_SECONDS,
        }
        if spec.architecture:
            template_spec["architecture"] = spec.architecture
        if spec.hostname:
            template_spec["hostname"] = spec.hostname

        return {
            "apiVersion": KUBEVIRT_API_VERSION,
            "kind": VM_KIND,
            "metadata": metadata,
            "spec": {
                "running": True,
                "template": {
                    "metadata": {"labels": dict(labels)},
                    "spec": template_spec,
                },
            },
        }

    def from_native_resource(self, resource: Mapping[str, Any]) -> VMSpec:
        """Reconstruct what is currently declared on a ``VirtualMachine``."""
        template_spec = _nested(resource, "spec", "template", "spec") or {}
        requests = _nested(template_spec, "domain", "resources", "requests") or {}

        try:
            vcpu = int(str(requests.get("cpu")))
        except ValueError:
            vcpu = DEFAULT_CPU
        if vcpu <= 0:
            vcpu = DEFAULT_CPU

        memory = requests.get("memory")
        memory = str(memory) if memory else DEFAULT_MEMORY

        device_disks = _nested(template_spec, "domain", "devices", "disks") or []
        volumes = {
            volume.get("name"): volume
            for volume in template_spec.get("volumes") or []
            if isinstance(volume, Mapping)
        }

        disk_names = [
            disk["name"]
            for disk in device_disks
            if isinstance(disk, Mapping)
            and isinstance(disk.get("name"), str)
            and disk["name"] != CLOUD_INIT_DISK_NAME
        ]

        guest_os = DEFAULT_GUEST_OS
        image = self._boot_image(device_disks, volumes)
        if image:
            guest_os = infer_guest_os(image)

        cloud_init = extract_cloud_init(
            _nested(volumes.get(CLOUD_INIT_DISK_NAME), "cloudInitNoCloud", "userData")
        )
        ssh_keys = cloud_init.get("ssh_authorized_keys") or []
        hostname = template_spec.get("hostname") or cloud_init.get("hostname")

        return VMSpec(
            vcpu=vcpu,
            memory=memory,
            guest_os=guest_os,
            disks=[Disk(name=name) for name in disk_names] or [Disk(name=BOOT_DISK_NAME)],
            ssh_keys=[str(key) for key in ssh_keys if key],
            hostname=hostname,
            architecture=template_spec.get("architecture"),
        )

    @staticmethod
    def _boot_image(
        device_disks: Sequence[Any], volumes: Mapping[str, Mapping[str, Any]]
    ) -> Optional[str]:
        boot_names = [
            disk.get("name")
            for disk in device_disks
            if isinstance(disk, Mapping) and disk.get("bootOrder") == 1
        ]
        candidates = [volumes.get(name) for name in boot_names] + list(volumes.values())
        for volume in candidates:
            image = _nested(volume, "containerDisk", "image")
            if isinstance(image, str):
                return image
        return None
