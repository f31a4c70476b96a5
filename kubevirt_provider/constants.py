"""Shared API coordinates and label keys."""

KUBEVIRT_GROUP = "kubevirt.io"
KUBEVIRT_VERSION = "v1"
KUBEVIRT_API_VERSION = f"{KUBEVIRT_GROUP}/{KUBEVIRT_VERSION}"
KUBEVIRT_VM_PLURAL = "virtualmachines"
KUBEVIRT_VMI_PLURAL = "virtualmachineinstances"

VM_KIND = "VirtualMachine"
VMI_KIND = "VirtualMachineInstance"

# Ownership labels used to filter watch streams down to resources we manage.
MANAGED_BY_LABEL = "dcm.project/managed-by"
MANAGED_BY_VALUE = "dcm"
INSTANCE_ID_LABEL = "dcm.project/dcm-instance-id"

MANAGED_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"


def instance_selector(vm_id: str) -> str:
    """Label selector matching the resources that belong to *vm_id*."""
    return f"{INSTANCE_ID_LABEL}={vm_id}"


# Record status written at creation time, before any phase is observed.
STATUS_IN_PROGRESS = "IN_PROGRESS"
