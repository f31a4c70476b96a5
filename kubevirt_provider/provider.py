"""Create/read/list/delete facade used by the outer API layer."""
from __future__ import annotations

import logging
from typing import List, Optional

from .constants import STATUS_IN_PROGRESS
from .kubevirt import KubeVirtClient
from .mapper import Mapper, parse_memory_size
from .models import VMRecord, VMSpec
from .store import RecordStore
from .sync import StatusSynchronizer

logger = logging.getLogger(__name__)


class VirtualMachineProvider:
    """Ties the mapper, the cluster client, the record store and tracking together."""

    def __init__(
        self,
        client: KubeVirtClient,
        store: RecordStore,
        synchronizer: Optional[StatusSynchronizer] = None,
    ):
        self.client = client
        self.store = store
        self.synchronizer = synchronizer
        self.mapper = Mapper(client.namespace)

    def create_vm(self, spec: VMSpec, vm_id: str, name: Optional[str] = None) -> VMRecord:
        """Create the VirtualMachine for *spec*, persist its record and start tracking it.

        ``VMValidationError`` is raised before anything touches the cluster.
        """
        resource = self.mapper.to_native_resource(spec, vm_id, name)
        created = self.client.create(resource)
        record = VMRecord(
            id=vm_id,
            namespace=self.client.namespace,
            name=created["metadata"]["name"],
            vcpu=spec.vcpu,
            memory=parse_memory_size(spec.memory),
            os_image=spec.guest_os,
            architecture=spec.architecture,
            hostname=spec.hostname,
            status=STATUS_IN_PROGRESS,
        )
        self.store.create(record)
        if self.synchronizer is not None:
            self.synchronizer.track(vm_id, record.namespace)
        logger.info("Provisioned VM %s as %s", vm_id, record.name)
        return record

    def get_vm(self, vm_id: str) -> VMSpec:
        return self.mapper.from_native_resource(self.client.get_by_instance_id(vm_id))

    def list_vms(self) -> List[VMSpec]:
        return [self.mapper.from_native_resource(item) for item in self.client.list()]

    def delete_vm(self, vm_id: str) -> None:
        """Delete the VirtualMachine. The record itself is removed by its owner.

        Tracking is left running: KubeVirt tears the instance down
        asynchronously, and the session ends on its deletion event (or once
        the record is gone), after reporting the VM as Stopped.
        """
        name = self.client.delete_by_instance_id(vm_id)
        logger.info("Deletion of VM %s (%s) requested", vm_id, name)
