"""Data carried between the mapper, the record store and the publisher."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import STATUS_IN_PROGRESS


class Disk(BaseModel):
    """One entry of the ordered disk list. Capacity is optional and lossy."""

    name: str
    capacity: Optional[str] = None


class VMSpec(BaseModel):
    """Declarative desired state of a virtual machine."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    vcpu: int = Field(gt=0)
    memory: str
    guest_os: str = Field(alias="guestOS")
    disks: List[Disk] = Field(default_factory=list)
    ssh_keys: List[str] = Field(default_factory=list, alias="sshKeys")
    hostname: Optional[str] = None
    architecture: Optional[str] = None

    @field_validator("guest_os", mode="before")
    @classmethod
    def _normalize_guest_os(cls, value: Any) -> Any:
        # Image lookup is case-insensitive, so "Fedora" and "fedora" are the same OS.
        if isinstance(value, str):
            return value.strip().lower()
        return value


class VMRecord(BaseModel):
    """Persisted metadata for one VM. ``status`` holds the last observed phase."""

    id: str
    namespace: str
    name: str
    vcpu: int
    memory: str
    os_image: str
    architecture: Optional[str] = None
    hostname: Optional[str] = None
    status: str = STATUS_IN_PROGRESS

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump()


@dataclass(frozen=True)
class VMEvent:
    """Outbound notification payload. Never persisted."""

    vm_id: str
    vm_name: str
    namespace: str
    phase: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vmId": self.vm_id,
            "vmName": self.vm_name,
            "namespace": self.namespace,
            "phase": self.phase,
            "timestamp": self.timestamp.isoformat(),
        }
