"""KubeVirt service provider: VM spec mapping and status reconciliation."""

from .errors import (
    ConfigError,
    NotConnectedError,
    ProviderError,
    PublishError,
    RecordNotFoundError,
    ResourceNotFoundError,
    VMValidationError,
    WatchError,
)
from .mapper import Mapper, parse_memory_size
from .models import Disk, VMEvent, VMRecord, VMSpec
from .phase import Phase, ResourceStatus, RuntimeInstanceStatus, derive_phase

__all__ = [
    "ConfigError",
    "Disk",
    "Mapper",
    "NotConnectedError",
    "Phase",
    "ProviderError",
    "PublishError",
    "RecordNotFoundError",
    "ResourceNotFoundError",
    "ResourceStatus",
    "RuntimeInstanceStatus",
    "VMEvent",
    "VMRecord",
    "VMSpec",
    "VMValidationError",
    "WatchError",
    "derive_phase",
    "parse_memory_size",
]
