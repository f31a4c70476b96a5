"""Exception hierarchy for the provider.

Kubernetes API failures are not wrapped: they surface as
``kubernetes.client.ApiException`` and callers branch on ``exc.status`` the
same way the kopf handlers do.
"""
from __future__ import annotations


class ProviderError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(ProviderError):
    """An environment variable holds a value that cannot be used."""


class VMValidationError(ProviderError, ValueError):
    """A VM specification cannot be translated into a VirtualMachine."""


class RecordNotFoundError(ProviderError, LookupError):
    """No persisted record exists for the requested VM id."""

    def __init__(self, vm_id: str):
        super().__init__(f"VM record {vm_id!r} not found")
        self.vm_id = vm_id


class ResourceNotFoundError(ProviderError, LookupError):
    """No VirtualMachine carries the requested instance-id label."""

    def __init__(self, vm_id: str):
        super().__init__(f"VirtualMachine with instance id {vm_id!r} not found")
        self.vm_id = vm_id


class PublishError(ProviderError):
    """An event could not be delivered to the pub/sub server."""


class NotConnectedError(PublishError):
    """The pub/sub connection is down; nothing was sent."""


class WatchError(ProviderError):
    """The Kubernetes watch stream reported an error event."""
