"""Canonical VM lifecycle phase and its derivation from KubeVirt status.

KubeVirt reports state in two shapes. A ``VirtualMachineInstance`` carries an
explicit ``status.phase`` string, while a ``VirtualMachine`` only exposes the
``running``/``ready``/``created`` flags plus free-form conditions. Raw documents
are resolved into one of two status types by :func:`status_from_resource`
exactly once, at the watch boundary; :func:`derive_phase` then dispatches on
that type.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from .constants import VM_KIND, VMI_KIND

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """Normalized phase, independent of which resource reported it."""

    UNKNOWN = "Unknown"
    PENDING = "Pending"
    SCHEDULING = "Scheduling"
    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    STOPPED = "Stopped"
    TERMINATING = "Terminating"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({Phase.SUCCEEDED, Phase.FAILED, Phase.STOPPED})

# Static mapping from VMI phases as emitted by KubeVirt.
VMI_PHASE_TO_PHASE: Dict[str, Phase] = {
    "Pending": Phase.PENDING,
    "Scheduling": Phase.SCHEDULING,
    "Scheduled": Phase.SCHEDULED,
    "Running": Phase.RUNNING,
    "Succeeded": Phase.SUCCEEDED,
    "Failed": Phase.FAILED,
    "Unknown": Phase.UNKNOWN,
}

FAILURE_CONDITION_TYPES = frozenset({"Failure", "Failed"})

# spec.runStrategy values that say something definite about spec.running.
RUN_STRATEGY_RUNNING: Dict[str, bool] = {
    "Always": True,
    "Halted": False,
}


@dataclass(frozen=True)
class RuntimeInstanceStatus:
    """Status of a VirtualMachineInstance."""

    phase: Optional[str] = None


@dataclass(frozen=True)
class ResourceStatus:
    """Status of a VirtualMachine. ``None`` means the field was absent."""

    running: Optional[bool] = None
    ready: Optional[bool] = None
    created: Optional[bool] = None
    conditions: Tuple[Mapping[str, Any], ...] = ()


RawStatus = Union[RuntimeInstanceStatus, ResourceStatus]


def derive_phase(status: RawStatus) -> Phase:
    """Return the canonical phase for *status*. Pure and deterministic."""
    if isinstance(status, RuntimeInstanceStatus):
        return _instance_phase(status)
    if isinstance(status, ResourceStatus):
        return _resource_phase(status)
    raise TypeError(f"unsupported status type: {type(status).__name__}")


def phase_for_event(event_type: Optional[str], status: RawStatus) -> Phase:
    """Like :func:`derive_phase`, but a deletion always reads as Stopped."""
    if event_type == "DELETED":
        return Phase.STOPPED
    return derive_phase(status)


def _instance_phase(status: RuntimeInstanceStatus) -> Phase:
    if status.phase is None or status.phase == "":
        # Not started yet.
        return Phase.PENDING
    try:
        return VMI_PHASE_TO_PHASE[status.phase]
    except KeyError:
        logger.warning("Unknown VMI phase '%s', mapping to Unknown", status.phase)
        return Phase.UNKNOWN


def _resource_phase(status: ResourceStatus) -> Phase:
    if status.running is False:
        return Phase.STOPPED
    if status.ready is True:
        return Phase.RUNNING
    if status.created is False:
        return Phase.PENDING
    return _conditions_phase(status.conditions) or Phase.UNKNOWN


def _conditions_phase(conditions: Iterable[Mapping[str, Any]]) -> Optional[Phase]:
    has_failure = False
    has_ready = False
    for condition in conditions:
        if not isinstance(condition, Mapping):
            continue
        if not _is_true(condition.get("status")):
            continue
        cond_type = condition.get("type")
        if cond_type == "Paused":
            return Phase.STOPPED
        if cond_type in FAILURE_CONDITION_TYPES:
            has_failure = True
        elif cond_type == "Ready":
            has_ready = True
    if has_failure:
        return Phase.FAILED
    if has_ready:
        return Phase.RUNNING
    return None


def _is_true(value: Any) -> bool:
    return value is True or value == "True"


def _optional_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def status_from_resource(resource: Mapping[str, Any]) -> RawStatus:
    """Resolve a raw VM or VMI document into its status variant.

    Raises ``ValueError`` for any other kind.
    """
    kind = resource.get("kind")
    status = resource.get("status") or {}

    if kind == VMI_KIND:
        phase = status.get("phase")
        return RuntimeInstanceStatus(phase=phase if isinstance(phase, str) else None)

    if kind == VM_KIND:
        spec = resource.get("spec") or {}
        running = _optional_bool(spec.get("running"))
        if running is None:
            running = RUN_STRATEGY_RUNNING.get(spec.get("runStrategy"))
        conditions = status.get("conditions") or ()
        return ResourceStatus(
            running=running,
            ready=_optional_bool(status.get("ready")),
            created=_optional_bool(status.get("created")),
            conditions=tuple(conditions),
        )

    raise ValueError(f"unsupported object kind: {kind}")
