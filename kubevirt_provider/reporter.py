"""Optional HTTP status callback to the owning DCM service."""
from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx

from .phase import Phase

logger = logging.getLogger(__name__)

STATUS_READY = "READY"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_FAILED = "FAILED"
STATUS_STOPPED = "STOPPED"
STATUS_UNKNOWN = "UNKNOWN"

PHASE_TO_APP_STATUS: Dict[Phase, str] = {
    Phase.RUNNING: STATUS_READY,
    Phase.PENDING: STATUS_IN_PROGRESS,
    Phase.SCHEDULING: STATUS_IN_PROGRESS,
    Phase.SCHEDULED: STATUS_IN_PROGRESS,
    Phase.SUCCEEDED: STATUS_IN_PROGRESS,
    Phase.FAILED: STATUS_FAILED,
    Phase.STOPPED: STATUS_STOPPED,
    Phase.TERMINATING: STATUS_STOPPED,
    Phase.UNKNOWN: STATUS_UNKNOWN,
}


class StatusReporter:
    """PUTs ``{base_url}/instances/{id}/status`` on every phase transition."""

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def report(self, vm_id: str, phase: Phase) -> None:
        url = f"{self.base_url}/instances/{vm_id}/status"
        payload = {
            "status": PHASE_TO_APP_STATUS.get(phase, STATUS_UNKNOWN),
            "message": f"The VMI is in {phase.value} Phase",
        }
        try:
            resp = self._client.put(url, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Error sending status update for %s to %s: %s", vm_id, url, exc)
            return
        if resp.status_code != httpx.codes.OK:
            logger.warning("Status update for %s returned %s", vm_id, resp.status_code)
            return
        logger.info("Reported status %s for %s", payload["status"], vm_id)

    def close(self) -> None:
        self._client.close()
