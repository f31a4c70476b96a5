"""Best-effort VM status notifications over Redis pub/sub.

Each :class:`~kubevirt_provider.models.VMEvent` is wrapped in a CloudEvents
v1.0 structured JSON envelope and published on the channel
``<resource_kind>.<vm_id>``. Delivery is at-most-once: nothing is queued
while the server is unreachable.
"""
from __future__ import annotations

import logging
from datetime import UTC
from typing import Optional

import redis
from cloudevents.core.formats.json import JSONFormat
from cloudevents.core.v1.event import CloudEvent

from .errors import NotConnectedError, PublishError
from .models import VMEvent

logger = logging.getLogger(__name__)

DEFAULT_EVENT_SOURCE = "kubevirt.localhost"
DEFAULT_EVENT_TYPE = "dcm.providers.kubevirt.vm.status"


class EventPublisher:
    """Publishes VM events on a Redis connection pool."""

    def __init__(
        self,
        url: str,
        flush_timeout: float = 5.0,
        source: str = DEFAULT_EVENT_SOURCE,
        event_type: str = DEFAULT_EVENT_TYPE,
        resource_kind: str = "vm",
        client: Optional[redis.Redis] = None,
    ):
        self.url = url
        self.flush_timeout = flush_timeout
        self.source = source
        self.event_type = event_type
        self.resource_kind = resource_kind
        self._format = JSONFormat()
        # The socket timeout bounds how long a PUBLISH waits for its reply.
        self._client = client or redis.Redis.from_url(
            url,
            socket_timeout=flush_timeout,
            socket_connect_timeout=flush_timeout,
        )

    def subject(self, vm_id: str) -> str:
        return f"{self.resource_kind}.{vm_id}"

    def is_connected(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            logger.debug("Redis ping to %s failed: %s", self.url, exc)
            return False

    def build_event(self, event: VMEvent) -> CloudEvent:
        """Wrap *event* in a CloudEvent stamped with the observation time."""
        timestamp = event.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return CloudEvent(
            {
                "type": self.event_type,
                "source": self.source,
                "subject": self.subject(event.vm_id),
                "time": timestamp,
                "datacontenttype": "application/json",
            },
            event.to_dict(),
        )

    def publish(self, event: VMEvent) -> int:
        """Publish *event* and return the number of subscribers that got it.

        Raises :class:`NotConnectedError` when the server does not answer a
        ping, and :class:`PublishError` when the publish itself fails or its
        reply does not arrive within ``flush_timeout``.
        """
        if not self.is_connected():
            raise NotConnectedError(f"not connected to {self.url}")

        cloud_event = self.build_event(event)
        channel = cloud_event.get_subject()
        try:
            receivers = self._client.publish(channel, self._format.write(cloud_event))
        except redis.RedisError as exc:
            raise PublishError(f"failed to publish on {channel}: {exc}") from exc

        logger.debug("Published %s for %s to %d subscriber(s)", event.phase, channel, receivers)
        return receivers

    def close(self) -> None:
        self._client.close()
