#!/usr/bin/env python3
"""Entry point for running the provider operator locally or in a pod."""
import logging
import socket
import sys
from typing import Optional

import kopf

from . import handlers  # noqa: F401  registers the kopf handlers
from .config import Settings
from .errors import ConfigError

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] [%(identity)s] [%(vm_namespace)s] %(message)s"

# Client libraries that log every request at DEBUG.
NOISY_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore")


class ContextFilter(logging.Filter):
    """Stamps every record with the operator identity and the VM namespace."""

    def __init__(self, identity: str, namespace: str):
        super().__init__()
        self.identity = identity
        self.namespace = namespace

    def filter(self, record: logging.LogRecord) -> bool:
        record.identity = self.identity
        record.vm_namespace = self.namespace
        return True


def operator_identity(settings: Settings) -> str:
    return settings.pod_name or socket.gethostname()


def configure_logging(settings: Settings, stream=None) -> logging.Handler:
    """Send all logs to stdout, tagged with the pod and the namespace it serves."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(ContextFilter(operator_identity(settings), settings.namespace))

    root = logging.getLogger()
    root.setLevel(settings.log_level)
    root.addHandler(handler)
    if settings.log_level != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging configured at %s level", settings.log_level)
    return handler


def run(settings: Optional[Settings] = None) -> None:
    if settings is None:
        try:
            settings = Settings.from_env()
        except ConfigError as exc:
            sys.exit(f"Invalid configuration: {exc}")

    configure_logging(settings)
    logging.getLogger(__name__).info(
        "KubeVirt provider starting, VMs live in namespace %s (%s)",
        settings.namespace,
        f"peering {settings.peering_name}" if settings.peering_name else "standalone",
    )

    # Without a peering object there is no one to coordinate with.
    kopf.run(
        standalone=settings.peering_name is None,
        peering_name=settings.peering_name,
        namespaces=[settings.namespace],
        identity=operator_identity(settings),
    )


if __name__ == "__main__":
    run()
