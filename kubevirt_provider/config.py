"""Environment-driven configuration.

``.env`` files are honoured for local development; real environment variables
win over them.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .constants import KUBEVIRT_VM_PLURAL, KUBEVIRT_VMI_PLURAL
from .errors import ConfigError
from .events import DEFAULT_EVENT_SOURCE, DEFAULT_EVENT_TYPE
from .store import DEFAULT_RECORDS_TABLE

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _get(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {raw!r}")
    return value


def _int(env: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {raw!r}")
    return value


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _get(env, key)
    if raw is None:
        return default
    if raw.lower() in _TRUE:
        return True
    if raw.lower() in _FALSE:
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    namespace: str = "default"
    kubeconfig: Optional[str] = None
    pubsub_url: str = "redis://localhost:6379/0"
    pubsub_flush_timeout: float = 5.0
    event_source: str = DEFAULT_EVENT_SOURCE
    event_type: str = DEFAULT_EVENT_TYPE
    watch_resource: str = KUBEVIRT_VMI_PLURAL
    watch_timeout_seconds: int = 60
    reconnect_base_delay: float = 5.0
    reconnect_max_delay: float = 60.0
    reconnect_max_attempts: Optional[int] = None
    status_sync_enabled: bool = True
    monitor_enabled: bool = False
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    records_table: str = DEFAULT_RECORDS_TABLE
    dcm_url: Optional[str] = None
    log_level: str = "INFO"
    pod_name: Optional[str] = None
    peering_name: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from *env* (``os.environ`` after ``load_dotenv``)."""
        if env is None:
            load_dotenv()
            env = os.environ

        watch_resource = _get(env, "WATCH_RESOURCE") or KUBEVIRT_VMI_PLURAL
        if watch_resource not in (KUBEVIRT_VM_PLURAL, KUBEVIRT_VMI_PLURAL):
            raise ConfigError(
                f"WATCH_RESOURCE must be {KUBEVIRT_VMI_PLURAL} or {KUBEVIRT_VM_PLURAL}, got {watch_resource!r}"
            )

        log_level = (_get(env, "LOG_LEVEL") or "INFO").upper()
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"LOG_LEVEL {log_level!r} is not a logging level")

        base_delay = _float(env, "RECONNECT_BASE_DELAY", 5.0)
        max_delay = _float(env, "RECONNECT_MAX_DELAY", 60.0)
        if max_delay < base_delay:
            raise ConfigError("RECONNECT_MAX_DELAY must not be lower than RECONNECT_BASE_DELAY")

        return cls(
            namespace=_get(env, "KUBEVIRT_NAMESPACE") or "default",
            kubeconfig=_get(env, "KUBECONFIG"),
            pubsub_url=_get(env, "PUBSUB_URL") or "redis://localhost:6379/0",
            pubsub_flush_timeout=_float(env, "PUBSUB_FLUSH_TIMEOUT", 5.0),
            event_source=_get(env, "EVENT_SOURCE") or DEFAULT_EVENT_SOURCE,
            event_type=_get(env, "EVENT_TYPE") or DEFAULT_EVENT_TYPE,
            watch_resource=watch_resource,
            watch_timeout_seconds=_int(env, "WATCH_TIMEOUT_SECONDS", 60),
            reconnect_base_delay=base_delay,
            reconnect_max_delay=max_delay,
            reconnect_max_attempts=_int(env, "RECONNECT_MAX_ATTEMPTS", None),
            status_sync_enabled=_bool(env, "STATUS_SYNC_ENABLED", True),
            monitor_enabled=_bool(env, "MONITOR_ENABLED", False),
            supabase_url=_get(env, "SUPABASE_URL"),
            supabase_key=_get(env, "SUPABASE_KEY"),
            records_table=_get(env, "RECORDS_TABLE") or DEFAULT_RECORDS_TABLE,
            dcm_url=_get(env, "DCM_URL"),
            log_level=log_level,
            pod_name=_get(env, "POD_NAME"),
            peering_name=_get(env, "KOPF_PEERING"),
        )
