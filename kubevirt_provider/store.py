"""Persisted VM records.

Only four operations are consumed by the rest of the package, captured by the
:class:`RecordStore` protocol. :class:`SupabaseRecordStore` implements them on
top of a Supabase table.
"""
from __future__ import annotations

import logging
from typing import Any, List, Protocol

from supabase import Client, create_client

from .errors import ConfigError, RecordNotFoundError
from .models import VMRecord

logger = logging.getLogger(__name__)

DEFAULT_RECORDS_TABLE = "vm_records"


class RecordStore(Protocol):
    def get(self, vm_id: str) -> VMRecord: ...

    def update(self, record: VMRecord) -> None: ...

    def list(self) -> List[VMRecord]: ...

    def create(self, record: VMRecord) -> None: ...


class SupabaseRecordStore:
    """Stores :class:`VMRecord` rows in a Supabase table keyed by ``id``."""

    def __init__(self, client: Client, table: str = DEFAULT_RECORDS_TABLE):
        self.client = client
        self.table = table

    @classmethod
    def from_credentials(cls, url: str, key: str, table: str = DEFAULT_RECORDS_TABLE) -> "SupabaseRecordStore":
        if not url or not key:
            raise ConfigError("SUPABASE_URL / SUPABASE_KEY env vars must be set")
        client = create_client(url, key)
        logger.info("Supabase client initialised")
        return cls(client, table)

    def _rows(self, resp: Any) -> List[dict]:
        return list(resp.data or [])

    def get(self, vm_id: str) -> VMRecord:
        logger.debug("Supabase query: record for %s", vm_id)
        resp = self.client.table(self.table).select("*").eq("id", vm_id).limit(1).execute()
        rows = self._rows(resp)
        if not rows:
            raise RecordNotFoundError(vm_id)
        return VMRecord.model_validate(rows[0])

    def update(self, record: VMRecord) -> None:
        row = record.to_row()
        row.pop("id")
        resp = self.client.table(self.table).update(row).eq("id", record.id).execute()
        if not self._rows(resp):
            raise RecordNotFoundError(record.id)
        logger.info("Supabase status for %s set to %s", record.id, record.status)

    def list(self) -> List[VMRecord]:
        resp = self.client.table(self.table).select("*").execute()
        return [VMRecord.model_validate(row) for row in self._rows(resp)]

    def create(self, record: VMRecord) -> None:
        self.client.table(self.table).insert(record.to_row()).execute()
        logger.info("Supabase record created for %s", record.id)
