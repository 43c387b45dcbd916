"""
Provisioner - State Store

Persists the last-known mapping from logical resource addresses to
provider-assigned identifiers and last-applied attribute snapshots.

Document layout (JSON):

    {
      "version": 1,
      "serial": 7,
      "resources": {
        "network.main": {...StateRecord...},
        "subnet.public[0]": {...}
      }
    }

Every put/delete rewrites the whole document atomically (temp file,
fsync, rename) under a store-wide lock, so a record confirmed by the
provider survives an immediate process exit.
"""

from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Optional
import json
import logging
import os
import threading
import uuid

from pydantic import ValidationError

from provisioner.errors import StateCorruptionError
from provisioner.models import StateRecord, parse_address

logger = logging.getLogger(__name__)


class StateStore:
    """
    File-backed State Store.

    The single source of truth for what currently exists. Only the
    executor mutates it, after a confirmed provider response.
    """

    VERSION = 1

    def __init__(self, path: str):
        """
        Open (or create on first write) the state document.

        Raises:
            StateCorruptionError: If the existing document is unreadable
        """
        self.path = Path(path)
        self._lock = threading.RLock()
        self._records: Dict[str, StateRecord] = {}
        self._serial = 0
        self._load()
        logger.info(f"State store opened at: {self.path.absolute()} ({len(self._records)} records)")

    # =========================================================================
    # READ
    # =========================================================================

    def get(self, address: str) -> Optional[StateRecord]:
        """Get a copy of the record for an address, or None."""
        with self._lock:
            record = self._records.get(address)
            return record.model_copy(deep=True) if record else None

    def list(self) -> List[StateRecord]:
        """All records, in the order they were first written."""
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def addresses(self) -> List[str]:
        with self._lock:
            return list(self._records)

    @property
    def serial(self) -> int:
        return self._serial

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # =========================================================================
    # WRITE
    # =========================================================================

    def put(self, record: StateRecord) -> None:
        """Insert or replace a record and persist atomically."""
        with self._lock:
            records = dict(self._records)
            records[record.address] = record.model_copy(deep=True)
            self._write(records, self._serial + 1)
            self._records = records
            self._serial += 1
        logger.debug(f"State record written: {record.address} ({record.provider_id})")

    def delete(self, address: str) -> bool:
        """Remove a record and persist atomically. Returns False if absent."""
        with self._lock:
            if address not in self._records:
                return False
            records = dict(self._records)
            del records[address]
            self._write(records, self._serial + 1)
            self._records = records
            self._serial += 1
        logger.debug(f"State record removed: {address}")
        return True

    def _write(self, records: Dict[str, StateRecord], serial: int) -> None:
        document = {
            "version": self.VERSION,
            "serial": serial,
            "resources": {
                address: record.model_dump(mode="json")
                for address, record in records.items()
            },
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        self._sync_directory()

    def _sync_directory(self) -> None:
        """Flush the rename itself to disk where the platform allows it."""
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(self.path.parent, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    # =========================================================================
    # LOAD
    # =========================================================================

    def _load(self) -> None:
        if not self.path.exists():
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateCorruptionError(f"State document unreadable: {e}", {"path": str(self.path)})

        if not isinstance(document, dict):
            raise StateCorruptionError("State document must be a JSON object", {"path": str(self.path)})
        if document.get("version") != self.VERSION:
            raise StateCorruptionError(
                f"Unsupported state version: {document.get('version')!r}",
                {"path": str(self.path)},
            )
        resources = document.get("resources")
        if not isinstance(resources, dict):
            raise StateCorruptionError("State 'resources' must be a mapping", {"path": str(self.path)})

        records: Dict[str, StateRecord] = {}
        for address, raw in resources.items():
            try:
                record = StateRecord.model_validate(raw)
            except ValidationError as e:
                raise StateCorruptionError(
                    f"Invalid state record '{address}'",
                    {"errors": [f"{err['loc']}: {err['msg']}" for err in e.errors()]},
                )
            parsed = parse_address(address)
            if (
                record.address != address
                or parsed is None
                or parsed != (record.resource_type, record.name, record.key)
            ):
                raise StateCorruptionError(
                    f"State record key '{address}' does not match its identity",
                    {"record_address": record.address},
                )
            records[address] = record

        self._records = records
        self._serial = int(document.get("serial", 0))
