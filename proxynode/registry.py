# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""File-backed registry of provisioned instances.

The registry file is the system of record: a JSON array of
``{"id", "inboundPort", "lastTotalRx", "lastTotalTx"}`` objects.  Every
operation reads the whole document and every mutation rewrites the whole
document atomically (temp file in the same directory, then ``replace``).

Each read-modify-write runs under a lock shared by every registry object
pointing at the same file, so a provisioning ``add`` and a metering
``update`` issued from different threads cannot lose each other's write.
"""

from __future__ import annotations

import json
import logging
import tempfile
import threading
from pathlib import Path

from proxynode.errors import RegistryError
from proxynode.types import InstanceRecord


logger = logging.getLogger(__name__)

_locks: dict[Path, threading.Lock] = {}
_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    """Return the process-wide lock for a registry file."""
    key = path.resolve()
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


class InstanceRegistry:
    """Durable mapping of instance id to port and last traffic counters.

    Args:
        path: Registry file.  It and its parent directory are created
            (holding ``[]``) on first access.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = _lock_for(path)

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_all(self) -> list[InstanceRecord]:
        """Return a snapshot of all records, in file order."""
        with self._lock:
            return list(self._read())

    def get(self, instance_id: int) -> InstanceRecord | None:
        """Return the record of an instance, or None if not registered."""
        with self._lock:
            for record in self._read():
                if record.id == instance_id:
                    return record
        return None

    def add(self, record: InstanceRecord) -> bool:
        """Register an instance.

        Returns:
            True if added, False if the id was already registered (the
            existing record is left untouched).
        """
        with self._lock:
            records = self._read()
            if any(r.id == record.id for r in records):
                logger.debug("Instance %d already registered", record.id)
                return False
            records.append(record)
            self._write(records)
        logger.info(
            "Registered instance %d (inbound port %d)",
            record.id,
            record.inbound_port,
        )
        return True

    def remove(self, instance_id: int) -> bool:
        """Unregister an instance.

        Returns:
            True if a record was removed, False if none existed.
        """
        with self._lock:
            records = self._read()
            remaining = [r for r in records if r.id != instance_id]
            if len(remaining) == len(records):
                return False
            self._write(remaining)
        logger.info("Unregistered instance %d", instance_id)
        return True

    def update(self, record: InstanceRecord) -> bool:
        """Replace the record with the same id.

        Returns:
            True if replaced, False if no record had that id (nothing is
            written, so an instance removed meanwhile stays removed).
        """
        with self._lock:
            records = self._read()
            for index, existing in enumerate(records):
                if existing.id == record.id:
                    records[index] = record
                    self._write(records)
                    return True
        logger.debug("Instance %d not registered, update skipped", record.id)
        return False

    # ------------------------------------------------------------------
    # File access (caller holds the lock)
    # ------------------------------------------------------------------

    def _ensure_file(self) -> None:
        if self._path.exists():
            return
        logger.info("Creating instance registry at %s", self._path)
        self._write([])

    def _read(self) -> list[InstanceRecord]:
        self._ensure_file()
        try:
            with open(self._path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise RegistryError(
                f"Registry {self._path} is not valid JSON: {e}"
            ) from e
        except OSError as e:
            raise RegistryError(
                f"Cannot read registry {self._path}: {e}"
            ) from e

        if not isinstance(data, list):
            raise RegistryError(
                f"Registry {self._path} must hold a JSON array, got "
                f"{type(data).__name__}"
            )
        records: list[InstanceRecord] = []
        for item in data:
            if not isinstance(item, dict):
                raise RegistryError(
                    f"Registry {self._path} holds a non-object entry: "
                    f"{item!r}"
                )
            try:
                records.append(InstanceRecord.from_dict(item))
            except ValueError as e:
                raise RegistryError(f"Registry {self._path}: {e}") from e
        return records

    def _write(self, records: list[InstanceRecord]) -> None:
        """Persist records atomically."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
            try:
                with open(fd, "w") as f:
                    json.dump([r.to_dict() for r in records], f, indent=2)
                    f.write("\n")
                Path(tmp).replace(self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise RegistryError(
                f"Cannot write registry {self._path}: {e}"
            ) from e
