"""Durable record of last-applied resource state.

The State Store is the only writer of durable state. The executor mutates a
node's record through ``update`` which is an atomic read-modify-write per
node; unrelated nodes never contend. An advisory lock scoped to a whole apply
run keeps two runs from mutating the same records concurrently.

Two media are provided:
- MemoryStateStore: in-process, for tests and embedding
- FileStateStore: a JSON document plus a sibling ``.lock`` file
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .models import StateRecord

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateError(Exception):
    """Raised when the State Store cannot be read or written."""

    pass


class LockContentionError(StateError):
    """Raised when another apply run holds the advisory lock."""

    def __init__(self, holder: dict[str, Any]) -> None:
        self.holder = holder
        owner = holder.get("owner", "unknown")
        since = holder.get("acquired_at", "unknown time")
        super().__init__(f"State is locked by '{owner}' since {since}")


Mutator = Callable[[StateRecord | None], StateRecord | None]


class StateStore(ABC):
    """get/put/delete plus per-node atomic update and a run-level lock.

    Records handed out are copies; the store's own records change only
    through put, delete and update.
    """

    def __init__(self) -> None:
        self._node_locks: dict[str, threading.Lock] = {}
        self._node_locks_guard = threading.Lock()

    # -- lifecycle -----------------------------------------------------------

    def open(self) -> None:
        """Prepare the medium for use. Idempotent."""

    def close(self) -> None:
        """Flush and release the medium. Idempotent."""

    def __enter__(self) -> StateStore:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- medium-specific primitives -----------------------------------------

    @abstractmethod
    def _read(self, node_id: str) -> StateRecord | None: ...

    @abstractmethod
    def _write(self, node_id: str, record: StateRecord) -> None: ...

    @abstractmethod
    def _remove(self, node_id: str) -> None: ...

    @abstractmethod
    def _all(self) -> dict[str, StateRecord]: ...

    @abstractmethod
    def acquire_lock(self, owner: str) -> None:
        """Take the run-level advisory lock.

        Raises:
            LockContentionError: If the lock is already held.
        """

    @abstractmethod
    def release_lock(self, owner: str) -> None:
        """Release the advisory lock if ``owner`` holds it."""

    # -- public operations ----------------------------------------------------

    def _lock_for(self, node_id: str) -> threading.Lock:
        with self._node_locks_guard:
            lock = self._node_locks.get(node_id)
            if lock is None:
                lock = threading.Lock()
                self._node_locks[node_id] = lock
            return lock

    def get(self, node_id: str) -> StateRecord | None:
        """Return a copy of the node's record, or None if absent."""
        with self._lock_for(node_id):
            record = self._read(node_id)
        return record.copy() if record is not None else None

    def put(self, node_id: str, record: StateRecord) -> None:
        """Store a record for a node, replacing any previous one."""
        if record.node_id != node_id:
            raise StateError(f"Record for '{record.node_id}' stored under '{node_id}'")
        with self._lock_for(node_id):
            self._write(node_id, record.copy())

    def delete(self, node_id: str) -> None:
        """Remove a node's record. Removing an absent record is a no-op."""
        with self._lock_for(node_id):
            self._remove(node_id)

    def update(self, node_id: str, mutate: Mutator) -> StateRecord | None:
        """Atomically read, transform and write one node's record.

        ``mutate`` receives a copy of the current record (or None) and returns
        the new record, or None to remove it.

        Returns:
            The stored record after the update, or None if removed.
        """
        with self._lock_for(node_id):
            current = self._read(node_id)
            updated = mutate(current.copy() if current is not None else None)
            if updated is None:
                if current is not None:
                    self._remove(node_id)
                return None
            if updated.node_id != node_id:
                raise StateError(f"Record for '{updated.node_id}' stored under '{node_id}'")
            updated.updated_at = datetime.now(UTC)
            self._write(node_id, updated.copy())
            return updated

    def records(self) -> dict[str, StateRecord]:
        """Snapshot of every record, keyed by node id."""
        return {node_id: record.copy() for node_id, record in self._all().items()}

    @contextmanager
    def locked(self, owner: str) -> Iterator[None]:
        """Hold the advisory lock for the duration of a block."""
        self.acquire_lock(owner)
        try:
            yield
        finally:
            self.release_lock(owner)


class MemoryStateStore(StateStore):
    """In-process store; the lock only guards against runs in this process."""

    def __init__(self, records: dict[str, StateRecord] | None = None) -> None:
        super().__init__()
        self._records: dict[str, StateRecord] = {
            node_id: record.copy() for node_id, record in (records or {}).items()
        }
        self._lock_holder: dict[str, Any] | None = None
        self._holder_guard = threading.Lock()

    def _read(self, node_id: str) -> StateRecord | None:
        return self._records.get(node_id)

    def _write(self, node_id: str, record: StateRecord) -> None:
        self._records[node_id] = record

    def _remove(self, node_id: str) -> None:
        self._records.pop(node_id, None)

    def _all(self) -> dict[str, StateRecord]:
        return dict(self._records)

    def acquire_lock(self, owner: str) -> None:
        with self._holder_guard:
            if self._lock_holder is not None:
                raise LockContentionError(self._lock_holder)
            self._lock_holder = {
                "owner": owner,
                "acquired_at": datetime.now(UTC).isoformat(),
            }

    def release_lock(self, owner: str) -> None:
        with self._holder_guard:
            if self._lock_holder is not None and self._lock_holder["owner"] == owner:
                self._lock_holder = None

    @property
    def lock_holder(self) -> dict[str, Any] | None:
        return self._lock_holder


class FileStateStore(StateStore):
    """JSON state file with an exclusive-create lock file beside it.

    Every mutation rewrites the document through a temporary file and
    ``os.replace`` so a crash mid-write never leaves a truncated state file.
    The lock is advisory: the file system does not enforce it.
    """

    def __init__(self, path: Path | str) -> None:
        super().__init__()
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._records: dict[str, StateRecord] = {}
        self._serial = 0
        self._opened = False
        self._write_guard = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @property
    def serial(self) -> int:
        """Number of writes the document has seen; increases on every flush."""
        return self._serial

    def open(self) -> None:
        if self._opened:
            return
        if self._path.exists():
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise StateError(f"Cannot read state file {self._path}: {e}") from e

            version = data.get("format_version")
            if version != STATE_FORMAT_VERSION:
                raise StateError(
                    f"Unsupported state format version {version!r} in {self._path}"
                )
            try:
                self._records = {
                    node_id: StateRecord.from_dict(raw)
                    for node_id, raw in data.get("records", {}).items()
                }
            except (KeyError, TypeError, ValueError) as e:
                raise StateError(f"Malformed record in state file {self._path}: {e}") from e
            self._serial = int(data.get("serial", 0))
        self._opened = True
        logger.debug(
            "State file opened",
            extra={"path": str(self._path), "record_count": len(self._records)},
        )

    def close(self) -> None:
        # Mutations are written through, so there is nothing left to flush
        self._opened = False

    def _ensure_open(self) -> None:
        if not self._opened:
            raise StateError(f"State file {self._path} is not open")

    def _flush(self, node_id: str, record: StateRecord | None) -> None:
        """Write the document with one record set (or removed if None).

        The document is serialized before anything touches the file system and
        memory is only updated after the rename, so a failed write leaves both
        the file and the in-memory records as they were.
        """
        with self._write_guard:
            records = dict(self._records)
            if record is None:
                records.pop(node_id, None)
            else:
                records[node_id] = record
            serial = self._serial + 1
            document = {
                "format_version": STATE_FORMAT_VERSION,
                "serial": serial,
                "records": {
                    key: value.to_dict() for key, value in sorted(records.items())
                },
            }
            try:
                payload = json.dumps(document, indent=2, sort_keys=True)
            except (TypeError, ValueError) as e:
                raise StateError(f"Cannot encode state for {self._path}: {e}") from e

            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self._path)
            except OSError as e:
                raise StateError(f"Cannot write state file {self._path}: {e}") from e
            finally:
                Path(tmp_name).unlink(missing_ok=True)

            self._records = records
            self._serial = serial

    def _read(self, node_id: str) -> StateRecord | None:
        self._ensure_open()
        return self._records.get(node_id)

    def _write(self, node_id: str, record: StateRecord) -> None:
        self._ensure_open()
        self._flush(node_id, record)

    def _remove(self, node_id: str) -> None:
        self._ensure_open()
        if node_id in self._records:
            self._flush(node_id, None)

    def _all(self) -> dict[str, StateRecord]:
        self._ensure_open()
        return dict(self._records)

    def _read_lock_holder(self) -> dict[str, Any]:
        try:
            return json.loads(self._lock_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {"owner": "unknown"}

    def acquire_lock(self, owner: str) -> None:
        holder = {
            "owner": owner,
            "pid": os.getpid(),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            raise LockContentionError(self._read_lock_holder()) from e
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(holder, handle)
        logger.info("State lock acquired", extra={"owner": owner, "lock": str(self._lock_path)})

    def release_lock(self, owner: str) -> None:
        if not self._lock_path.exists():
            return
        holder = self._read_lock_holder()
        if holder.get("owner") != owner:
            logger.warning(
                "State lock held by another owner, not releasing",
                extra={"owner": owner, "holder": holder.get("owner")},
            )
            return
        self._lock_path.unlink(missing_ok=True)
        logger.info("State lock released", extra={"owner": owner})

    def force_unlock(self) -> dict[str, Any] | None:
        """Remove a lock left behind by a crashed run.

        Returns:
            The holder information that was removed, or None if unlocked.
        """
        if not self._lock_path.exists():
            return None
        holder = self._read_lock_holder()
        self._lock_path.unlink(missing_ok=True)
        logger.warning("State lock forcibly removed", extra={"holder": holder.get("owner")})
        return holder
