"""State store for declaration-based reconciliation.

Persists the last-applied record of every managed resource to a versioned
JSON snapshot and guards plan/apply cycles with an exclusive lock file.

Snapshot layout (state.json):

    {
      "version": 1,
      "serial": 7,
      "lineage": "4f0c...",
      "resources": {
        "google_storage_bucket.assets": {
          "type": "google_storage_bucket",
          "external_id": "assets-7f3a",
          "attributes": {...},
          "outputs": {...},
          "dependencies": [],
          "applied_at": 1760000000.0
        }
      }
    }

The lock lives beside the snapshot as state.json.lock and holds the
owner's LockInfo as JSON.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from common import who_am_i
from reconciler.errors import LockContention, StateError

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class StateRecord:
    """Last-applied state of one resource.

    Attributes:
        resource_id: Resource id ("<type>.<name>")
        type: Resource type (kept so deletes can be routed after the
              declaration is gone)
        external_id: Provider-assigned identifier
        attributes: Declared attribute values as applied (references resolved)
        outputs: Attribute mapping returned by the provider
        dependencies: Resource ids this resource depended on when applied
        applied_at: Timestamp of the last successful apply
    """
    resource_id: str
    type: str
    external_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    applied_at: Optional[float] = None

    _MISSING = object()

    def lookup(self, attribute: str, default: Any = _MISSING) -> Any:
        """Resolve an attribute for references: outputs, then attributes.

        'id' falls back to external_id.

        Raises:
            KeyError: If the attribute is unknown and no default given
        """
        if attribute in self.outputs:
            return self.outputs[attribute]
        if attribute in self.attributes:
            return self.attributes[attribute]
        if attribute == 'id':
            return self.external_id
        if default is not StateRecord._MISSING:
            return default
        raise KeyError(attribute)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'external_id': self.external_id,
            'attributes': self.attributes,
            'outputs': self.outputs,
            'dependencies': sorted(self.dependencies),
        }
        if self.applied_at is not None:
            d['applied_at'] = self.applied_at
        return d

    @classmethod
    def from_dict(cls, resource_id: str, data: dict) -> 'StateRecord':
        return cls(
            resource_id=resource_id,
            type=data.get('type') or resource_id.split('.', 1)[0],
            external_id=str(data['external_id']),
            attributes=dict(data.get('attributes') or {}),
            outputs=dict(data.get('outputs') or {}),
            dependencies=list(data.get('dependencies') or []),
            applied_at=data.get('applied_at'),
        )


@dataclass
class LockInfo:
    """Ownership record of the state lock."""
    id: str
    operation: str
    who: str
    pid: int
    created: float

    @property
    def created_display(self) -> str:
        return datetime.fromtimestamp(self.created).strftime('%Y-%m-%d %H:%M:%S')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'operation': self.operation,
            'who': self.who,
            'pid': self.pid,
            'created': self.created,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LockInfo':
        return cls(
            id=data.get('id', ''),
            operation=data.get('operation', ''),
            who=data.get('who', ''),
            pid=int(data.get('pid', 0)),
            created=float(data.get('created', 0.0)),
        )

    @classmethod
    def new(cls, operation: str) -> 'LockInfo':
        return cls(
            id=uuid.uuid4().hex,
            operation=operation,
            who=who_am_i(),
            pid=os.getpid(),
            created=time.time(),
        )


class StateStore:
    """Durable, lock-protected record of last-applied resource state.

    Each commit rewrites the snapshot atomically (temp file + rename) and
    keeps the previous snapshot at state.json.backup. Commits from executor
    threads are serialised by an in-process mutex; cross-process exclusion
    is the lock file's job.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + '.lock')
        self.backup_path = self.path.with_name(self.path.name + '.backup')
        self._mutex = threading.Lock()

    def __repr__(self) -> str:
        return f"StateStore({self.path})"

    # Snapshot

    def _read(self) -> dict:
        if not self.path.exists():
            return {
                'version': STATE_VERSION,
                'serial': 0,
                'lineage': uuid.uuid4().hex,
                'resources': {},
            }
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Corrupt state snapshot {self.path}: {e}")

        version = data.get('version')
        if not isinstance(version, int) or version > STATE_VERSION:
            raise StateError(
                f"State snapshot {self.path} has version {version!r}; "
                f"this reconciler supports up to {STATE_VERSION}"
            )
        data.setdefault('resources', {})
        data.setdefault('serial', 0)
        data.setdefault('lineage', uuid.uuid4().hex)
        return data

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            shutil.copy2(self.path, self.backup_path)

        fd, tmp = tempfile.mkstemp(prefix=f'.{self.path.name}-', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def load(self) -> dict[str, StateRecord]:
        """Return all current StateRecords keyed by resource id."""
        with self._mutex:
            data = self._read()
        return {
            rid: StateRecord.from_dict(rid, rec)
            for rid, rec in data['resources'].items()
        }

    def get(self, resource_id: str) -> Optional[StateRecord]:
        return self.load().get(resource_id)

    @property
    def serial(self) -> int:
        with self._mutex:
            return int(self._read()['serial'])

    def commit(self, resource_id: str, record: Optional[StateRecord]) -> None:
        """Atomically persist one resource's new state.

        Args:
            resource_id: Resource being committed
            record: New record, or None to remove the resource (after delete)
        """
        with self._mutex:
            data = self._read()
            if record is None:
                data['resources'].pop(resource_id, None)
            else:
                data['resources'][resource_id] = record.to_dict()
            data['serial'] = int(data['serial']) + 1
            data['version'] = STATE_VERSION
            self._write(data)
        logger.debug(f"Committed state for {resource_id} (serial {data['serial']})")

    # Locking

    def current_lock(self) -> Optional[LockInfo]:
        """Return the holder of the lock, or None if unlocked."""
        try:
            with open(self.lock_path, encoding='utf-8') as f:
                return LockInfo.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            # Lock file exists but is being written or is damaged
            return LockInfo(id='', operation='unknown', who='unknown', pid=0, created=0.0)

    def acquire_lock(self, operation: str = 'apply') -> LockInfo:
        """Take the state lock.

        Raises:
            LockContention: If the lock is already held
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        info = LockInfo.new(operation)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise LockContention(holder=self.current_lock(), path=self.lock_path)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(info.to_dict(), f)
        logger.debug(f"Acquired state lock {info.id} for {operation}")
        return info

    def release_lock(self, lock: LockInfo) -> None:
        """Release a lock taken by acquire_lock.

        Raises:
            StateError: If the lock is now held under a different id
        """
        holder = self.current_lock()
        if holder is None:
            logger.warning(f"State lock {lock.id} already released")
            return
        if holder.id != lock.id:
            raise StateError(
                f"State lock is held by {holder.id}, not {lock.id}; refusing to release"
            )
        self.lock_path.unlink(missing_ok=True)
        logger.debug(f"Released state lock {lock.id}")

    def force_unlock(self, lock_id: str) -> bool:
        """Remove a stale lock left by a crashed process.

        Returns:
            True if the lock was removed, False if no lock was held

        Raises:
            StateError: If lock_id does not match the holder
        """
        holder = self.current_lock()
        if holder is None:
            return False
        if holder.id != lock_id:
            raise StateError(f"Lock id mismatch: held lock is '{holder.id}'")
        self.lock_path.unlink(missing_ok=True)
        logger.warning(f"Force-unlocked state lock {lock_id} held by {holder.who}")
        return True

    @contextmanager
    def locked(self, operation: str = 'apply') -> Iterator[LockInfo]:
        """Hold the state lock for the duration of a with-block."""
        lock = self.acquire_lock(operation)
        try:
            yield lock
        finally:
            self.release_lock(lock)
