"""
In-memory storage implementations.

Used when ``STORAGE_BACKEND=memory`` and by the test suite. State lives for
the lifetime of the process.
"""

import threading
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ingest_agent.storage.interfaces import MigrationError
from ingest_agent.types import CheckpointState, RawRecord


class InMemoryCheckpointRepository:
    """CheckpointRepository backed by a dict."""

    def __init__(self):
        self._states: Dict[str, CheckpointState] = {}
        self._lock = threading.Lock()

    async def load(self, params_key: str) -> Optional[CheckpointState]:
        with self._lock:
            return self._states.get(params_key)

    async def commit(self, state: CheckpointState) -> None:
        # CheckpointState is frozen, so replacing the reference is all-or-nothing
        with self._lock:
            self._states[state.params_key] = state

    def all(self) -> List[CheckpointState]:
        with self._lock:
            return list(self._states.values())


class InMemoryRawRecordRepository:
    """
    RawRecordRepository backed by per-key lists.

    Invalidated records are kept with a tombstone flag, mirroring the
    append-only storage contract.
    """

    def __init__(self):
        self._records: Dict[Tuple[str, str], List[Tuple[RawRecord, bool]]] = defaultdict(list)
        self._next_id = 1
        self._lock = threading.Lock()

    async def append(
        self,
        params_key: str,
        table: str,
        records: Sequence[bytes],
        collected_at: datetime,
    ) -> List[int]:
        ids = []
        with self._lock:
            bucket = self._records[(params_key, table)]
            for data in records:
                record = RawRecord(
                    id=self._next_id,
                    params_key=params_key,
                    table=table,
                    data=bytes(data),
                    collected_at=collected_at,
                )
                self._next_id += 1
                bucket.append((record, False))
                ids.append(record.id)
        return ids

    async def invalidate(self, params_key: str, table: str) -> int:
        with self._lock:
            bucket = self._records.get((params_key, table), [])
            live = sum(1 for _, dead in bucket if not dead)
            self._records[(params_key, table)] = [(record, True) for record, _ in bucket]
            return live

    async def list(self, params_key: str, table: str) -> List[RawRecord]:
        with self._lock:
            bucket = self._records.get((params_key, table), [])
            return sorted((record for record, dead in bucket if not dead), key=lambda r: r.id)

    async def count(self, params_key: str, table: str) -> int:
        return len(await self.list(params_key, table))

    def stored_total(self, params_key: str, table: str) -> int:
        """Number of stored rows including invalidated ones."""
        with self._lock:
            return len(self._records.get((params_key, table), []))


class InMemoryMigrationExecutor:
    """
    MigrationExecutor over a list of named callables.

    Args:
        scripts: (version, callable) pairs in apply order; a callable raising
            an exception fails the migration at that version
        applied: Versions to treat as already applied
    """

    def __init__(
        self,
        scripts: Sequence[Tuple[str, Callable[[], None]]] = (),
        applied: Sequence[str] = (),
    ):
        self.scripts = list(scripts)
        self.applied = list(applied)

    async def pending(self) -> List[str]:
        return [version for version, _ in self.scripts if version not in self.applied]

    async def apply(self) -> List[str]:
        done = []
        for version, script in self.scripts:
            if version in self.applied:
                continue
            try:
                script()
            except Exception as e:
                raise MigrationError(version, str(e))
            self.applied.append(version)
            done.append(version)
        return done
