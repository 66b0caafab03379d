"""
Exclusive per-params locks for collection runs.

At most one run per params key may be active. A second attempt fails fast
with ``AlreadyRunning`` instead of queuing behind the first.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Set

from ingest_agent.ingestion.base import CollectError, CollectErrorKind

logger = logging.getLogger(__name__)


class CollectionLockRegistry:
    """Set of params keys with a run in flight."""

    def __init__(self):
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def acquire(self, params_key: str) -> None:
        """
        Mark a params key as running.

        Raises:
            CollectError: ALREADY_RUNNING if a run holds the key
        """
        with self._lock:
            if params_key in self._active:
                raise CollectError(
                    CollectErrorKind.ALREADY_RUNNING,
                    f"a collection run for {params_key} is already in progress",
                )
            self._active.add(params_key)
        logger.debug(f"Acquired collection lock {params_key}")

    def release(self, params_key: str) -> None:
        with self._lock:
            self._active.discard(params_key)
        logger.debug(f"Released collection lock {params_key}")

    def is_running(self, params_key: str) -> bool:
        with self._lock:
            return params_key in self._active

    @contextmanager
    def hold(self, params_key: str) -> Iterator[None]:
        self.acquire(params_key)
        try:
            yield
        finally:
            self.release(params_key)
