"""
Stateful incremental collector.

The collector decides between a full and an incremental run from the stored
checkpoint, drives the pagination loop against an upstream API through a
connector's query builder and response parser, writes raw records, and
commits a new checkpoint only when the whole run succeeded.

Usage:
    async with StatefulApiCollector(params, checkpoints, raw_records, locks, time_after) as collector:
        if collector.is_incremental:
            ...
        await collector.execute(connector, api_client)
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from ingest_agent.ingestion.api_client import ApiClient, ApiClientError, ApiResponse
from ingest_agent.ingestion.base import CollectError, CollectErrorKind, Connector
from ingest_agent.ingestion.locks import CollectionLockRegistry
from ingest_agent.observability.logging import log_context
from ingest_agent.observability.metrics import (
    collector_pages_counter,
    collector_records_counter,
    collector_run_duration,
    collector_runs_counter,
)
from ingest_agent.storage.interfaces import CheckpointRepository, RawRecordRepository
from ingest_agent.types import (
    CheckpointState,
    CollectionMode,
    CollectionParams,
    PageCursor,
    QueryContext,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class CollectionSummary(BaseModel):
    """Outcome of a successful run."""

    params_key: str
    mode: CollectionMode
    lower_bound: Optional[datetime] = None
    pages_fetched: int = 0
    records_written: int = 0
    started_at: datetime
    finished_at: datetime


class FunctionConnector(Connector):
    """Connector assembled from a query-builder and a response-parser callable."""

    def __init__(
        self,
        url_template: str,
        query_builder: Callable[[QueryContext], Dict[str, str]],
        response_parser: Callable[[ApiResponse], List[bytes]],
        page_size: int = 100,
    ):
        self.url_template = url_template
        self.page_size = page_size
        self._query_builder = query_builder
        self._response_parser = response_parser

    def build_query(self, ctx: QueryContext) -> Dict[str, str]:
        return self._query_builder(ctx)

    def parse_response(self, response: ApiResponse) -> List[bytes]:
        return self._response_parser(response)


class StatefulApiCollector:
    """
    Collector for one CollectionParams.

    Entering the context acquires the params lock (failing fast with
    ``AlreadyRunning``), loads the checkpoint and fixes the collection mode.
    The mode never changes afterwards.

    Attributes:
        params: Identity of the collection unit
        time_after: Caller-supplied lower bound, None for all history
        latest_state: Checkpoint loaded on entry, if any
    """

    def __init__(
        self,
        params: CollectionParams,
        checkpoints: CheckpointRepository,
        raw_records: RawRecordRepository,
        locks: CollectionLockRegistry,
        time_after: Optional[datetime] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.params = params
        self.checkpoints = checkpoints
        self.raw_records = raw_records
        self.locks = locks
        self.time_after = _aware(time_after)
        self.clock = clock

        self.latest_state: Optional[CheckpointState] = None
        self.run_started_at: Optional[datetime] = None
        self._incremental: Optional[bool] = None
        self._locked = False
        self._executed = False

    async def __aenter__(self) -> "StatefulApiCollector":
        self.locks.acquire(self.params.key)
        self._locked = True
        try:
            self.run_started_at = self.clock()
            self.latest_state = await self.checkpoints.load(self.params.key)
            self._incremental = self._decide_incremental()
        except BaseException:
            self.locks.release(self.params.key)
            self._locked = False
            raise

        logger.info(
            f"Collection {self.params.key} prepared: mode={self.mode.value}, "
            f"lower_bound={self.lower_bound}"
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._locked:
            self.locks.release(self.params.key)
            self._locked = False

    # ------------------------------------------------------------------
    # Mode decision
    # ------------------------------------------------------------------

    def _decide_incremental(self) -> bool:
        state = self.latest_state
        if state is None:
            return False
        if self.time_after is None:
            return True
        if state.time_after is None:
            # The committed run already covered all history
            return True
        return self.time_after >= _aware(state.time_after)

    def _require_prepared(self):
        if self._incremental is None:
            raise RuntimeError("collector must be entered before use")

    @property
    def is_incremental(self) -> bool:
        self._require_prepared()
        return self._incremental

    @property
    def mode(self) -> CollectionMode:
        return CollectionMode.INCREMENTAL if self.is_incremental else CollectionMode.FULL

    @property
    def lower_bound(self) -> Optional[datetime]:
        """Resolved lower bound, normalized into the connector's zone."""
        if self.is_incremental:
            bound = _aware(self.latest_state.latest_success_start)
        else:
            bound = self.time_after
        if bound is None:
            return None
        return bound.astimezone(self.params.zone)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        connector: Connector,
        api_client: ApiClient,
        cancel_event: Optional[asyncio.Event] = None,
        concurrency: int = 1,
    ) -> CollectionSummary:
        """
        Run the pagination loop and commit the checkpoint on success.

        Args:
            connector: Query builder and response parser for the endpoint
            api_client: Client performing the requests
            cancel_event: Run-level cancellation signal
            concurrency: Number of page workers sharing the page counter

        Returns:
            Summary of the run

        Raises:
            CollectError: UPSTREAM_UNAVAILABLE, MALFORMED_RESPONSE or CANCELLED;
                the checkpoint is left untouched
        """
        self._require_prepared()
        if self._executed:
            raise RuntimeError("a collector executes at most once")
        self._executed = True

        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        with log_context(params_key=self.params.key, table=self.params.table, mode=self.mode.value):
            return await self._execute(
                connector, api_client, cancel_event or asyncio.Event(), concurrency
            )

    async def _execute(
        self,
        connector: Connector,
        api_client: ApiClient,
        cancel_event: asyncio.Event,
        concurrency: int,
    ) -> CollectionSummary:
        params = self.params
        incremental = self.is_incremental
        lower_bound = self.lower_bound
        page_size = connector.page_size
        labels = {"plugin": params.plugin, "table": params.table}
        timer = time.monotonic()

        if not incremental:
            dropped = await self.raw_records.invalidate(params.key, params.table)
            if dropped:
                logger.info(f"Full run for {params.key}: invalidated {dropped} prior records")

        # Shared by all workers; each page number is claimed exactly once
        cursor = PageCursor(page_number=1, page_size=page_size)
        stop = asyncio.Event()
        write_lock = asyncio.Lock()
        # Lowest page answered empty or failed; nothing past it is claimed
        horizon: Optional[int] = None
        next_write = 1
        # Parsed records (or the error) of fetched pages not yet written
        outcomes: Dict[int, Any] = {}
        failures: List[BaseException] = []
        totals = {"pages": 0, "records": 0}

        def claim_page() -> Optional[int]:
            page = cursor.page_number
            if horizon is not None and page > horizon:
                return None
            cursor.page_number += 1
            return page

        async def write_in_order():
            # Pages are written strictly in order, so nothing past the first
            # empty or failed page is ever stored
            nonlocal next_write
            async with write_lock:
                while not stop.is_set() and next_write in outcomes:
                    page = next_write
                    outcome = outcomes.pop(page)
                    if isinstance(outcome, BaseException):
                        failures.append(outcome)
                        stop.set()
                        return
                    if not outcome:
                        logger.debug(f"Page {page} empty, stopping")
                        stop.set()
                        return
                    try:
                        await self.raw_records.append(
                            params.key, params.table, outcome, self.clock()
                        )
                    except Exception as e:
                        failures.append(e)
                        stop.set()
                        return
                    totals["records"] += len(outcome)
                    collector_records_counter.labels(**labels).inc(len(outcome))
                    logger.debug(f"Page {page} wrote {len(outcome)} records")
                    next_write = page + 1

        async def worker(worker_id: int):
            nonlocal horizon
            while not stop.is_set():
                if cancel_event.is_set():
                    failures.append(CollectError(CollectErrorKind.CANCELLED, "collection cancelled"))
                    stop.set()
                    return

                page = claim_page()
                if page is None:
                    return
                ctx = QueryContext(
                    page_number=page,
                    page_size=cursor.page_size,
                    incremental=incremental,
                    lower_bound=lower_bound,
                    params=params,
                )
                try:
                    query = connector.build_query(ctx)
                    response = await self._fetch(api_client, connector.url_template, query, cancel_event)
                    totals["pages"] += 1
                    collector_pages_counter.labels(**labels).inc()

                    try:
                        outcome = connector.parse_response(response)
                    except Exception as e:
                        raise CollectError(
                            CollectErrorKind.MALFORMED_RESPONSE, f"page {page}: {e}"
                        ) from e
                except CollectError as e:
                    if e.kind == CollectErrorKind.CANCELLED:
                        failures.append(e)
                        stop.set()
                        return
                    outcome = e
                except Exception as e:
                    outcome = e

                if isinstance(outcome, BaseException) or not outcome:
                    logger.debug(f"Worker {worker_id}: page {page} ends the run")
                    if horizon is None or page < horizon:
                        horizon = page
                outcomes[page] = outcome
                await write_in_order()

        await asyncio.gather(*(worker(i) for i in range(concurrency)))
        collector_run_duration.labels(**labels).observe(time.monotonic() - timer)

        if outcomes:
            logger.debug(f"Discarded {len(outcomes)} speculative pages past page {horizon}")
        if not failures and cancel_event.is_set():
            failures.append(
                CollectError(CollectErrorKind.CANCELLED, "collection cancelled before commit")
            )

        if failures:
            error = failures[0]
            outcome = error.kind.value if isinstance(error, CollectError) else type(error).__name__
            collector_runs_counter.labels(mode=self.mode.value, outcome=outcome, **labels).inc()
            logger.error(
                f"Collection {params.key} failed after {totals['pages']} pages: {error}; "
                f"checkpoint left untouched"
            )
            raise error

        finished_at = self.clock()
        await self._commit(finished_at)
        collector_runs_counter.labels(mode=self.mode.value, outcome="success", **labels).inc()

        logger.info(
            f"Collection {params.key} finished: {totals['pages']} pages, "
            f"{totals['records']} records ({self.mode.value})"
        )
        return CollectionSummary(
            params_key=params.key,
            mode=self.mode,
            lower_bound=lower_bound,
            pages_fetched=totals["pages"],
            records_written=totals["records"],
            started_at=self.run_started_at,
            finished_at=finished_at,
        )

    async def _fetch(
        self,
        api_client: ApiClient,
        url_template: str,
        query: Dict[str, str],
        cancel_event: asyncio.Event,
    ) -> ApiResponse:
        """Perform one request, aborting it as soon as cancellation is signalled."""
        fetch_task = asyncio.ensure_future(api_client.fetch(url_template, query))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if fetch_task not in done:
                raise CollectError(CollectErrorKind.CANCELLED, "collection cancelled")
            try:
                return fetch_task.result()
            except ApiClientError as e:
                raise CollectError(CollectErrorKind.UPSTREAM_UNAVAILABLE, str(e)) from e
        finally:
            for task in (fetch_task, cancel_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(fetch_task, cancel_task, return_exceptions=True)

    async def _commit(self, finished_at: datetime):
        previous = self.latest_state
        if self.is_incremental:
            # Coverage only grows upward, the recorded lower bound stays
            time_after = previous.time_after
        else:
            time_after = self.time_after

        state = CheckpointState(
            params_key=self.params.key,
            latest_success_start=self.run_started_at,
            latest_success_end=finished_at,
            time_after=time_after,
            created_at=previous.created_at if previous else finished_at,
            updated_at=finished_at,
        )
        await self.checkpoints.commit(state)
        self.latest_state = state


async def collect(
    params: CollectionParams,
    connector: Connector,
    api_client: ApiClient,
    checkpoints: CheckpointRepository,
    raw_records: RawRecordRepository,
    locks: CollectionLockRegistry,
    time_after: Optional[datetime] = None,
    cancel_event: Optional[asyncio.Event] = None,
    concurrency: int = 1,
    clock: Callable[[], datetime] = utcnow,
) -> CollectionSummary:
    """
    Collect one params unit from start to checkpoint.

    Raises:
        CollectError: On any failed run, with the checkpoint untouched
    """
    async with StatefulApiCollector(
        params, checkpoints, raw_records, locks, time_after=time_after, clock=clock
    ) as collector:
        return await collector.execute(
            connector, api_client, cancel_event=cancel_event, concurrency=concurrency
        )
