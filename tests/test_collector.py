"""
Unit tests for the stateful incremental collector.

Tests cover:
- Full / incremental mode decision and lower bound resolution
- Checkpoint commit on success only
- Pagination termination and full-mode re-collection
- Per-params concurrency guard
- Parser and upstream failures, cancellation
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from ingest_agent.ingestion.base import CollectError, CollectErrorKind
from ingest_agent.ingestion.collector import FunctionConnector, StatefulApiCollector, collect
from ingest_agent.ingestion.locks import CollectionLockRegistry
from ingest_agent.observability.logging import JSONFormatter
from ingest_agent.storage.memory import InMemoryCheckpointRepository, InMemoryRawRecordRepository
from ingest_agent.types import CheckpointState, CollectionMode, CollectionParams
from tests.mocks import MockApiClient, TickingClock, json_records, page_query


UTC = timezone.utc
RUN_START = datetime(2024, 3, 10, 0, 0, tzinfo=UTC)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def params():
    return CollectionParams(
        plugin="mock",
        connection_id="1",
        table="mock_api_items",
        options={"ConnectionId": 1, "ProjectId": 42},
    )


@pytest.fixture
def checkpoints():
    return InMemoryCheckpointRepository()


@pytest.fixture
def raw_records():
    return InMemoryRawRecordRepository()


@pytest.fixture
def locks():
    return CollectionLockRegistry()


@pytest.fixture
def connector():
    return FunctionConnector("items", page_query, json_records, page_size=10)


@pytest.fixture
def clock():
    return TickingClock(RUN_START, step=timedelta(minutes=1))


def make_state(params, latest_success_start, time_after=None):
    return CheckpointState(
        params_key=params.key,
        latest_success_start=latest_success_start,
        latest_success_end=latest_success_start + timedelta(minutes=5),
        time_after=time_after,
        created_at=latest_success_start,
        updated_at=latest_success_start + timedelta(minutes=5),
    )


# ============================================================================
# CollectionParams
# ============================================================================


def test_params_key_is_stable_and_zone_sensitive(params):
    same = CollectionParams(
        plugin="mock",
        connection_id="1",
        table="mock_api_items",
        options={"ProjectId": 42, "ConnectionId": 1},
    )
    other_zone = params.model_copy(update={"timezone": "Asia/Shanghai"})

    assert params.key == same.key
    assert params.key.startswith("mock:1:mock_api_items:")
    assert params.key != other_zone.key


def test_params_rejects_unknown_zone():
    with pytest.raises(ValidationError):
        CollectionParams(plugin="mock", connection_id="1", table="t", timezone="Mars/Olympus")


# ============================================================================
# Mode Decision
# ============================================================================


@pytest.mark.asyncio
async def test_first_run_with_time_after_is_full(params, checkpoints, raw_records, locks, connector, clock):
    """No checkpoint, timeAfter 2024-01-01: full mode bounded by timeAfter."""
    time_after = datetime(2024, 1, 1, tzinfo=UTC)
    client = MockApiClient.with_record_count(25, page_size=10)

    async with StatefulApiCollector(
        params, checkpoints, raw_records, locks, time_after=time_after, clock=clock
    ) as collector:
        assert collector.mode == CollectionMode.FULL
        assert collector.lower_bound == time_after
        summary = await collector.execute(connector, client)

    assert summary.mode == CollectionMode.FULL
    assert client.requests[0]["since"] == "2024-01-01T00:00:00+00:00"

    state = await checkpoints.load(params.key)
    assert state.latest_success_start == RUN_START
    assert state.time_after == time_after


@pytest.mark.asyncio
async def test_second_run_is_incremental_from_last_start(checkpoints, raw_records, locks, connector, clock):
    """Checkpoint at 2024-03-10, no override: incremental, bound normalized to the zone."""
    params = CollectionParams(
        plugin="mock", connection_id="1", table="mock_api_items", timezone="Asia/Shanghai"
    )
    await checkpoints.commit(make_state(params, RUN_START))
    client = MockApiClient.with_record_count(5, page_size=10)

    async with StatefulApiCollector(params, checkpoints, raw_records, locks, clock=clock) as collector:
        assert collector.is_incremental
        bound = collector.lower_bound
        await collector.execute(connector, client)

    assert bound == RUN_START
    assert bound.utcoffset() == timedelta(hours=8)
    assert bound.tzinfo == ZoneInfo("Asia/Shanghai")
    assert client.requests[0]["since"] == "2024-03-10T08:00:00+08:00"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "recorded, requested, expected",
    [
        (datetime(2024, 2, 1, tzinfo=UTC), datetime(2024, 1, 1, tzinfo=UTC), CollectionMode.FULL),
        (datetime(2024, 2, 1, tzinfo=UTC), datetime(2024, 2, 1, tzinfo=UTC), CollectionMode.INCREMENTAL),
        (datetime(2024, 2, 1, tzinfo=UTC), datetime(2024, 3, 1, tzinfo=UTC), CollectionMode.INCREMENTAL),
        (None, datetime(2024, 1, 1, tzinfo=UTC), CollectionMode.INCREMENTAL),
        (datetime(2024, 2, 1, tzinfo=UTC), None, CollectionMode.INCREMENTAL),
    ],
)
async def test_wider_window_forces_full_mode(params, checkpoints, raw_records, locks, recorded, requested, expected):
    await checkpoints.commit(make_state(params, RUN_START, time_after=recorded))

    async with StatefulApiCollector(
        params, checkpoints, raw_records, locks, time_after=requested
    ) as collector:
        assert collector.mode == expected


@pytest.mark.asyncio
async def test_naive_time_after_is_treated_as_utc(params, checkpoints, raw_records, locks):
    async with StatefulApiCollector(
        params, checkpoints, raw_records, locks, time_after=datetime(2024, 1, 1)
    ) as collector:
        assert collector.lower_bound == datetime(2024, 1, 1, tzinfo=UTC)


@pytest.mark.asyncio
async def test_incremental_commit_keeps_recorded_time_after(params, checkpoints, raw_records, locks, connector, clock):
    recorded = datetime(2024, 1, 1, tzinfo=UTC)
    previous = make_state(params, datetime(2024, 3, 1, tzinfo=UTC), time_after=recorded)
    await checkpoints.commit(previous)

    await collect(
        params,
        connector,
        MockApiClient.with_record_count(3, page_size=10),
        checkpoints,
        raw_records,
        locks,
        time_after=datetime(2024, 2, 15, tzinfo=UTC),
        clock=clock,
    )

    state = await checkpoints.load(params.key)
    assert state.time_after == recorded
    assert state.latest_success_start == RUN_START
    assert state.created_at == previous.created_at


# ============================================================================
# Checkpoint Commit
# ============================================================================


@pytest.mark.asyncio
async def test_latest_success_start_is_run_start(params, checkpoints, raw_records, locks, connector, clock):
    """The checkpoint records when the run started, not when data was last seen."""
    await collect(
        params,
        connector,
        MockApiClient.with_record_count(30, page_size=10),
        checkpoints,
        raw_records,
        locks,
        clock=clock,
    )

    state = await checkpoints.load(params.key)
    records = await raw_records.list(params.key, params.table)

    assert state.latest_success_start == RUN_START
    assert state.latest_success_end > state.latest_success_start
    assert max(r.collected_at for r in records) > state.latest_success_start


@pytest.mark.asyncio
async def test_failed_run_leaves_checkpoint_unchanged(params, checkpoints, raw_records, locks, connector):
    before = make_state(params, datetime(2024, 3, 1, tzinfo=UTC))
    await checkpoints.commit(before)
    client = MockApiClient.with_record_count(40, page_size=10, fail_on_page=2)

    with pytest.raises(CollectError) as exc_info:
        await collect(params, connector, client, checkpoints, raw_records, locks)

    assert exc_info.value.kind == CollectErrorKind.UPSTREAM_UNAVAILABLE
    assert await checkpoints.load(params.key) == before
    assert not locks.is_running(params.key)


@pytest.mark.asyncio
async def test_parser_failure_on_page_three_of_five(params, checkpoints, raw_records, locks):
    """Pages 1-2 stay stored, the run fails with MalformedResponse, no checkpoint."""
    calls = {"n": 0}

    def parser(response):
        calls["n"] += 1
        if calls["n"] == 3:
            raise ValueError("unexpected payload shape")
        return json_records(response)

    connector = FunctionConnector("items", page_query, parser, page_size=10)
    client = MockApiClient.with_record_count(50, page_size=10)

    with pytest.raises(CollectError) as exc_info:
        await collect(params, connector, client, checkpoints, raw_records, locks)

    assert exc_info.value.kind == CollectErrorKind.MALFORMED_RESPONSE
    assert "page 3" in exc_info.value.message
    assert client.fetch_count == 3
    assert await raw_records.count(params.key, params.table) == 20
    assert await checkpoints.load(params.key) is None


# ============================================================================
# Pagination
# ============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("total, expected_fetches", [(0, 1), (9, 2), (10, 2), (35, 5)])
async def test_pagination_stops_at_first_empty_page(
    params, checkpoints, raw_records, locks, connector, total, expected_fetches
):
    client = MockApiClient.with_record_count(total, page_size=10)

    summary = await collect(params, connector, client, checkpoints, raw_records, locks)

    assert client.fetch_count == expected_fetches
    assert summary.pages_fetched == expected_fetches
    assert summary.records_written == total
    assert [int(q["page"]) for q in client.requests] == list(range(1, expected_fetches + 1))


@pytest.mark.asyncio
async def test_full_runs_do_not_accumulate_duplicates(params, checkpoints, raw_records, locks, connector):
    client = MockApiClient.with_record_count(25, page_size=10)

    first = await collect(
        params, connector, client, checkpoints, raw_records, locks,
        time_after=datetime(2024, 2, 1, tzinfo=UTC),
    )
    first_dataset = sorted(r.data for r in await raw_records.list(params.key, params.table))

    # An earlier time_after widens the window and forces a second full run
    second = await collect(
        params, connector, client, checkpoints, raw_records, locks,
        time_after=datetime(2024, 1, 1, tzinfo=UTC),
    )
    second_dataset = sorted(r.data for r in await raw_records.list(params.key, params.table))

    assert first.mode == second.mode == CollectionMode.FULL
    assert first_dataset == second_dataset
    assert len(second_dataset) == 25
    assert raw_records.stored_total(params.key, params.table) == 50


@pytest.mark.asyncio
async def test_concurrent_page_workers_collect_every_record(params, checkpoints, raw_records, locks, connector):
    client = MockApiClient.with_record_count(95, page_size=10, delay=0.001)

    summary = await collect(
        params, connector, client, checkpoints, raw_records, locks, concurrency=4
    )

    records = await raw_records.list(params.key, params.table)
    pages = [int(q["page"]) for q in client.requests]
    assert summary.records_written == 95
    assert len({r.data for r in records}) == 95
    assert len(pages) == len(set(pages))
    # Up to concurrency - 1 speculative fetches past the first empty page
    assert 11 <= client.fetch_count <= 14


@pytest.mark.asyncio
async def test_speculative_failure_past_last_page_is_ignored(params, checkpoints, raw_records, locks, connector):
    # Pages 1-2 hold data, page 3 is empty, every page from 4 on errors
    client = MockApiClient.with_record_count(20, page_size=10, fail_from_page=4)

    summary = await collect(
        params, connector, client, checkpoints, raw_records, locks, concurrency=4
    )

    pages = sorted(int(q["page"]) for q in client.requests)
    assert 4 in pages
    assert summary.records_written == 20
    assert await raw_records.count(params.key, params.table) == 20
    assert (await checkpoints.load(params.key)).latest_success_start == summary.started_at


@pytest.mark.asyncio
async def test_failure_before_last_page_fails_concurrent_run(params, checkpoints, raw_records, locks, connector):
    client = MockApiClient.with_record_count(40, page_size=10, fail_on_page=2)

    with pytest.raises(CollectError) as exc_info:
        await collect(params, connector, client, checkpoints, raw_records, locks, concurrency=4)

    assert exc_info.value.kind == CollectErrorKind.UPSTREAM_UNAVAILABLE
    # Pages after the failed one are never written
    assert await raw_records.count(params.key, params.table) == 10
    assert await checkpoints.load(params.key) is None


@pytest.mark.asyncio
async def test_run_logs_carry_params_key(params, checkpoints, raw_records, locks, connector):
    lines = []

    class JSONLines(logging.Handler):
        def emit(self, record):
            lines.append(json.loads(JSONFormatter().format(record)))

    collector_logger = logging.getLogger("ingest_agent.ingestion.collector")
    handler = JSONLines()
    saved_level = collector_logger.level
    collector_logger.addHandler(handler)
    collector_logger.setLevel(logging.INFO)
    try:
        await collect(params, connector, MockApiClient.with_record_count(5, page_size=10),
                      checkpoints, raw_records, locks)
    finally:
        collector_logger.removeHandler(handler)
        collector_logger.setLevel(saved_level)

    finished = next(line for line in lines if "finished" in line["message"])
    assert finished["params_key"] == params.key
    assert finished["context"]["mode"] == "full"
    assert finished["context"]["table"] == "mock_api_items"


# ============================================================================
# Concurrency Guard
# ============================================================================


@pytest.mark.asyncio
async def test_concurrent_runs_for_same_params(params, checkpoints, raw_records, locks, connector):
    client = MockApiClient.with_record_count(30, page_size=10, delay=0.01)

    results = await asyncio.gather(
        collect(params, connector, client, checkpoints, raw_records, locks),
        collect(params, connector, client, checkpoints, raw_records, locks),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, CollectError)]
    successes = [r for r in results if not isinstance(r, BaseException)]
    assert len(successes) == 1
    assert len(errors) == 1
    assert errors[0].kind == CollectErrorKind.ALREADY_RUNNING
    assert await raw_records.count(params.key, params.table) == 30
    assert not locks.is_running(params.key)


@pytest.mark.asyncio
async def test_different_params_run_concurrently(params, checkpoints, raw_records, locks, connector):
    other = params.model_copy(update={"table": "mock_api_other"})
    client = MockApiClient.with_record_count(20, page_size=10, delay=0.01)

    first, second = await asyncio.gather(
        collect(params, connector, client, checkpoints, raw_records, locks),
        collect(other, connector, client, checkpoints, raw_records, locks),
    )

    assert first.records_written == second.records_written == 20


# ============================================================================
# Cancellation
# ============================================================================


@pytest.mark.asyncio
async def test_cancellation_aborts_in_flight_fetch(params, checkpoints, raw_records, locks, connector):
    client = MockApiClient.with_record_count(50, page_size=10, block_on_page=2)
    cancel_event = asyncio.Event()

    task = asyncio.create_task(
        collect(params, connector, client, checkpoints, raw_records, locks, cancel_event=cancel_event)
    )
    while client.fetch_count < 2:
        await asyncio.sleep(0)
    cancel_event.set()

    with pytest.raises(CollectError) as exc_info:
        await asyncio.wait_for(task, timeout=1)

    assert exc_info.value.kind == CollectErrorKind.CANCELLED
    assert client.cancelled_requests == 1
    assert await checkpoints.load(params.key) is None
    assert not locks.is_running(params.key)


@pytest.mark.asyncio
async def test_cancelled_before_start_fetches_nothing(params, checkpoints, raw_records, locks, connector):
    client = MockApiClient.with_record_count(10, page_size=10)
    cancel_event = asyncio.Event()
    cancel_event.set()

    with pytest.raises(CollectError) as exc_info:
        await collect(params, connector, client, checkpoints, raw_records, locks, cancel_event=cancel_event)

    assert exc_info.value.kind == CollectErrorKind.CANCELLED
    assert client.fetch_count == 0


@pytest.mark.asyncio
async def test_cancellation_while_answering_last_page_skips_commit(
    params, checkpoints, raw_records, locks, connector
):
    cancel_event = asyncio.Event()

    def cancel_on_empty_page(page):
        if page == 2:
            cancel_event.set()

    client = MockApiClient.with_record_count(10, page_size=10, on_page=cancel_on_empty_page)

    with pytest.raises(CollectError) as exc_info:
        await collect(params, connector, client, checkpoints, raw_records, locks, cancel_event=cancel_event)

    assert exc_info.value.kind == CollectErrorKind.CANCELLED
    assert client.fetch_count == 2
    assert await checkpoints.load(params.key) is None
    assert not locks.is_running(params.key)


@pytest.mark.asyncio
async def test_collector_executes_once(params, checkpoints, raw_records, locks, connector):
    client = MockApiClient.with_record_count(5, page_size=10)

    async with StatefulApiCollector(params, checkpoints, raw_records, locks) as collector:
        await collector.execute(connector, client)
        with pytest.raises(RuntimeError):
            await collector.execute(connector, client)
