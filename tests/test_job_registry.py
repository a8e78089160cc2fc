from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from streetview.cache import ContentStore, cache_key
from streetview.jobs import JobRegistry
from streetview.schemas import JobStatus, StatusKind
from streetview.store import StorageConfig, Store
from tests.browser_fakes import make_settings


class BrokenStore:
    """Durable mirror whose every call fails, as if the database were locked."""

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise RuntimeError(f"database is locked ({name})")

        return _fail


def _registry(tmp_path: Path, store=None) -> JobRegistry:
    settings = make_settings(tmp_path)
    return JobRegistry(
        content_store=ContentStore(settings.storage.cache_root),
        store=store,
        settings=settings,
    )


def _sqlite(tmp_path: Path) -> Store:
    return Store(StorageConfig(db_path=tmp_path / "registry.db"))


@pytest.mark.asyncio
async def test_register_is_single_flight(tmp_path: Path):
    registry = _registry(tmp_path, _sqlite(tmp_path))

    assert await registry.register("BBL-1", "84 White St", "84 White St, Manhattan") is True
    assert await registry.register("BBL-1", "84 White St", "84 White St, Manhattan") is False
    assert await registry.register("BBL-2", "1 Centre St") is True
    assert {job.target_id for job in registry.active_jobs()} == {"BBL-1", "BBL-2"}


@pytest.mark.asyncio
async def test_status_reports_processing_with_estimate(tmp_path: Path):
    registry = _registry(tmp_path, _sqlite(tmp_path))
    await registry.register("BBL-1", "84 White St")

    status = await registry.status("BBL-1")

    assert status.status is StatusKind.PROCESSING
    assert status.elapsed_seconds is not None and status.elapsed_seconds >= 0
    assert status.estimated_remaining_seconds == max(0, 30 - status.elapsed_seconds)
    assert status.started_at is not None and status.started_at.tzinfo is not None


@pytest.mark.asyncio
async def test_status_reads_durable_row_after_restart(tmp_path: Path):
    store = _sqlite(tmp_path)
    store.upsert_processing(
        target_id="BBL-9",
        address="9 Main St",
        original_address=None,
        started_at=datetime.now(timezone.utc) - timedelta(seconds=100),
    )
    registry = _registry(tmp_path, store)

    status = await registry.status("BBL-9")

    assert status.status is StatusKind.PROCESSING
    assert status.elapsed_seconds is not None and status.elapsed_seconds >= 100
    assert status.estimated_remaining_seconds == 0


@pytest.mark.asyncio
async def test_successful_completion_clears_records_and_propagates(tmp_path: Path):
    store = _sqlite(tmp_path)
    store.add_search(target_id="BBL-1", query="Property at 84 White St")
    registry = _registry(tmp_path, store)
    await registry.register("BBL-1", "84 White St")

    job = await registry.complete("BBL-1", True, cache_key("BBL-1"))

    assert job is not None and job.status is JobStatus.COMPLETE
    assert registry.is_processing("BBL-1") is False
    assert store.fetch_processing("BBL-1") is None
    status = await registry.status("BBL-1")
    assert status.status is StatusKind.COMPLETE
    assert status.result_key == "streetview_BBL-1.png"
    assert status.url == "/api/images/streetview/streetview_BBL-1.png"


@pytest.mark.asyncio
async def test_failed_completion_leaves_failed_row(tmp_path: Path):
    store = _sqlite(tmp_path)
    registry = _registry(tmp_path, store)
    await registry.register("BBL-1", "84 White St")

    job = await registry.complete("BBL-1", False)

    assert job is not None and job.status is JobStatus.FAILED
    assert registry.is_processing("BBL-1") is False
    record = store.fetch_processing("BBL-1")
    assert record is not None
    assert record.status == JobStatus.FAILED.value
    assert record.error == "Failed to capture street view image"
    assert (await registry.status("BBL-1")).status is StatusKind.NOT_FOUND
    assert await registry.register("BBL-1", "84 White St") is True


@pytest.mark.asyncio
async def test_cache_presence_wins(tmp_path: Path):
    registry = _registry(tmp_path, _sqlite(tmp_path))
    key = cache_key("BBL-1")
    (registry.content.root / key).write_bytes(b"png")
    await registry.register("BBL-1", "84 White St")

    status = await registry.status("BBL-1")

    assert status.status is StatusKind.COMPLETE
    assert status.result_key == key


@pytest.mark.asyncio
async def test_durable_failures_do_not_break_the_registry(tmp_path: Path):
    registry = _registry(tmp_path, BrokenStore())

    assert await registry.register("BBL-1", "84 White St") is True
    assert await registry.register("BBL-1", "84 White St") is False
    assert (await registry.status("BBL-1")).status is StatusKind.PROCESSING

    views = await registry.processing_records()
    assert [view.target_id for view in views] == ["BBL-1"]

    await registry.complete("BBL-1", True, cache_key("BBL-1"))
    assert registry.is_processing("BBL-1") is False
    assert (await registry.status("BBL-1")).status is StatusKind.NOT_FOUND


@pytest.mark.asyncio
async def test_registry_without_durable_store(tmp_path: Path):
    registry = _registry(tmp_path, None)

    assert await registry.register("BBL-1", "84 White St") is True
    await registry.complete("BBL-1", False, error="map never rendered")

    assert (await registry.status("BBL-1")).status is StatusKind.NOT_FOUND
    assert await registry.processing_records() == []


@pytest.mark.asyncio
async def test_register_and_complete_write_through_to_sqlite(tmp_path: Path):
    store = _sqlite(tmp_path)
    store.add_search(target_id="BBL-1", query="Property at 84 White St")
    registry = _registry(tmp_path, store)

    assert await registry.register("BBL-1", "84 White St", "84 White St, Manhattan") is True
    record = store.fetch_processing("BBL-1")
    assert record is not None
    assert record.status == JobStatus.PROCESSING.value
    assert record.original_address == "84 White St, Manhattan"
    assert [view.target_id for view in await registry.processing_records()] == ["BBL-1"]

    assert await registry.propagate_result("BBL-1", cache_key("BBL-1")) == 1
    assert store.find_result_key("BBL-1") == "streetview_BBL-1.png"

    await registry.complete("BBL-1", False, error="map never rendered")
    failed = store.fetch_processing("BBL-1")
    assert failed is not None and failed.error == "map never rendered"
    assert registry.is_processing("BBL-1") is False
