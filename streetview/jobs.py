"""Job orchestration for street view capture requests."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Sequence, Set

from streetview import metrics
from streetview.address import normalize_address
from streetview.browser import BrowserManager, get_browser_manager
from streetview.cache import ContentStore, cache_key
from streetview.capture import CaptureStrategy, StrategyResult, default_strategies, run_capture_chain
from streetview.errors import CaptureError, CaptureFailure, InputError, JobInProgress
from streetview.schemas import (
    CachedImageMetadata,
    CaptureRequest,
    CaptureResponse,
    CaptureStatus,
    JobStatus,
    ProcessingJobView,
    RecentCapture,
    StatusKind,
)
from streetview.settings import Settings, get_settings
from streetview.store import Store, StorageConfig, build_store

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureJob:
    """In-memory view of a capture that is running (or just failed)."""

    target_id: str
    address: str
    original_address: str
    status: JobStatus
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None


def image_url(key: str, prefix: str) -> str:
    return f"{prefix}/streetview/{key}"


class JobRegistry:
    """Single-flight registry per target id.

    The in-memory map is the only thing consulted when deciding whether a
    capture may start. The SQLite mirror exists for status visibility and
    crash forensics; its failures are logged and otherwise ignored.
    """

    def __init__(
        self,
        *,
        content_store: ContentStore,
        store: Store | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.content = content_store
        self.store = store
        self._settings = settings or get_settings()
        self._jobs: Dict[str, CaptureJob] = {}

    def is_processing(self, target_id: str) -> bool:
        return target_id in self._jobs

    def get(self, target_id: str) -> CaptureJob | None:
        return self._jobs.get(target_id)

    def active_jobs(self) -> List[CaptureJob]:
        return list(self._jobs.values())

    async def register(self, target_id: str, address: str, original_address: str | None = None) -> bool:
        """Claim ``target_id``; returns False when a capture is already running."""

        if target_id in self._jobs:
            LOGGER.info("Capture job for %s already registered", target_id)
            return False
        job = CaptureJob(
            target_id=target_id,
            address=address,
            original_address=original_address or address,
            status=JobStatus.PROCESSING,
            started_at=datetime.now(timezone.utc),
        )
        # Claimed before the first await so concurrent callers see it.
        self._jobs[target_id] = job
        if self.store is not None:
            await self._mirror(
                "register",
                target_id,
                self.store.upsert_processing,
                target_id=target_id,
                address=job.address,
                original_address=job.original_address,
                started_at=job.started_at,
            )
        LOGGER.info("Registered capture job for %s", target_id)
        return True

    async def complete(
        self,
        target_id: str,
        success: bool,
        result_key: str | None = None,
        *,
        error: str | None = None,
    ) -> CaptureJob | None:
        """Finish the job: success clears every record, failure leaves a tombstone."""

        job = self._jobs.pop(target_id, None)
        now = datetime.now(timezone.utc)
        if job is not None:
            job = replace(
                job,
                status=JobStatus.COMPLETE if success else JobStatus.FAILED,
                completed_at=now,
                error=None if success else (error or "Failed to capture street view image"),
            )
        if self.store is not None:
            if success:
                await self._mirror("delete", target_id, self.store.delete_processing, target_id)
                if result_key:
                    await self.propagate_result(target_id, result_key)
            else:
                await self._mirror(
                    "fail",
                    target_id,
                    self.store.mark_failed,
                    target_id=target_id,
                    error=error or "Failed to capture street view image",
                    completed_at=now,
                )
        LOGGER.info("%s capture job for %s", "Completed" if success else "Failed", target_id)
        return job

    async def propagate_result(self, target_id: str, result_key: str) -> int:
        """Point denormalized search records at ``result_key``; best effort."""

        if self.store is None:
            return 0
        updated = await self._mirror(
            "propagate", target_id, self.store.propagate_result, target_id=target_id, result_key=result_key
        )
        return int(updated or 0)

    async def status(self, target_id: str) -> CaptureStatus:
        """Report cache presence, then running state, then denormalized records."""

        key = cache_key(target_id)
        if await asyncio.to_thread(self.content.exists, key):
            return self._complete_status(key)

        job = self._jobs.get(target_id)
        if job is not None:
            return self._processing_status(job.started_at)

        if self.store is not None:
            record = await self._mirror("lookup", target_id, self.store.fetch_processing, target_id)
            if record is not None and record.status == JobStatus.PROCESSING.value:
                return self._processing_status(record.started_at)
            denormalized = await self._mirror("lookup", target_id, self.store.find_result_key, target_id)
            if denormalized:
                return self._complete_status(denormalized)

        return CaptureStatus(status=StatusKind.NOT_FOUND)

    async def processing_records(self) -> List[ProcessingJobView]:
        """Durable processing rows, or the in-memory jobs when the mirror is unavailable."""

        records = None
        if self.store is not None:
            records = await self._mirror("list", "*", self.store.list_processing)
        if records is None:
            return [
                ProcessingJobView(
                    target_id=job.target_id,
                    address=job.address,
                    original_address=job.original_address,
                    started_at=job.started_at,
                    status=job.status,
                )
                for job in self._jobs.values()
            ]
        return [
            ProcessingJobView(
                target_id=record.target_id,
                address=record.address,
                original_address=record.original_address,
                started_at=_as_utc(record.started_at),
                status=JobStatus(record.status),
                completed_at=_as_utc(record.completed_at) if record.completed_at else None,
                error=record.error,
            )
            for record in records
        ]

    def _complete_status(self, key: str) -> CaptureStatus:
        return CaptureStatus(
            status=StatusKind.COMPLETE,
            result_key=key,
            url=image_url(key, self._settings.storage.public_prefix),
        )

    def _processing_status(self, started_at: datetime) -> CaptureStatus:
        started = _as_utc(started_at)
        elapsed = max(0, int((datetime.now(timezone.utc) - started).total_seconds()))
        expected = self._settings.capture.expected_duration_seconds
        return CaptureStatus(
            status=StatusKind.PROCESSING,
            started_at=started,
            elapsed_seconds=elapsed,
            estimated_remaining_seconds=max(0, expected - elapsed),
        )

    async def _mirror(
        self, action: str, label: str, func: Callable[..., Any], /, *args: Any, **kwargs: Any
    ) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except Exception as exc:
            LOGGER.warning("Durable %s failed for %s: %s", action, label, exc)
            return None


class CaptureService:
    """Capture-and-cache pipeline: cache check, dedup, browser session, strategy chain."""

    def __init__(
        self,
        *,
        content_store: ContentStore | None = None,
        store: Store | None = None,
        browser: BrowserManager | None = None,
        strategies: Sequence[CaptureStrategy] | None = None,
        settings: Settings | None = None,
        registry: JobRegistry | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.content = content_store or ContentStore(self.settings.storage.cache_root)
        self.store = store
        self.registry = registry or JobRegistry(
            content_store=self.content, store=store, settings=self.settings
        )
        self._browser = browser
        self.strategies: List[CaptureStrategy] = list(
            strategies
            if strategies is not None
            else default_strategies(self.settings.capture.strategy_timeout_seconds)
        )
        self._background: Set[asyncio.Task[Any]] = set()

    @property
    def browser(self) -> BrowserManager:
        if self._browser is None:
            self._browser = get_browser_manager()
        return self._browser

    async def trigger(self, address: str | None, target_id: str | None) -> CaptureResponse:
        """Capture ``address`` for ``target_id`` end-to-end and return the cache reference.

        Raises:
            InputError: address or target id missing/unusable.
            JobInProgress: the same target is already being captured here.
            CaptureFailure: every strategy failed.
            ResourceAcquisitionFailure: the shared browser could not start.
        """

        request = self.build_request(address, target_id)
        original, target = request.address, request.target_id
        key = self._key_for(target)
        cached = await self._cached_response(target, key)
        if cached is not None:
            return cached

        normalized = self._normalize(original)
        if not await self.registry.register(target, normalized, original):
            metrics.record_dedup_rejection()
            raise JobInProgress(target)
        cached = await self._cached_after_register(target, key)
        if cached is not None:
            return cached
        return await self._execute(target, key, normalized, original)

    async def schedule(self, address: str | None, target_id: str | None) -> CaptureStatus:
        """Start a capture in the background and return the status callers should poll."""

        request = self.build_request(address, target_id)
        original, target = request.address, request.target_id
        key = self._key_for(target)
        if await self._cached_response(target, key) is not None:
            return await self.registry.status(target)

        normalized = self._normalize(original)
        if not await self.registry.register(target, normalized, original):
            metrics.record_dedup_rejection()
            return await self.registry.status(target)
        if await self._cached_after_register(target, key) is not None:
            return await self.registry.status(target)

        task = asyncio.create_task(self._execute_in_background(target, key, normalized, original))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return await self.registry.status(target)

    async def status(self, target_id: str) -> CaptureStatus:
        target, _ = self._target_and_key(target_id)
        return await self.registry.status(target)

    async def processing(self) -> List[ProcessingJobView]:
        return await self.registry.processing_records()

    async def recent_captures(self, limit: int = 10) -> List[RecentCapture]:
        if self.store is None:
            return []
        records = await asyncio.to_thread(self.store.recent_with_images, limit)
        prefix = self.settings.storage.public_prefix
        return [
            RecentCapture(
                target_id=record.target_id,
                address=record.query.replace("Property at ", ""),
                captured_at=_as_utc(record.created_at),
                image_url=image_url(record.street_view_image or "", prefix),
            )
            for record in records
        ]

    async def record_search(self, target_id: str, query: str) -> None:
        if self.store is None:
            return
        await asyncio.to_thread(self.store.add_search, target_id=target_id, query=query)

    async def evict(self, target_id: str) -> bool:
        _, key = self._target_and_key(target_id)
        removed = await asyncio.to_thread(self.content.delete, key)
        if removed:
            LOGGER.info("Evicted cached image %s", key)
        return removed

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_for_background()
        if self._browser is not None:
            await self._browser.shutdown()

    async def _execute(self, target_id: str, key: str, normalized: str, original: str) -> CaptureResponse:
        started = time.perf_counter()
        success = False
        error: str | None = None
        result: StrategyResult | None = None
        try:
            LOGGER.info("Capturing street view for %s (%r from %r)", target_id, normalized, original)
            async with self.browser.session(label=target_id) as session:
                result = await run_capture_chain(session, normalized, original, self.strategies)
            if result is None:
                raise CaptureFailure(target_id)
            metadata = CachedImageMetadata(
                target_id=target_id,
                address=result.address,
                original_address=original,
                captured_at=datetime.now(timezone.utc),
                source=result.source,
                is_street_view=result.is_street_view,
                method=result.method,
            )
            await asyncio.to_thread(self.content.write, key, result.data, metadata)
            success = True
        except CaptureError as exc:
            error = str(exc)
            raise
        except Exception as exc:
            LOGGER.exception("Unexpected error capturing %s", target_id)
            error = str(exc) or type(exc).__name__
            raise
        finally:
            elapsed = time.perf_counter() - started
            if success and result is not None:
                await self.registry.complete(target_id, True, key)
                metrics.record_capture("street_view" if result.is_street_view else "map_view", elapsed)
            else:
                await self.registry.complete(target_id, False, error=error or "Capture cancelled")
                metrics.record_capture("failed", elapsed)

        LOGGER.info("Saved %s for %s via %s", key, target_id, result.method)
        return CaptureResponse(
            target_id=target_id,
            result_key=key,
            url=image_url(key, self.settings.storage.public_prefix),
            cache_hit=False,
            method=result.method,
            is_street_view=result.is_street_view,
        )

    async def _execute_in_background(self, target_id: str, key: str, normalized: str, original: str) -> None:
        try:
            await self._execute(target_id, key, normalized, original)
        except CaptureError as exc:
            LOGGER.warning("Background capture for %s failed: %s", target_id, exc)
        except Exception:
            LOGGER.exception("Background capture for %s crashed", target_id)

    async def _cached_response(self, target_id: str, key: str) -> CaptureResponse | None:
        if not await asyncio.to_thread(self.content.exists, key):
            return None
        LOGGER.info("Street view image already cached for %s", target_id)
        metrics.record_capture("cache_hit")
        await self.registry.propagate_result(target_id, key)
        metadata = await asyncio.to_thread(self.content.read_metadata, key)
        return CaptureResponse(
            target_id=target_id,
            result_key=key,
            url=image_url(key, self.settings.storage.public_prefix),
            cache_hit=True,
            method=metadata.method if metadata else None,
            is_street_view=metadata.is_street_view if metadata else None,
        )

    async def _cached_after_register(self, target_id: str, key: str) -> CaptureResponse | None:
        # A job that finished between the first cache check and register leaves
        # its image behind; reuse it instead of running the chain again.
        cached = await self._cached_response(target_id, key)
        if cached is not None:
            await self.registry.complete(target_id, True, key)
        return cached

    def build_request(self, address: str | None, target_id: str | None) -> CaptureRequest:
        """Trim and validate caller input into a :class:`CaptureRequest`.

        Raises:
            InputError: address or target id is blank, or the target id is not
                usable as a cache key.
        """

        original = address.strip() if isinstance(address, str) else ""
        target = str(target_id).strip() if target_id is not None else ""
        if not original or not target:
            raise InputError("Address and target_id are required")
        self._key_for(target)
        return CaptureRequest(address=original, target_id=target)

    def _target_and_key(self, target_id: str | None) -> tuple[str, str]:
        target = str(target_id).strip() if target_id is not None else ""
        if not target:
            raise InputError("target_id is required")
        return target, self._key_for(target)

    def _key_for(self, target_id: str) -> str:
        try:
            return cache_key(target_id)
        except ValueError as exc:
            raise InputError(str(exc)) from exc

    def _normalize(self, address: str) -> str:
        normalized = normalize_address(
            address, long_threshold=self.settings.capture.long_address_threshold
        )
        return normalized or address


def build_capture_service(settings: Settings | None = None) -> CaptureService:
    """Wire the default filesystem cache, SQLite mirror and shared browser."""

    active = settings or get_settings()
    return CaptureService(
        content_store=ContentStore(active.storage.cache_root),
        store=build_store(StorageConfig(db_path=active.storage.db_path)),
        settings=active,
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo; stored values are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = [
    "CaptureJob",
    "CaptureService",
    "JobRegistry",
    "build_capture_service",
    "image_url",
]
