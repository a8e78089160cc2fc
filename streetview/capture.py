"""Ordered fallback strategies that turn an address into a screenshot.

Each strategy drives a :class:`~streetview.browser.CaptureSession` and either
returns pixels or ``None``. :func:`run_capture_chain` tries them in order, bounds
each one with its own timeout, and swallows strategy-level errors so only the
aggregate outcome escapes. Persisting the winning image is the caller's job.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import ClassVar, Sequence
from urllib.parse import quote

from playwright.async_api import Error as PlaywrightError

from streetview import metrics
from streetview.address import focused_address, street_only_address, structured_address
from streetview.browser import CaptureSession
from streetview.errors import CaptureError

LOGGER = logging.getLogger(__name__)

STREET_VIEW_SOURCE = "Google Street View"
MAP_FALLBACK_SOURCE = "Google Maps Fallback"
WATERMARK_TEXT = "MAP VIEW"

STREET_VIEW_SELECTORS: tuple[str, ...] = (
    'button[data-value="streetview"]',
    'button[aria-label*="Street View"]',
    'button[jsaction*="streetview"]',
    'div[aria-label*="Street View"]',
    'button[data-tooltip="Street View"]',
    'a[href*="streetview"]',
    'img[alt="Street View"]',
)

FOCUSED_STREET_VIEW_SELECTORS: tuple[str, ...] = (
    'a[aria-label*="Street View"]',
    'button[aria-label*="Street View"]',
    'div[aria-label*="Street View"]',
    'a[href*="streetview"]',
    'img[alt*="Street View"]',
    "button.gm-svpc",
    "div.gm-svpc",
    'div[jsaction*="streetview"]',
    'button[jsaction*="streetview"]',
)

LOCATOR_ICON_FRAGMENTS: tuple[str, ...] = ("person", "pegman", "street")


@dataclass(frozen=True, slots=True)
class StrategyResult:
    """Pixels produced by a strategy plus the metadata recorded in the cache."""

    data: bytes
    method: str
    address: str
    is_street_view: bool
    source: str
    strategy: str


def search_url(base_url: str, query: str, *, trailing_slash: bool = False) -> str:
    url = f"{base_url}/search/{quote(query, safe='')}"
    return url + "/" if trailing_slash else url


def place_url(base_url: str, query: str, *, suffix: str = "") -> str:
    return f"{base_url}/place/{quote(query, safe='')}{suffix}"


def panorama_url(base_url: str, query: str) -> str:
    return f"{base_url}/@?api=1&map_action=pano&viewpoint={quote(query, safe='')}"


class CaptureStrategy:
    """One scripted attempt at reaching a panorama (or map) and capturing it."""

    name: ClassVar[str] = "strategy"
    method: ClassVar[str] = "unknown"
    is_street_view: ClassVar[bool] = True
    source: ClassVar[str] = STREET_VIEW_SOURCE

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = timeout_seconds

    async def attempt(
        self,
        session: CaptureSession,
        address: str,
        original_address: str,
    ) -> StrategyResult | None:
        raise NotImplementedError

    def _result(self, data: bytes, address: str, *, method: str | None = None) -> StrategyResult:
        return StrategyResult(
            data=data,
            method=method or self.method,
            address=address,
            is_street_view=self.is_street_view,
            source=self.source,
            strategy=self.name,
        )

    async def _capture_if_panorama(
        self, session: CaptureSession, address: str, *, method: str | None = None
    ) -> StrategyResult | None:
        if not await session.panorama_rendered():
            return None
        return self._result(await session.screenshot(), address, method=method)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(timeout_seconds={self.timeout_seconds!r})"


class DirectSearchStrategy(CaptureStrategy):
    """Search the address, then click the first visible Street View control."""

    name = "direct_search"
    method = "direct_button"

    async def attempt(self, session, address, original_address):
        await session.goto(search_url(session.maps_base_url, address, trailing_slash=True))
        await session.dismiss_consent()
        await session.require_map()
        await session.debug_screenshot(f"debug_map_{session.label}")
        selector = await session.click_first_visible(STREET_VIEW_SELECTORS)
        if selector is None:
            return None
        LOGGER.debug("Street View control %s clicked for %s", selector, session.label)
        return await self._capture_if_panorama(session, address)


class LocatorIconStrategy(CaptureStrategy):
    """Click the draggable person/pegman icon on the page left by the search."""

    name = "locator_icon"
    method = "person_icon"

    async def attempt(self, session, address, original_address):
        if not await session.click_image_by_src(LOCATOR_ICON_FRAGMENTS):
            return None
        return await self._capture_if_panorama(session, address)


class PanoramaUrlStrategy(CaptureStrategy):
    """Ask the maps site for panorama mode at the address directly."""

    name = "panorama_url"
    method = "direct_url"

    async def attempt(self, session, address, original_address):
        await session.goto(panorama_url(session.maps_base_url, address))
        return await self._capture_if_panorama(session, address)


class StructuredAddressStrategy(CaptureStrategy):
    """Open the place page for ``<street>, <area> <zip>`` and hunt for Street View."""

    name = "structured_address"
    method = "structured_url"
    popup_method: ClassVar[str] = "popup_link"

    async def attempt(self, session, address, original_address):
        structured = structured_address(original_address)
        if not structured:
            return None
        await session.goto(place_url(session.maps_base_url, structured, suffix="/@?hl=en"))
        await session.settle(session.capture_settings.panorama_wait_ms)

        if await session.click_by_text("Street View"):
            result = await self._capture_if_panorama(session, structured)
            if result is not None:
                return result

        if not await session.click_marker():
            return None
        await session.settle(2000)
        if not await session.click_by_text("Street View", include_tooltip=False):
            return None
        return await self._capture_if_panorama(session, structured, method=self.popup_method)


class FocusedStreetStrategy(CaptureStrategy):
    """Repeat the selector hunt with only ``<number> <street>`` as the query."""

    name = "focused_street"
    method = "focused_street_view"

    async def attempt(self, session, address, original_address):
        street_only = street_only_address(original_address)
        if not street_only or street_only == address:
            return None
        await session.goto(search_url(session.maps_base_url, street_only))
        await session.require_map()
        await session.debug_screenshot(f"debug_focused_{session.label}")
        if await session.click_first_visible(FOCUSED_STREET_VIEW_SELECTORS) is None:
            return None
        await session.settle(2000)
        await session.click_map_surface()
        return await self._capture_if_panorama(session, street_only)


class MapScreenshotStrategy(CaptureStrategy):
    """Terminal fallback: a watermarked screenshot of the plain map view."""

    name = "map_screenshot"
    method = "map_screenshot"
    focused_method: ClassVar[str] = "focused_map_view"
    is_street_view = False
    source = MAP_FALLBACK_SOURCE

    async def attempt(self, session, address, original_address):
        base = session.maps_base_url
        candidates: list[tuple[str, str, str]] = []
        focused = focused_address(original_address)
        if focused:
            candidates.append((place_url(base, focused), focused, self.focused_method))
        if address:
            candidates.append((search_url(base, address), address, self.method))

        for url, query, method in candidates:
            try:
                await session.goto(url)
                await session.require_map()
            except CaptureError as exc:
                LOGGER.info("Map view unavailable at %s for %s: %s", url, session.label, exc)
                continue
            await session.settle(session.capture_settings.render_wait_ms)
            if not await session.add_watermark(WATERMARK_TEXT):
                LOGGER.warning("Could not draw %s watermark for %s", WATERMARK_TEXT, session.label)
            return self._result(await session.screenshot(), query, method=method)
        return None


def default_strategies(timeout_seconds: float | None = None) -> list[CaptureStrategy]:
    """Return the standard fallback order, each bounded by ``timeout_seconds``."""

    return [
        DirectSearchStrategy(timeout_seconds),
        LocatorIconStrategy(timeout_seconds),
        PanoramaUrlStrategy(timeout_seconds),
        StructuredAddressStrategy(timeout_seconds),
        FocusedStreetStrategy(timeout_seconds),
        MapScreenshotStrategy(timeout_seconds),
    ]


async def run_capture_chain(
    session: CaptureSession,
    address: str,
    original_address: str,
    strategies: Sequence[CaptureStrategy],
) -> StrategyResult | None:
    """Try ``strategies`` in order and return the first non-empty result."""

    for strategy in strategies:
        started = time.perf_counter()
        try:
            if strategy.timeout_seconds:
                result = await asyncio.wait_for(
                    strategy.attempt(session, address, original_address),
                    timeout=strategy.timeout_seconds,
                )
            else:
                result = await strategy.attempt(session, address, original_address)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Strategy %s timed out after %.1fs for %s",
                strategy.name,
                strategy.timeout_seconds or 0,
                session.label,
            )
            metrics.record_strategy_attempt(strategy.name, "timeout")
            continue
        except (CaptureError, PlaywrightError) as exc:
            LOGGER.info("Strategy %s failed for %s: %s", strategy.name, session.label, exc)
            metrics.record_strategy_attempt(strategy.name, "error")
            continue
        except Exception:
            LOGGER.exception("Strategy %s crashed for %s", strategy.name, session.label)
            metrics.record_strategy_attempt(strategy.name, "error")
            continue

        elapsed = time.perf_counter() - started
        if result is None or not result.data:
            LOGGER.info("Strategy %s found nothing for %s (%.1fs)", strategy.name, session.label, elapsed)
            metrics.record_strategy_attempt(strategy.name, "miss")
            continue
        LOGGER.info(
            "Strategy %s captured %s for %s via %s (%.1fs)",
            strategy.name,
            "street view" if result.is_street_view else "map view",
            session.label,
            result.method,
            elapsed,
        )
        metrics.record_strategy_attempt(strategy.name, "success")
        return result
    return None


__all__ = [
    "CaptureStrategy",
    "DirectSearchStrategy",
    "FocusedStreetStrategy",
    "LocatorIconStrategy",
    "MapScreenshotStrategy",
    "PanoramaUrlStrategy",
    "StrategyResult",
    "StructuredAddressStrategy",
    "default_strategies",
    "run_capture_chain",
]
