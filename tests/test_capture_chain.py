from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from streetview.browser import MAP_SURFACE_SELECTOR, CaptureSession
from streetview.capture import (
    MAP_FALLBACK_SOURCE,
    WATERMARK_TEXT,
    CaptureStrategy,
    DirectSearchStrategy,
    FocusedStreetStrategy,
    LocatorIconStrategy,
    MapScreenshotStrategy,
    PanoramaUrlStrategy,
    StrategyResult,
    StructuredAddressStrategy,
    default_strategies,
    run_capture_chain,
)
from streetview.errors import NavigationFailure
from tests.browser_fakes import PNG_BYTES, FakePage, make_settings

ORIGINAL = "84 White St, Civic Center, Manhattan, NY 10013"
NORMALIZED = "84 White St"


def _session(tmp_path: Path, page: FakePage) -> CaptureSession:
    settings = make_settings(tmp_path)
    return CaptureSession(
        page,
        browser_settings=settings.browser,
        capture_settings=settings.capture,
        label="BBL-1",
    )


class RecordingStrategy(CaptureStrategy):
    def __init__(self, name: str, outcome, calls: list[str], timeout_seconds: float | None = None) -> None:
        super().__init__(timeout_seconds)
        self.name = name
        self.method = name
        self.outcome = outcome
        self.calls = calls

    async def attempt(self, session, address, original_address):
        self.calls.append(self.name)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        if self.outcome == "hang":
            await asyncio.sleep(10)
        if isinstance(self.outcome, bytes):
            return self._result(self.outcome, address)
        return None


@pytest.mark.asyncio
async def test_chain_stops_at_first_success(tmp_path: Path):
    calls: list[str] = []
    strategies = [
        RecordingStrategy("first", None, calls),
        RecordingStrategy("second", b"pixels", calls),
        RecordingStrategy("third", b"never", calls),
    ]

    result = await run_capture_chain(_session(tmp_path, FakePage()), NORMALIZED, ORIGINAL, strategies)

    assert calls == ["first", "second"]
    assert result is not None
    assert result.data == b"pixels"
    assert result.strategy == "second"


@pytest.mark.asyncio
async def test_chain_continues_past_errors_and_timeouts(tmp_path: Path):
    calls: list[str] = []
    strategies = [
        RecordingStrategy("navigation", NavigationFailure("dns"), calls),
        RecordingStrategy("crash", RuntimeError("unexpected"), calls),
        RecordingStrategy("hang", "hang", calls, timeout_seconds=0.05),
        RecordingStrategy("empty", b"", calls),
        RecordingStrategy("winner", b"ok", calls),
    ]

    result = await run_capture_chain(_session(tmp_path, FakePage()), NORMALIZED, ORIGINAL, strategies)

    assert calls == ["navigation", "crash", "hang", "empty", "winner"]
    assert result is not None and result.method == "winner"


@pytest.mark.asyncio
async def test_chain_returns_none_when_everything_fails(tmp_path: Path):
    calls: list[str] = []
    strategies = [RecordingStrategy(name, None, calls) for name in ("a", "b", "c")]

    assert await run_capture_chain(_session(tmp_path, FakePage()), NORMALIZED, ORIGINAL, strategies) is None
    assert calls == ["a", "b", "c"]


def test_default_strategy_order_ends_with_map_fallback():
    strategies = default_strategies(12.5)
    assert [strategy.name for strategy in strategies] == [
        "direct_search",
        "locator_icon",
        "panorama_url",
        "structured_address",
        "focused_street",
        "map_screenshot",
    ]
    assert all(strategy.timeout_seconds == 12.5 for strategy in strategies)
    assert [strategy.is_street_view for strategy in strategies].count(False) == 1


@pytest.mark.asyncio
async def test_direct_search_captures_panorama(tmp_path: Path):
    page = FakePage(street_view_control='button[data-value="streetview"]', panorama=True)

    result = await DirectSearchStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL)

    assert isinstance(result, StrategyResult)
    assert result.data == PNG_BYTES
    assert result.method == "direct_button"
    assert result.is_street_view is True
    assert page.visited == ["https://www.google.com/maps/search/84%20White%20St/"]


@pytest.mark.asyncio
async def test_direct_search_misses_without_control(tmp_path: Path):
    page = FakePage(street_view_control=None, panorama=True)
    assert await DirectSearchStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL) is None
    assert page.screenshots == 0


@pytest.mark.asyncio
async def test_panorama_url_requires_canvas(tmp_path: Path):
    page = FakePage(panorama=False)
    assert await PanoramaUrlStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL) is None
    assert "map_action=pano" in page.visited[0]


@pytest.mark.asyncio
async def test_focused_street_skips_when_query_would_repeat(tmp_path: Path):
    page = FakePage(panorama=True)
    assert await FocusedStreetStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL) is None
    assert page.visited == []


@pytest.mark.asyncio
async def test_map_fallback_is_watermarked_and_flagged(tmp_path: Path):
    page = FakePage()

    result = await MapScreenshotStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL)

    assert result is not None
    assert result.is_street_view is False
    assert result.source == MAP_FALLBACK_SOURCE
    assert result.method == "focused_map_view"
    assert page.watermarked is True
    assert WATERMARK_TEXT == "MAP VIEW"


@pytest.mark.asyncio
async def test_map_fallback_gives_up_when_map_never_renders(tmp_path: Path):
    page = FakePage(map_ready=False)

    result = await MapScreenshotStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL)

    assert result is None
    assert len(page.visited) == 2
    assert page.screenshots == 0


@pytest.mark.asyncio
async def test_full_chain_falls_back_to_map(tmp_path: Path):
    page = FakePage(panorama=False)

    result = await run_capture_chain(_session(tmp_path, page), NORMALIZED, ORIGINAL, default_strategies(5))

    assert result is not None
    assert result.strategy == "map_screenshot"
    assert result.is_street_view is False


@pytest.mark.asyncio
async def test_locator_icon_captures_without_navigating(tmp_path: Path):
    page = FakePage(locator_icon=True, panorama=True)

    result = await LocatorIconStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL)

    assert result is not None
    assert result.method == "person_icon"
    assert result.address == NORMALIZED
    assert page.visited == []


@pytest.mark.asyncio
async def test_locator_icon_misses_when_icon_is_absent(tmp_path: Path):
    page = FakePage(locator_icon=False, panorama=True)

    assert await LocatorIconStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL) is None
    assert page.screenshots == 0


@pytest.mark.asyncio
async def test_structured_address_clicks_street_view_link(tmp_path: Path):
    page = FakePage(street_view_text=True, panorama=True)

    result = await StructuredAddressStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL)

    assert result is not None
    assert result.method == "structured_url"
    assert result.address == "84 White St, Manhattan 10013"
    assert page.visited == ["https://www.google.com/maps/place/84%20White%20St%2C%20Manhattan%2010013/@?hl=en"]


@pytest.mark.asyncio
async def test_structured_address_falls_back_to_marker_popup(tmp_path: Path):
    page = FakePage(marker=True, popup_link=True, panorama=True)

    result = await StructuredAddressStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL)

    assert result is not None
    assert result.method == "popup_link"
    assert result.address == "84 White St, Manhattan 10013"
    text_clicks = [arg for script, arg in page.evaluated if isinstance(arg, list) and arg[:1] == ["Street View"]]
    assert text_clicks == [["Street View", True], ["Street View", False]]


@pytest.mark.asyncio
async def test_structured_address_misses_without_marker(tmp_path: Path):
    page = FakePage(marker=False, popup_link=True, panorama=True)

    assert await StructuredAddressStrategy().attempt(_session(tmp_path, page), NORMALIZED, ORIGINAL) is None
    assert page.screenshots == 0


@pytest.mark.asyncio
async def test_focused_street_clicks_control_then_map(tmp_path: Path):
    page = FakePage(street_view_control="button.gm-svpc", panorama=True)

    result = await FocusedStreetStrategy().attempt(
        _session(tmp_path, page), NORMALIZED, "84 White St Apt 2, Manhattan"
    )

    assert result is not None
    assert result.method == "focused_street_view"
    assert result.address == "84 White St Apt 2"
    assert page.visited == ["https://www.google.com/maps/search/84%20White%20St%20Apt%202"]
    assert page.clicked == [MAP_SURFACE_SELECTOR]
