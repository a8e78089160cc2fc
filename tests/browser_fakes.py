"""In-memory stand-ins for the Playwright objects the capture pipeline touches."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

from playwright.async_api import Error as PlaywrightError

from streetview import browser as browser_module
from streetview.settings import Settings, get_settings

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-street-view"


def make_settings(tmp_path: Path, **capture_overrides: Any) -> Settings:
    """Default settings with zero settle delays and storage under ``tmp_path``."""

    base = get_settings()
    capture_values = {
        "panorama_wait_ms": 0,
        "render_wait_ms": 0,
        "strategy_timeout_seconds": 5.0,
        "scratch_dir": tmp_path / "scratch",
        "debug_screenshots": False,
    }
    capture_values.update(capture_overrides)
    return replace(
        base,
        capture=replace(base.capture, **capture_values),
        storage=replace(base.storage, cache_root=tmp_path / "cache", db_path=tmp_path / "streetview.db"),
    )


class FakePage:
    """Scriptable page: map readiness, every clickable affordance and the panorama are toggles."""

    def __init__(
        self,
        *,
        map_ready: bool = True,
        panorama: bool = False,
        street_view_control: str | None = None,
        fail_navigation: bool = False,
        screenshot_bytes: bytes = PNG_BYTES,
        locator_icon: bool = False,
        street_view_text: bool = False,
        marker: bool = False,
        popup_link: bool = False,
    ) -> None:
        self.map_ready = map_ready
        self.panorama = panorama
        self.street_view_control = street_view_control
        self.fail_navigation = fail_navigation
        self.screenshot_bytes = screenshot_bytes
        self.locator_icon = locator_icon
        self.street_view_text = street_view_text
        self.marker = marker
        self.popup_link = popup_link
        self.clicked: list[str] = []
        self.evaluated: list[tuple[str, Any]] = []
        self.visited: list[str] = []
        self.init_scripts: list[str] = []
        self.watermarked = False
        self.screenshots = 0
        self.navigation_timeout: int | None = None
        self.action_timeout: int | None = None

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    def set_default_navigation_timeout(self, timeout: int) -> None:
        self.navigation_timeout = timeout

    def set_default_timeout(self, timeout: int) -> None:
        self.action_timeout = timeout

    async def goto(self, url: str, **_: Any) -> None:
        self.visited.append(url)
        if self.fail_navigation:
            raise PlaywrightError("net::ERR_NAME_NOT_RESOLVED")

    async def wait_for_selector(self, selector: str, **_: Any) -> None:
        if not self.map_ready:
            raise PlaywrightError(f"Timeout waiting for {selector}")

    async def query_selector(self, selector: str) -> None:
        return None

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.evaluated.append((script, arg))
        if script == browser_module._HAS_CANVAS_JS:
            return self.panorama
        if script == browser_module._CLICK_FIRST_VISIBLE_JS:
            return self.street_view_control
        if script == browser_module._WATERMARK_JS:
            self.watermarked = True
            return True
        if script == browser_module._CLICK_IMAGE_BY_SRC_JS:
            return self.locator_icon
        if script == browser_module._CLICK_MARKER_JS:
            return self.marker
        if script == browser_module._CLICK_BY_TEXT_JS:
            _, include_tooltip = arg
            return self.street_view_text if include_tooltip else self.popup_link
        return False

    async def click(self, selector: str, **_: Any) -> None:
        self.clicked.append(selector)

    async def wait_for_timeout(self, timeout: int) -> None:
        await asyncio.sleep(0)

    async def screenshot(self, **_: Any) -> bytes:
        self.screenshots += 1
        return self.screenshot_bytes


class FakeContext:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.close_calls = 0

    async def new_page(self) -> FakePage:
        return self.page

    async def close(self) -> None:
        self.close_calls += 1


class FakeBrowser:
    def __init__(self, page_factory: Callable[[], FakePage]) -> None:
        self.page_factory = page_factory
        self.contexts: list[FakeContext] = []
        self.context_options: list[dict[str, Any]] = []
        self.connected = True
        self.fail_new_context = False

    async def new_context(self, **options: Any) -> FakeContext:
        if self.fail_new_context:
            raise PlaywrightError("Target closed")
        self.context_options.append(options)
        context = FakeContext(self.page_factory())
        self.contexts.append(context)
        return context

    def is_connected(self) -> bool:
        return self.connected

    async def close(self) -> None:
        self.connected = False


class FakePlaywright:
    def __init__(self) -> None:
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class FakeLauncher:
    """Async launcher that counts launches and hands back a :class:`FakeBrowser`."""

    def __init__(self, page_factory: Callable[[], FakePage] | None = None, *, fail: bool = False) -> None:
        self.page_factory = page_factory or FakePage
        self.fail = fail
        self.calls = 0
        self.browsers: list[FakeBrowser] = []

    async def __call__(self, settings: Any) -> tuple[FakePlaywright, FakeBrowser]:
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise PlaywrightError("Executable doesn't exist")
        browser = FakeBrowser(self.page_factory)
        self.browsers.append(browser)
        return FakePlaywright(), browser

    @property
    def contexts(self) -> list[FakeContext]:
        return [context for browser in self.browsers for context in browser.contexts]
