"""Shared Chromium process plus per-job isolated browsing sessions."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from streetview import metrics
from streetview.errors import ElementNotFound, NavigationFailure, ResourceAcquisitionFailure
from streetview.settings import BrowserSettings, CaptureSettings, Settings, get_settings

LOGGER = logging.getLogger(__name__)

MAP_SURFACE_SELECTOR = 'div[role="application"]'
CONSENT_SELECTOR = (
    'button[aria-label="Accept all"], button:has-text("Accept all"), '
    'button.VfPpkd-LgbsSe:has-text("Accept all")'
)

Launcher = Callable[[BrowserSettings], Awaitable[tuple[Any, Browser]]]

_CLICK_FIRST_VISIBLE_JS = """
(selectors) => {
    for (const selector of selectors) {
        let elements = [];
        try {
            elements = document.querySelectorAll(selector);
        } catch (err) {
            continue;
        }
        for (const el of elements) {
            if (el && el.offsetWidth > 0 && el.offsetHeight > 0) {
                try {
                    el.click();
                    return selector;
                } catch (err) {
                    // try the next element
                }
            }
        }
    }
    return null;
}
"""

_CLICK_IMAGE_BY_SRC_JS = """
(fragments) => {
    const images = Array.from(document.querySelectorAll('img')).filter(
        (img) => img.src && fragments.some((fragment) => img.src.includes(fragment))
    );
    if (images.length > 0) {
        images[0].click();
        return true;
    }
    return false;
}
"""

_CLICK_BY_TEXT_JS = """
([text, includeTooltip]) => {
    const matches = Array.from(document.querySelectorAll('a, button, div')).filter((el) => {
        const content = el.textContent || '';
        const label = el.getAttribute('aria-label') || '';
        const tooltip = includeTooltip ? (el.getAttribute('data-tooltip') || '') : '';
        return content.includes(text) || label.includes(text) || tooltip.includes(text);
    });
    if (matches.length === 0) {
        return false;
    }
    // Prefer the innermost element so we click the control, not a container.
    matches.sort((a, b) => (a.textContent || '').length - (b.textContent || '').length);
    matches[0].click();
    return true;
}
"""

_CLICK_MARKER_JS = """
() => {
    const markers = Array.from(document.querySelectorAll('img, div')).filter((el) => {
        if (el.src && el.src.includes('marker')) return true;
        const cls = typeof el.className === 'string' ? el.className : '';
        return cls.includes('marker') || cls.includes('pin');
    });
    if (markers.length > 0) {
        markers[0].click();
        return true;
    }
    return false;
}
"""

_HAS_CANVAS_JS = "() => !!document.querySelector('canvas')"

_WATERMARK_JS = """
(text) => {
    const watermark = document.createElement('div');
    watermark.textContent = text;
    watermark.setAttribute('data-streetview-watermark', 'true');
    Object.assign(watermark.style, {
        position: 'absolute',
        top: '10px',
        right: '10px',
        backgroundColor: 'rgba(255, 255, 255, 0.7)',
        color: '#333',
        padding: '5px 10px',
        borderRadius: '3px',
        fontFamily: 'Arial, sans-serif',
        fontSize: '14px',
        fontWeight: 'bold',
        zIndex: '9999',
    });
    document.body.appendChild(watermark);
    return true;
}
"""

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


class CaptureSession:
    """One job's view of an isolated browsing context.

    Navigation raises :class:`NavigationFailure`; every probe (selector lookups,
    clicks, canvas checks) is bounded by the action timeout and reports "no
    match" as ``False``/``None`` instead of raising.
    """

    def __init__(
        self,
        page: Page,
        *,
        browser_settings: BrowserSettings,
        capture_settings: CaptureSettings,
        label: str = "job",
    ) -> None:
        self._page = page
        self._browser = browser_settings
        self._capture = capture_settings
        self.label = label

    @property
    def maps_base_url(self) -> str:
        return self._capture.maps_base_url

    @property
    def capture_settings(self) -> CaptureSettings:
        return self._capture

    async def goto(self, url: str, *, timeout_ms: int | None = None) -> None:
        timeout = timeout_ms or self._browser.navigation_timeout_ms
        LOGGER.debug("Navigating %s to %s", self.label, url)
        try:
            await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout)
        except (PlaywrightError, asyncio.TimeoutError) as exc:
            raise NavigationFailure(f"Navigation to {url} failed: {exc}") from exc

    async def wait_for_map(self, *, timeout_ms: int | None = None) -> bool:
        timeout = timeout_ms or self._capture.map_ready_timeout_ms
        try:
            await self._page.wait_for_selector(MAP_SURFACE_SELECTOR, timeout=timeout)
        except (PlaywrightError, asyncio.TimeoutError) as exc:
            LOGGER.debug("Map surface not ready for %s: %s", self.label, exc)
            return False
        return True

    async def require_map(self, *, timeout_ms: int | None = None) -> None:
        if not await self.wait_for_map(timeout_ms=timeout_ms):
            raise ElementNotFound(f"Map surface {MAP_SURFACE_SELECTOR} never rendered")

    async def dismiss_consent(self) -> bool:
        button = await self._probe(self._page.query_selector(CONSENT_SELECTOR), default=None)
        if button is None:
            return False
        clicked = await self._probe(
            button.click(timeout=self._capture.consent_timeout_ms), default=False, ok=True
        )
        if clicked:
            await self.settle(1000)
        return bool(clicked)

    async def click_first_visible(self, selectors: Sequence[str]) -> str | None:
        """Click the first visible element across ``selectors``; return its selector."""

        return await self._probe(
            self._page.evaluate(_CLICK_FIRST_VISIBLE_JS, list(selectors)), default=None
        )

    async def click_image_by_src(self, fragments: Sequence[str]) -> bool:
        return bool(
            await self._probe(self._page.evaluate(_CLICK_IMAGE_BY_SRC_JS, list(fragments)), default=False)
        )

    async def click_by_text(self, text: str, *, include_tooltip: bool = True) -> bool:
        return bool(
            await self._probe(
                self._page.evaluate(_CLICK_BY_TEXT_JS, [text, include_tooltip]), default=False
            )
        )

    async def click_marker(self) -> bool:
        return bool(await self._probe(self._page.evaluate(_CLICK_MARKER_JS), default=False))

    async def click_map_surface(self) -> bool:
        return bool(
            await self._probe(
                self._page.click(MAP_SURFACE_SELECTOR, timeout=self._browser.action_timeout_ms),
                default=False,
                ok=True,
            )
        )

    async def has_panorama(self) -> bool:
        return bool(await self._probe(self._page.evaluate(_HAS_CANVAS_JS), default=False))

    async def panorama_rendered(self) -> bool:
        """Wait for the panorama to appear, then for it to finish drawing."""

        await self.settle(self._capture.panorama_wait_ms)
        if not await self.has_panorama():
            return False
        await self.settle(self._capture.render_wait_ms)
        return True

    async def add_watermark(self, text: str = "MAP VIEW") -> bool:
        return bool(await self._probe(self._page.evaluate(_WATERMARK_JS, text), default=False))

    async def settle(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await self._page.wait_for_timeout(delay_ms)

    async def screenshot(self) -> bytes:
        return await self._page.screenshot(type="png")

    async def debug_screenshot(self, name: str) -> Path | None:
        """Write a diagnostic screenshot to scratch storage; never raises."""

        if not self._capture.debug_screenshots:
            return None
        scratch = self._capture.scratch_dir
        path = scratch / f"{_SAFE_NAME.sub('_', name)}.png"
        try:
            scratch.mkdir(parents=True, exist_ok=True)
            await self._page.screenshot(path=str(path), type="png")
        except (OSError, PlaywrightError) as exc:
            LOGGER.debug("Debug screenshot %s failed: %s", path, exc)
            return None
        LOGGER.debug("Debug screenshot saved to %s", path)
        return path

    async def _probe(self, awaitable: Awaitable[Any], *, default: Any, ok: Any = None) -> Any:
        """Await an optional query under the action timeout.

        ``ok`` replaces the awaited result when the call itself carries no
        useful return value (clicks).
        """

        try:
            result = await asyncio.wait_for(awaitable, timeout=self._browser.action_timeout_ms / 1000)
        except (PlaywrightError, asyncio.TimeoutError) as exc:
            LOGGER.debug("Probe failed for %s: %s", self.label, exc)
            return default
        return ok if ok is not None else result


class BrowserManager:
    """Owns the process-wide Chromium instance and hands out isolated sessions."""

    def __init__(self, settings: Settings | None = None, *, launcher: Launcher | None = None) -> None:
        self._settings = settings or get_settings()
        self._launcher = launcher or _launch_chromium
        self._playwright: Any = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()
        self._active_contexts = 0
        self.launch_count = 0
        self.contexts_opened = 0
        self.contexts_closed = 0

    @property
    def active_contexts(self) -> int:
        return self._active_contexts

    @property
    def is_running(self) -> bool:
        return self._browser is not None and _is_connected(self._browser)

    async def _ensure_browser(self) -> Browser:
        browser = self._browser
        if browser is not None and _is_connected(browser):
            return browser
        async with self._lock:
            if self._browser is not None and _is_connected(self._browser):
                return self._browser
            if self._browser is not None:
                LOGGER.warning("Shared browser disconnected; relaunching")
                await self._teardown()
            try:
                self._playwright, self._browser = await self._launcher(self._settings.browser)
            except Exception as exc:
                LOGGER.error("Failed to launch shared browser: %s", exc)
                raise ResourceAcquisitionFailure(f"Could not start browser: {exc}") from exc
            self.launch_count += 1
            LOGGER.info("Shared browser started (launch #%d)", self.launch_count)
            return self._browser

    @asynccontextmanager
    async def session(self, *, label: str = "job") -> AsyncIterator[CaptureSession]:
        """Yield a fresh context+page; the context is closed on every exit path."""

        browser = await self._ensure_browser()
        try:
            context = await browser.new_context(**_context_options(self._settings.browser))
        except PlaywrightError as exc:
            raise ResourceAcquisitionFailure(f"Could not open browser context: {exc}") from exc
        self._active_contexts += 1
        self.contexts_opened += 1
        metrics.context_opened()
        try:
            page = await context.new_page()
            page.set_default_navigation_timeout(self._settings.browser.navigation_timeout_ms)
            page.set_default_timeout(self._settings.browser.action_timeout_ms)
            await _mask_automation(page)
            yield CaptureSession(
                page,
                browser_settings=self._settings.browser,
                capture_settings=self._settings.capture,
                label=label,
            )
        finally:
            self._active_contexts -= 1
            self.contexts_closed += 1
            metrics.context_closed()
            await _close_quietly(context)

    async def shutdown(self) -> None:
        """Close the shared browser; safe to call repeatedly."""

        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        browser, playwright = self._browser, self._playwright
        self._browser = None
        self._playwright = None
        if browser is not None:
            try:
                await browser.close()
            except PlaywrightError as exc:
                LOGGER.warning("Error closing shared browser: %s", exc)
        if playwright is not None:
            try:
                await playwright.stop()
            except PlaywrightError as exc:
                LOGGER.warning("Error stopping Playwright: %s", exc)
        if browser is not None:
            LOGGER.info("Shared browser closed")

    def install_shutdown_hooks(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Close the browser on SIGINT/SIGTERM, then re-deliver the signal."""

        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, loop, sig)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows
                LOGGER.debug("Signal handlers unsupported; browser closes on interpreter exit")
                return

    def _on_signal(self, loop: asyncio.AbstractEventLoop, sig: signal.Signals) -> None:
        LOGGER.info("Received %s; closing shared browser", sig.name)

        async def _shutdown_then_redeliver() -> None:
            try:
                await self.shutdown()
            finally:
                loop.remove_signal_handler(sig)
                signal.raise_signal(sig)

        loop.create_task(_shutdown_then_redeliver())


_MANAGER: BrowserManager | None = None


def get_browser_manager() -> BrowserManager:
    """Return the process-wide manager, creating it on first use."""

    global _MANAGER
    if _MANAGER is None:
        _MANAGER = BrowserManager()
    return _MANAGER


async def _launch_chromium(settings: BrowserSettings) -> tuple[Any, Browser]:
    playwright = await async_playwright().start()
    channel = _normalize_channel(settings.playwright_channel)
    LOGGER.debug("launching chromium", extra={"channel": channel or "chromium"})
    try:
        browser = await playwright.chromium.launch(
            channel=channel,
            headless=settings.headless,
            args=list(settings.launch_args),
            timeout=settings.launch_timeout_ms,
        )
    except BaseException:
        await playwright.stop()
        raise
    return playwright, browser


_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


def _normalize_channel(channel: str) -> str | None:
    lowered = (channel or "").strip().lower()
    if lowered in ("", "chromium"):
        return None
    return _CHANNEL_ALIASES.get(lowered, lowered)


def _context_options(settings: BrowserSettings) -> dict[str, Any]:
    return {
        "viewport": {"width": settings.viewport_width, "height": settings.viewport_height},
        "user_agent": settings.user_agent,
        "locale": settings.locale,
    }


async def _mask_automation(page: Page) -> None:
    await page.add_init_script(
        """
        Object.defineProperty(navigator, 'webdriver', {
            get: () => undefined,
        });
        """
    )


async def _close_quietly(context: BrowserContext) -> None:
    try:
        await context.close()
    except PlaywrightError as exc:
        LOGGER.warning("Error closing browser context: %s", exc)


def _is_connected(browser: Browser) -> bool:
    try:
        return browser.is_connected()
    except PlaywrightError:
        return False


__all__ = [
    "BrowserManager",
    "CaptureSession",
    "MAP_SURFACE_SELECTOR",
    "get_browser_manager",
]
