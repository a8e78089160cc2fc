"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "BrowserSettings",
    "CaptureSettings",
    "StorageSettings",
    "TelemetrySettings",
    "Settings",
    "load_config",
    "get_settings",
]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)

DEFAULT_LAUNCH_ARGS = (
    "--disable-features=site-per-process",
    "--disable-web-security",
    "--disable-setuid-sandbox",
    "--no-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
)


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Knobs for the shared Chromium process and per-job contexts."""

    playwright_channel: str
    headless: bool
    launch_args: tuple[str, ...]
    launch_timeout_ms: int
    viewport_width: int
    viewport_height: int
    user_agent: str
    locale: str
    navigation_timeout_ms: int
    action_timeout_ms: int


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Timing and addressing parameters for the strategy chain."""

    maps_base_url: str
    consent_timeout_ms: int
    map_ready_timeout_ms: int
    panorama_wait_ms: int
    render_wait_ms: int
    strategy_timeout_seconds: float
    long_address_threshold: int
    expected_duration_seconds: int
    scratch_dir: Path
    debug_screenshots: bool


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem + SQLite layout for cached images and job records."""

    cache_root: Path
    db_path: Path
    public_prefix: str


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Prometheus exporter port (0 disables the exporter)."""

    prometheus_port: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    browser: BrowserSettings
    capture: CaptureSettings
    storage: StorageSettings
    telemetry: TelemetrySettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    Process environment variables always win; a missing .env file simply means
    every key falls back to the environment or its default.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _float(cfg: DecoupleConfig, key: str, *, default: float) -> float:
    return cfg(key, cast=float, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _csv_tuple(cfg: DecoupleConfig, key: str, *, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = cfg(key, default="")
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    browser = BrowserSettings(
        playwright_channel=cfg("PLAYWRIGHT_CHANNEL", default="chromium"),
        headless=_bool(cfg, "BROWSER_HEADLESS", default=True),
        launch_args=_csv_tuple(cfg, "BROWSER_LAUNCH_ARGS", default=DEFAULT_LAUNCH_ARGS),
        launch_timeout_ms=_int(cfg, "BROWSER_LAUNCH_TIMEOUT_MS", default=60000),
        viewport_width=_int(cfg, "CAPTURE_VIEWPORT_WIDTH", default=1280),
        viewport_height=_int(cfg, "CAPTURE_VIEWPORT_HEIGHT", default=800),
        user_agent=cfg("CAPTURE_USER_AGENT", default=DEFAULT_USER_AGENT),
        locale=cfg("CAPTURE_LOCALE", default="en-US"),
        navigation_timeout_ms=_int(cfg, "NAVIGATION_TIMEOUT_MS", default=30000),
        action_timeout_ms=_int(cfg, "ACTION_TIMEOUT_MS", default=15000),
    )
    if browser.action_timeout_ms > browser.navigation_timeout_ms:
        msg = "ACTION_TIMEOUT_MS must be <= NAVIGATION_TIMEOUT_MS"
        raise ValueError(msg)

    capture = CaptureSettings(
        maps_base_url=cfg("MAPS_BASE_URL", default="https://www.google.com/maps").rstrip("/"),
        consent_timeout_ms=_int(cfg, "CONSENT_TIMEOUT_MS", default=3000),
        map_ready_timeout_ms=_int(cfg, "MAP_READY_TIMEOUT_MS", default=15000),
        panorama_wait_ms=_int(cfg, "PANORAMA_WAIT_MS", default=3000),
        render_wait_ms=_int(cfg, "RENDER_WAIT_MS", default=3000),
        strategy_timeout_seconds=_float(cfg, "STRATEGY_TIMEOUT_SECONDS", default=60.0),
        long_address_threshold=_int(cfg, "LONG_ADDRESS_THRESHOLD", default=80),
        expected_duration_seconds=_int(cfg, "EXPECTED_CAPTURE_SECONDS", default=30),
        scratch_dir=Path(
            cfg("SCRATCH_DIR", default=str(Path(tempfile.gettempdir()) / "streetview-temp"))
        ),
        debug_screenshots=_bool(cfg, "DEBUG_SCREENSHOTS", default=True),
    )
    storage = StorageSettings(
        cache_root=Path(cfg("CACHE_ROOT", default=".cache/streetviews")),
        db_path=Path(cfg("STREETVIEW_DB_PATH", default="streetview.db")),
        public_prefix=cfg("PUBLIC_IMAGE_PREFIX", default="/api/images").rstrip("/"),
    )
    telemetry = TelemetrySettings(
        prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=0),
    )

    return Settings(
        env_path=env_path,
        browser=browser,
        capture=capture,
        storage=storage,
        telemetry=telemetry,
    )
