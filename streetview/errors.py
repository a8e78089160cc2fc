"""Exception taxonomy for the capture pipeline."""

from __future__ import annotations


class CaptureError(Exception):
    """Base class for every error raised by the capture pipeline."""


class InputError(CaptureError, ValueError):
    """Missing address or target id; raised before any resource is acquired."""


class NavigationFailure(CaptureError):
    """A page navigation failed or timed out inside a strategy."""


class ElementNotFound(CaptureError):
    """A required element never appeared inside a strategy."""


class CaptureFailure(CaptureError):
    """Every strategy, including the map screenshot, failed for a target."""

    def __init__(self, target_id: str, message: str | None = None) -> None:
        self.target_id = target_id
        super().__init__(message or f"Failed to capture street view for {target_id}")


class ResourceAcquisitionFailure(CaptureError):
    """The shared browser process could not be started."""


class JobInProgress(CaptureError):
    """A capture for the same target is already running in this process."""

    def __init__(self, target_id: str) -> None:
        self.target_id = target_id
        super().__init__(f"Capture already in progress for {target_id}")


__all__ = [
    "CaptureError",
    "InputError",
    "NavigationFailure",
    "ElementNotFound",
    "CaptureFailure",
    "ResourceAcquisitionFailure",
    "JobInProgress",
]
