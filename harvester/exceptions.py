"""
Custom exception hierarchy for the cookie harvester.

Structured error handling with clear categories:
- Browser errors (launch failures are fatal at startup)
- Visit errors (one site failed, the cycle carries on)
- Busy errors (a guarded collection cycle is already running)
- Validation errors (ad-hoc request rejected before any browser work)

Usage:
    from harvester.exceptions import BusyError, VisitError

    try:
        await scheduler.run_cycle(CollectionTrigger.MANUAL)
    except BusyError:
        ...  # caller retries later
"""

from __future__ import annotations

from typing import Optional


class HarvesterError(Exception):
    """
    Base exception for all harvester errors.

    Catch `HarvesterError` to handle any harvester-specific error.
    """

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


# ── Browser Errors ────────────────────────────────────────────────


class BrowserSessionError(HarvesterError):
    """Raised when the shared browser is unavailable (not started or closed)."""


class LaunchError(BrowserSessionError):
    """
    Raised when the browser process cannot be started.

    Fatal: aborts service startup and is never retried automatically.
    """

    def __init__(
        self,
        message: str,
        *,
        executable_path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.executable_path = executable_path


# ── Visit Errors ──────────────────────────────────────────────────


class VisitError(HarvesterError):
    """
    A single visit failed (navigation timeout, script error, protocol failure).

    Recoverable: the site's stored cookies stay as they were.
    """

    def __init__(
        self,
        message: str,
        *,
        target: str,
        cause: Optional[BaseException] = None,
        site_key: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.target = target
        self.cause = cause
        self.site_key = site_key


# ── Busy ──────────────────────────────────────────────────────────


class BusyError(HarvesterError):
    """
    Raised when a guarded collection cycle is already running.

    There is no queueing: the caller must retry.
    """

    def __init__(
        self,
        message: str = "Collection already in progress",
        *,
        active_trigger: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.active_trigger = active_trigger


# ── Validation ────────────────────────────────────────────────────


class ValidationRejected(HarvesterError):
    """Raised when an ad-hoc request is rejected as a whole."""


class InvalidTargetURLError(ValidationRejected):
    """The ad-hoc target is not an absolute https URL."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.url = url
