"""
Browser and collection configuration for the cookie harvester.

Defines HarvesterConfig (Pydantic model) with the launch settings for the
shared Chromium process, the collection schedule, and the built-in
target sites.

Usage:
    from harvester.browser.config import HarvesterConfig

    config = HarvesterConfig()                         # bundled Chromium, headless
    config = HarvesterConfig(headless=False)           # visible browser
    config = HarvesterConfig.from_env()                # CHROME_EXECUTABLE_PATH etc.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from harvester.collection.job_config import JobConfig


# ─── Default Headers ────────────────────────────────────────────────

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/91.0.4472.124 Safari/537.36"
)


# ─── Launch Flags ───────────────────────────────────────────────────

# Sandbox off for the unprivileged container user; background throttling off
# so pages in unfocused contexts run at full speed.
DEFAULT_LAUNCH_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--disable-web-security",
    "--disable-features=VizDisplayCompositor",
    "--window-size=1920,1080",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
)

DEFAULT_COLLECTION_INTERVAL_SECONDS = 30 * 60


class SiteTarget(BaseModel):
    """A built-in site collected on every cycle."""

    site_key: str = Field(..., min_length=1, description="Key in the cookie store")
    url: str = Field(..., description="Page visited to obtain the cookies")
    config: JobConfig = Field(default_factory=JobConfig)


def default_targets() -> list[SiteTarget]:
    return [
        SiteTarget(site_key="animepahe", url="https://animepahe.com"),
        SiteTarget(site_key="pahewin", url="https://pahe.win"),
        SiteTarget(site_key="kwik", url="https://kwik.si"),
    ]


class HarvesterConfig(BaseModel):
    """
    Configuration for the CookieHarvester.

    Attributes:
        headless: Run the browser without a visible window.
        executable_path: Chrome/Chromium binary. None uses Playwright's
            bundled Chromium.
        user_agent: User-Agent presented by every visit.
        extra_launch_args: Flags appended to the fixed launch flags.
        collection_interval_seconds: Delay between periodic cycles.
        shutdown_grace_seconds: How long shutdown() waits for an in-flight
            cycle before closing the browser (0 = close immediately).
        targets: Sites collected by every guarded cycle.
    """

    # ─── Browser ────────────────────────────────────────────────
    headless: bool = Field(True, description="Run browser without visible window")
    executable_path: Optional[Path] = Field(
        None,
        description="Browser executable (None = Playwright's bundled Chromium)",
    )
    user_agent: str = Field(DEFAULT_USER_AGENT, description="Browser User-Agent string")
    extra_launch_args: list[str] = Field(
        default_factory=list,
        description="Chromium flags added after the fixed launch flags",
    )

    # ─── Schedule ───────────────────────────────────────────────
    collection_interval_seconds: float = Field(
        DEFAULT_COLLECTION_INTERVAL_SECONDS,
        ge=1,
        description="Seconds between periodic collection cycles",
    )
    shutdown_grace_seconds: float = Field(
        0.0,
        ge=0.0,
        description="Seconds shutdown waits for a running cycle",
    )

    # ─── Targets ────────────────────────────────────────────────
    targets: list[SiteTarget] = Field(default_factory=default_targets)

    @field_validator("targets")
    @classmethod
    def _unique_site_keys(cls, targets: list[SiteTarget]) -> list[SiteTarget]:
        keys = [t.site_key for t in targets]
        if len(keys) != len(set(keys)):
            raise ValueError("target site_key values must be unique")
        return targets

    @property
    def site_keys(self) -> list[str]:
        return [t.site_key for t in self.targets]

    def get_launch_args(self) -> list[str]:
        """Chromium flags for the shared browser process."""
        return [*DEFAULT_LAUNCH_ARGS, *self.extra_launch_args]

    def to_launch_kwargs(self) -> dict[str, Any]:
        """
        Convert config to keyword arguments for chromium.launch().

        Returns:
            Dict of kwargs to pass to playwright's BrowserType.launch().
        """
        kwargs: dict[str, Any] = {
            "headless": self.headless,
            "args": self.get_launch_args(),
        }
        if self.executable_path is not None:
            kwargs["executable_path"] = str(self.executable_path)
        return kwargs

    @classmethod
    def from_env(cls) -> "HarvesterConfig":
        """
        Create config from environment variables.

        Reads:
            CHROME_EXECUTABLE_PATH: browser binary (default: bundled Chromium)
            HARVESTER_HEADLESS: "true"/"false" (default: "true")
            HARVESTER_INTERVAL_SECONDS: periodic interval (default: 1800)
            HARVESTER_SHUTDOWN_GRACE_SECONDS: shutdown wait (default: 0)
        """
        kwargs: dict[str, Any] = {
            "headless": os.environ.get("HARVESTER_HEADLESS", "true").lower() == "true",
        }
        executable = os.environ.get("CHROME_EXECUTABLE_PATH", "").strip()
        if executable:
            kwargs["executable_path"] = Path(executable)
        interval = os.environ.get("HARVESTER_INTERVAL_SECONDS", "").strip()
        if interval:
            kwargs["collection_interval_seconds"] = float(interval)
        grace = os.environ.get("HARVESTER_SHUTDOWN_GRACE_SECONDS", "").strip()
        if grace:
            kwargs["shutdown_grace_seconds"] = float(grace)
        return cls(**kwargs)
