"""
Per-visit job configuration and the permissive validator for ad-hoc input.

JobConfig carries every knob a single visit needs. Built-in targets use
the defaults; ad-hoc requests go through JobConfigValidator, which keeps
each field that passes its bound and silently falls back to the default
for each one that does not.

Usage:
    from harvester.collection.job_config import JobConfigValidator

    validator = JobConfigValidator()
    config = validator.validate({"timeout": 999999, "waitUntil": "load"})
    config.timeout_ms   # 60000.0 (out of bounds, dropped)
    config.wait_until   # "load"
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Literal, Optional
from urllib.parse import urlsplit

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from harvester.exceptions import InvalidTargetURLError, ValidationRejected

logger = logging.getLogger(__name__)


# ─── Defaults ────────────────────────────────────────────────────────

DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_WAIT_UNTIL = "networkidle2"
DEFAULT_INITIAL_WAIT_MS = 5_000
DEFAULT_CHALLENGE_WAIT_MS = 10_000
DEFAULT_ADDITIONAL_WAIT_MS = 0

MAX_SCRIPT_LENGTH = 10_000

WaitUntil = Literal["load", "domcontentloaded", "networkidle0", "networkidle2"]

# Playwright has a single "networkidle" condition (no in-flight requests
# for 500ms); both idle modes map onto it.
PLAYWRIGHT_WAIT_UNTIL: dict[str, str] = {
    "load": "load",
    "domcontentloaded": "domcontentloaded",
    "networkidle0": "networkidle",
    "networkidle2": "networkidle",
}


def _require_number(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("must be a number")
    return value


class Viewport(BaseModel):
    """Browser viewport for a visit."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    width: int = Field(..., gt=0, le=10_000, strict=True)
    height: int = Field(..., gt=0, le=10_000, strict=True)


class JobConfig(BaseModel):
    """
    Configuration for one visit.

    Every timing field is in milliseconds. Field aliases accept the
    snake_case names, their camelCase forms, and the short option names
    used by the HTTP payload (`timeout`, `waitUntil`, `cloudflareWait`, ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    target_url: Optional[str] = Field(
        None,
        description="Page to visit; set by the caller, never by raw options",
    )
    timeout_ms: float = Field(
        DEFAULT_TIMEOUT_MS,
        gt=0,
        le=120_000,
        validation_alias=AliasChoices("timeout_ms", "timeoutMs", "timeout"),
        description="Navigation timeout",
    )
    wait_until: WaitUntil = Field(
        DEFAULT_WAIT_UNTIL,
        validation_alias=AliasChoices("wait_until", "waitUntil", "waitUntilMode"),
        description="Page-load completion condition",
    )
    initial_wait_ms: float = Field(
        DEFAULT_INITIAL_WAIT_MS,
        ge=0,
        le=30_000,
        validation_alias=AliasChoices("initial_wait_ms", "initialWaitMs", "initialWait"),
        description="Settle delay after the load event",
    )
    challenge_wait_ms: float = Field(
        DEFAULT_CHALLENGE_WAIT_MS,
        ge=0,
        le=60_000,
        validation_alias=AliasChoices(
            "challenge_wait_ms", "challengeWaitMs", "cloudflareWait"
        ),
        description="Fixed pause when a challenge page is detected",
    )
    additional_wait_ms: float = Field(
        DEFAULT_ADDITIONAL_WAIT_MS,
        ge=0,
        le=30_000,
        validation_alias=AliasChoices(
            "additional_wait_ms", "additionalWaitMs", "additionalWait"
        ),
        description="Extra delay before extraction",
    )
    extra_headers: Optional[dict[str, str]] = Field(
        None,
        validation_alias=AliasChoices("extra_headers", "extraHeaders", "headers"),
        description="Extra HTTP headers sent with every request of the visit",
    )
    viewport: Optional[Viewport] = Field(
        None,
        validation_alias=AliasChoices("viewport"),
    )
    post_load_script: Optional[str] = Field(
        None,
        min_length=1,
        max_length=MAX_SCRIPT_LENGTH,
        strict=True,
        validation_alias=AliasChoices(
            "post_load_script", "postLoadScript", "executeScript"
        ),
        description="JavaScript evaluated in the page before extraction",
    )

    @field_validator(
        "timeout_ms", "initial_wait_ms", "challenge_wait_ms", "additional_wait_ms",
        mode="before",
    )
    @classmethod
    def _numbers_only(cls, value: Any) -> Any:
        return _require_number(value)

    @field_validator("extra_headers", mode="before")
    @classmethod
    def _flat_string_map(cls, value: Any) -> Any:
        if value is None:
            return value
        if not isinstance(value, Mapping):
            raise ValueError("headers must be an object")
        for key, item in value.items():
            if not isinstance(key, str) or not isinstance(item, str):
                raise ValueError("headers must map strings to strings")
        return dict(value)

    @property
    def playwright_wait_until(self) -> str:
        """The wait_until value understood by Playwright's page.goto()."""
        return PLAYWRIGHT_WAIT_UNTIL[self.wait_until]


def _build_key_map() -> dict[str, str]:
    keys: dict[str, str] = {}
    for name, field in JobConfig.model_fields.items():
        alias = field.validation_alias
        if isinstance(alias, AliasChoices):
            for choice in alias.choices:
                if isinstance(choice, str):
                    keys[choice] = name
    return keys


# Raw option key → JobConfig field. target_url is absent on purpose.
_KEY_TO_FIELD = _build_key_map()


# ─── Target URL ──────────────────────────────────────────────────────


def validate_target_url(url: Any) -> str:
    """
    Check that an ad-hoc target is an absolute https URL.

    Raises:
        InvalidTargetURLError: If the URL is missing, malformed or not https.
    """
    if not url or not isinstance(url, str):
        raise InvalidTargetURLError("URL is required", url=None)

    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError as e:
        raise InvalidTargetURLError("Invalid URL format", url=url) from e

    if not parts.scheme or not hostname:
        raise InvalidTargetURLError("Invalid URL format", url=url)
    if parts.scheme.lower() != "https":
        raise InvalidTargetURLError("Only HTTPS URLs are allowed", url=url)

    return url.strip()


# ─── Validator ───────────────────────────────────────────────────────


class JobConfigValidator:
    """
    Sanitizes ad-hoc job options field by field.

    A field outside its bound is dropped and the default for that field
    applies; the request itself is never rejected for a bad field. Only a
    payload that is not an object at all raises ValidationRejected.

    Args:
        defaults: Config supplying the fallback value of each field.
        log: Logger for dropped-field events (defaults to the module logger).
    """

    def __init__(
        self,
        defaults: Optional[JobConfig] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.defaults = defaults or JobConfig()
        self._log = log or logger

    def validate(
        self,
        raw: Optional[Mapping[str, Any]],
        target_url: Optional[str] = None,
    ) -> JobConfig:
        """
        Build a JobConfig from raw options.

        Args:
            raw: Options mapping from the caller (None means no options).
            target_url: Already-validated target, copied onto the config.

        Returns:
            A JobConfig with every in-bounds field applied.

        Raises:
            ValidationRejected: If raw is not a mapping.
        """
        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            raise ValidationRejected(
                "Job options must be an object",
                details={"type": type(raw).__name__},
            )

        accepted: dict[str, Any] = {}
        dropped: list[str] = []

        for key, value in raw.items():
            field_name = _KEY_TO_FIELD.get(key)
            if field_name is None or value is None:
                continue
            try:
                JobConfig.model_validate({field_name: value})
            except ValidationError:
                dropped.append(key)
                continue
            accepted[field_name] = value

        parsed = JobConfig.model_validate(accepted)
        update = {name: getattr(parsed, name) for name in accepted}
        update["target_url"] = target_url

        if dropped:
            self._log.info(
                "job_config_fields_dropped",
                extra={"dropped_fields": dropped, "url": target_url},
            )

        return self.defaults.model_copy(update=update)
