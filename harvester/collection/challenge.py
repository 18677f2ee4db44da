"""
Anti-automation challenge detection.

Classifies a loaded page from its title and offers one fixed pause when
an interstitial (Cloudflare "Just a moment...", DDoS-Guard, ...) is
showing. The pause is a heuristic: nothing checks that the challenge
actually cleared, extraction simply proceeds afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class ChallengeState(str, Enum):
    CLEAR = "clear"
    PENDING = "challenge_pending"


# Lower-case substrings of interstitial page titles
CHALLENGE_TITLE_PATTERNS: tuple[str, ...] = (
    "just a moment",
    "cloudflare",
    "attention required",
    "checking your browser",
    "verify you are human",
    "ddos-guard",
)


class ChallengeDetector:
    """
    Title-based challenge classifier with a bounded wait.

    Args:
        patterns: Lower-case title substrings that mark a challenge page.
        sleep: Awaitable sleep taking seconds (injectable for tests).
        log: Logger for challenge events.
    """

    def __init__(
        self,
        patterns: tuple[str, ...] = CHALLENGE_TITLE_PATTERNS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.patterns = tuple(p.lower() for p in patterns)
        self._sleep = sleep
        self._log = log or logger

    def classify(self, title: Optional[str]) -> ChallengeState:
        lowered = (title or "").lower()
        for pattern in self.patterns:
            if pattern in lowered:
                return ChallengeState.PENDING
        return ChallengeState.CLEAR

    async def await_challenge(self, duration_ms: float, *, url: Optional[str] = None) -> None:
        """
        Pause once for `duration_ms` milliseconds.

        Not a retry loop, and it does not verify the challenge was solved:
        it only gives the page time to finish its checks before cookies
        are read.
        """
        self._log.info(
            "challenge_wait_started",
            extra={"url": url, "duration_ms": int(duration_ms)},
        )
        if duration_ms > 0:
            await self._sleep(duration_ms / 1000)
