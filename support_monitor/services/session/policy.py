"""
Reconnect backoff and QR-loop detection.

Pure state with an injectable clock, so the supervisor's timing rules can be
exercised without sleeping.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from support_monitor.config import settings


def reconnect_delay_ms(
    attempt: int,
    base_ms: int | None = None,
    factor: float | None = None,
    max_ms: int | None = None,
) -> int:
    """min(max, base * factor^(attempt - 1)), truncated to whole milliseconds."""
    base_ms = settings.RECONNECT_BASE_DELAY_MS if base_ms is None else base_ms
    factor = settings.RECONNECT_BACKOFF_FACTOR if factor is None else factor
    max_ms = settings.RECONNECT_MAX_DELAY_MS if max_ms is None else max_ms
    return int(min(max_ms, base_ms * factor ** (max(attempt, 1) - 1)))


@dataclass(slots=True)
class QrWindow:
    """Counts QR issuances inside a rolling window anchored at the first QR."""

    max_attempts: int = field(default_factory=lambda: settings.QR_MAX_ATTEMPTS)
    window_seconds: float = field(default_factory=lambda: settings.QR_WINDOW_SECONDS)
    clock: Callable[[], float] = time.monotonic
    count: int = 0
    window_started_at: float | None = None

    def record(self) -> int:
        """Register one QR event and return the count inside the current window."""
        now = self.clock()
        if self.window_started_at is None or now - self.window_started_at > self.window_seconds:
            self.count = 0
            self.window_started_at = now
        self.count += 1
        return self.count

    @property
    def exceeded(self) -> bool:
        return self.count > self.max_attempts

    def reset(self) -> None:
        self.count = 0
        self.window_started_at = None


@dataclass(slots=True)
class ReconnectBackoff:
    max_attempts: int = field(default_factory=lambda: settings.RECONNECT_MAX_ATTEMPTS)
    attempts: int = 0

    def next_delay_ms(self) -> int | None:
        """Advance the attempt counter; None once the attempts are exhausted."""
        self.attempts += 1
        if self.attempts > self.max_attempts:
            return None
        return reconnect_delay_ms(self.attempts)

    def reset(self) -> None:
        self.attempts = 0
