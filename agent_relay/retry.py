"""Backoff helpers shared by the reconnect loop and the Claude adapter."""

import random
from dataclasses import dataclass
from typing import Callable, Optional

INITIAL_RECONNECT_DELAY_MS = 1000
MAX_RECONNECT_DELAY_MS = 30000
MAX_RECONNECT_ATTEMPTS = 10
JITTER_FACTOR = 0.3

# Substrings of transient failures worth retrying.
RETRYABLE_PATTERNS = (
    'connection error',
    'connection refused',
    'connection reset',
    'econnrefused',
    'econnreset',
    'etimedout',
    'timed out',
    'timeout',
    'network',
    'socket hang up',
    'overloaded',
    'rate limit',
    '429',
    '502',
    '503',
    '504',
)


def calculate_reconnect_delay(
    attempts: int,
    rand: Optional[Callable[[], float]] = None,
    initial_ms: int = INITIAL_RECONNECT_DELAY_MS,
    max_ms: int = MAX_RECONNECT_DELAY_MS,
    jitter: float = JITTER_FACTOR,
) -> int:
    """Delay in ms before reconnect attempt number ``attempts`` (0-based).

    ``min(initial * 2**attempts, max)`` with +/-``jitter`` applied, never
    below ``initial_ms``.
    """
    rand = rand or random.random
    base = min(initial_ms * (2 ** attempts), max_ms)
    offset = base * jitter * (rand() * 2 - 1)
    return max(initial_ms, round(base + offset))


@dataclass
class RetryConfig:
    max_retries: int = 5
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> int:
        """Plain exponential delay (no jitter) for retry ``attempt`` (0-based)."""
        delay = self.initial_delay_ms * (self.backoff_multiplier ** attempt)
        return int(min(delay, self.max_delay_ms))


def is_retryable_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)
