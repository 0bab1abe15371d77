"""Reconnect backoff for the delivery manager."""

import random
from typing import Callable

from .config import BackoffConfig


class ExponentialBackoff:
    """
    Exponential backoff with symmetric jitter, capped at max_ms.

    The n-th consecutive failure waits initial * multiplier**n, moved by up to
    +/- jitter of itself, and never longer than max_ms.
    """

    def __init__(self, config: BackoffConfig, rand: Callable[[], float] = random.random):
        self.config = config
        self.attempts = 0
        self._rand = rand

    def next_delay(self) -> float:
        """Delay in seconds before the next attempt; advances the attempt count."""
        cfg = self.config
        delay = min(cfg.initial_ms * (cfg.multiplier ** self.attempts), cfg.max_ms)
        jitter = delay * cfg.jitter * (2 * self._rand() - 1)
        self.attempts += 1
        return min(max(0.0, delay + jitter), cfg.max_ms) / 1000

    def reset(self) -> None:
        self.attempts = 0
