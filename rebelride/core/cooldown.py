"""Lockout window for the wake command."""

from __future__ import annotations

import math
import time
from collections.abc import Callable

from rebelride.core.errors import CooldownActiveError

WAKE_COOLDOWN_S = 30.0


class WakeCooldown:
    def __init__(
        self,
        duration_s: float = WAKE_COOLDOWN_S,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.duration_s = duration_s
        self._clock = clock
        self._until: float | None = None

    @property
    def remaining_s(self) -> float:
        if self._until is None:
            return 0.0
        return max(0.0, self._until - self._clock())

    @property
    def active(self) -> bool:
        return self.remaining_s > 0

    def acquire(self) -> None:
        """Start the lockout, or raise if one is already running."""
        if self.active:
            raise CooldownActiveError(
                f"Wake Up is disabled for another {math.ceil(self.remaining_s)} seconds."
            )
        self._until = self._clock() + self.duration_s
