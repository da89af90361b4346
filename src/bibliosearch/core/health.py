"""Primary engine health tracking.

Keeps a rolling window of primary call outcomes.  When the engine looks
unhealthy the orchestrator stops sending it traffic; after a cooldown a single
request probes it again and a success re-admits the engine.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from bibliosearch.config.settings import HealthSettings

logger = logging.getLogger(__name__)


@dataclass
class _Outcome:
    ok: bool
    latency_ms: float


class PrimaryHealthMonitor:
    """Rolling-window breaker for the primary engine.

    Trips on any of:
      - ``max_consecutive_failures`` failures in a row
      - error rate above ``max_error_rate`` once ``min_samples`` are recorded
      - mean latency of successes above ``max_avg_latency_ms`` (same sample floor)
    """

    def __init__(self, settings: HealthSettings, clock: Callable[[], float] = time.monotonic) -> None:
        self.settings = settings
        self._clock = clock
        self._window: deque[_Outcome] = deque(maxlen=settings.window_size)
        self._consecutive_failures = 0
        self._tripped_at: float | None = None
        self._trip_reason: str | None = None
        self._trips = 0
        self._probe_started: float | None = None

    @property
    def tripped(self) -> bool:
        return self._tripped_at is not None

    def allow_request(self) -> bool:
        """Whether the next request may go to the primary."""
        if not self.settings.enabled or self._tripped_at is None:
            return True
        now = self._clock()
        if now - self._tripped_at < self.settings.cooldown_seconds:
            return False
        # One probe at a time; an abandoned probe expires after another cooldown
        if self._probe_started is not None and now - self._probe_started < self.settings.cooldown_seconds:
            return False
        self._probe_started = now
        logger.info("Primary cooldown elapsed, probing engine")
        return True

    def record_success(self, latency_ms: float) -> None:
        if self._tripped_at is not None:
            logger.info("Primary engine recovered after %s", self._trip_reason)
            self.reset()
        self._consecutive_failures = 0
        self._window.append(_Outcome(ok=True, latency_ms=latency_ms))
        self._evaluate()

    def record_failure(self, latency_ms: float = 0.0) -> None:
        self._consecutive_failures += 1
        self._window.append(_Outcome(ok=False, latency_ms=latency_ms))
        if self._tripped_at is not None:
            # Failed probe: wait a full cooldown again
            self._tripped_at = self._clock()
            self._probe_started = None
            return
        self._evaluate()

    def reset(self) -> None:
        self._window.clear()
        self._consecutive_failures = 0
        self._tripped_at = None
        self._trip_reason = None
        self._probe_started = None

    def _evaluate(self) -> None:
        reason = self._trip_condition()
        if reason is None:
            return
        self._tripped_at = self._clock()
        self._trip_reason = reason
        self._trips += 1
        logger.warning(
            "Primary engine marked unhealthy (%s); routing to fallback for %.0fs",
            reason,
            self.settings.cooldown_seconds,
        )

    def _trip_condition(self) -> str | None:
        if not self.settings.enabled:
            return None
        if self._consecutive_failures >= self.settings.max_consecutive_failures:
            return f"{self._consecutive_failures} consecutive failures"
        if len(self._window) < self.settings.min_samples:
            return None
        error_rate = self.error_rate
        if error_rate > self.settings.max_error_rate:
            return f"error rate {error_rate:.0%}"
        avg_latency = self.avg_latency_ms
        if avg_latency > self.settings.max_avg_latency_ms:
            return f"average latency {avg_latency:.0f} ms"
        return None

    @property
    def error_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(1 for o in self._window if not o.ok) / len(self._window)

    @property
    def avg_latency_ms(self) -> float:
        latencies = [o.latency_ms for o in self._window if o.ok]
        return sum(latencies) / len(latencies) if latencies else 0.0

    def snapshot(self) -> dict[str, Any]:
        return {
            "tripped": self.tripped,
            "probing": self._probe_started is not None,
            "reason": self._trip_reason,
            "samples": len(self._window),
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "consecutive_failures": self._consecutive_failures,
            "trips": self._trips,
        }
