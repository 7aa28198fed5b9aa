import time
from collections import deque
from typing import Callable, Deque, Optional, Tuple

WINDOW_SECONDS = 10 * 60  # baseline memory
WARMUP_SECONDS = 2 * 60
WARMUP_FALLBACK_BASELINE_MS = 10.0


class MonotonicMinWindow:
    """
    Sliding-window minimum over (timestamp, value) samples.

    Values in the deque are non-decreasing from front to back, so the front is
    always the minimum of everything still inside the window.
    """

    def __init__(self, span_seconds: float = WINDOW_SECONDS):
        self.span_seconds = span_seconds
        self._samples: Deque[Tuple[float, float]] = deque()

    def __len__(self) -> int:
        return len(self._samples)

    def evict(self, now: float):
        cutoff = now - self.span_seconds
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def push(self, now: float, value: float):
        self.evict(now)
        while self._samples and self._samples[-1][1] >= value:
            self._samples.pop()
        self._samples.append((now, value))

    def minimum(self) -> Optional[float]:
        if not self._samples:
            return None
        return self._samples[0][1]


class LatencyCalibrator:
    """Turns raw RTT into network-induced delay by subtracting a rolling idle baseline."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.started_at = clock()
        self.window = MonotonicMinWindow(WINDOW_SECONDS)

    def in_warmup(self, now: float) -> bool:
        return now - self.started_at < WARMUP_SECONDS

    def calibrate(self, raw_rtt_ms: float, now: Optional[float] = None) -> float:
        if now is None:
            now = self._clock()

        self.window.push(now, raw_rtt_ms)
        baseline = self.window.minimum()

        # One slow early sample must not pin the baseline for the whole warm-up
        if self.in_warmup(now) and baseline > WARMUP_FALLBACK_BASELINE_MS:
            baseline = WARMUP_FALLBACK_BASELINE_MS

        return round(max(0.0, raw_rtt_ms - baseline), 2)
