import math
from collections import deque
from typing import Deque, List, Optional, Tuple

HISTORY_SIZE = 10  # probe cycles kept per node


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


class HistoryTracker:
    """Rolling window of recent (success, latency) outcomes for one node."""

    def __init__(self, size: int = HISTORY_SIZE):
        self.samples: Deque[Tuple[bool, Optional[float]]] = deque(maxlen=size)

    def __len__(self) -> int:
        return len(self.samples)

    def record(self, success: bool, latency_ms: Optional[float] = None):
        self.samples.append((success, latency_ms))

    def loss_pct(self) -> Optional[int]:
        if not self.samples:
            return None
        failures = sum(1 for success, _ in self.samples if not success)
        return int(round_half_up(failures * 100 / len(self.samples)))

    def average_latency(self) -> Optional[float]:
        latencies = [latency for _, latency in self.samples if latency is not None]
        if not latencies:
            return None
        avg = sum(latencies) / len(latencies)
        if avg >= 1:
            return int(round_half_up(avg))
        # sub-millisecond averages keep 2 decimals
        return round(avg, 2)

    def as_list(self) -> List[dict]:
        return [{"success": success, "latency_ms": latency} for success, latency in self.samples]
