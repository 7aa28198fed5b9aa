import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .calibration import LatencyCalibrator
from .config import ProbeSettings
from .history import HistoryTracker, round_half_up
from .models.NodeRecord import NodeRecord
from .models.ProbeCycleResult import ProbeCycleResult, ProbeSummary
from .parsers import DEFAULT_PARSERS, decode_output
from .regions import RegionOrderResolver, load_region_table
from .supervisor import (
    OutcomeKind,
    ProcessOutcome,
    ProcessSupervisor,
    append_derp_map_arg,
    parse_args,
    resolve_timeout_ms,
)

log = logging.getLogger(__name__)

PROBE_NAME = "derpprobe"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SmoothingStore:
    """
    Per-node calibrator and history state that outlives a single cycle.
    Entries are created on first sight of a node id and never dropped.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.calibrators: Dict[str, LatencyCalibrator] = {}
        self.history: Dict[str, HistoryTracker] = {}

    def calibrator_for(self, node_id: str) -> LatencyCalibrator:
        if node_id not in self.calibrators:
            self.calibrators[node_id] = LatencyCalibrator(clock=self.clock)
        return self.calibrators[node_id]

    def history_for(self, node_id: str) -> HistoryTracker:
        if node_id not in self.history:
            self.history[node_id] = HistoryTracker()
        return self.history[node_id]

    def apply(self, nodes: List[NodeRecord]) -> List[NodeRecord]:
        """Replace each node's raw RTT with smoothed delay and fill in loss_pct."""
        now = self.clock()
        for node in nodes:
            delay = None
            if node.latency_ms is not None:
                delay = self.calibrator_for(node.id).calibrate(node.latency_ms, now)

            history = self.history_for(node.id)
            history.record(node.status in ("healthy", "degraded"), delay)
            node.latency_ms = history.average_latency()
            node.loss_pct = history.loss_pct()
        return nodes


def summarize(nodes: List[NodeRecord]) -> ProbeSummary:
    summary = ProbeSummary(total=len(nodes))
    latencies = []
    for node in nodes:
        setattr(summary, node.status, getattr(summary, node.status) + 1)
        if node.latency_ms is not None:
            latencies.append(node.latency_ms)

    if latencies:
        summary.avg_latency_ms = int(round_half_up(sum(latencies) / len(latencies)))
    return summary


def is_ok(exit_code: Optional[int], nodes: List[NodeRecord]) -> bool:
    if exit_code == 0:
        return True
    # derpprobe exits 1 on any failed probe; accept it when nothing is actually unhealthy
    return exit_code == 1 and bool(nodes) and all(node.status == "healthy" for node in nodes)


class ProbeEngine:
    def __init__(
        self,
        settings: ProbeSettings,
        store: Optional[SmoothingStore] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        parsers: Sequence = DEFAULT_PARSERS,
    ):
        self.settings = settings
        self.store = store or SmoothingStore()
        self.supervisor = supervisor or ProcessSupervisor(capture_stdout=settings.raw_output)
        self.parsers = parsers
        self._cycle_lock = asyncio.Lock()

    def build_args(self) -> List[str]:
        args = parse_args(self.settings.args_text, keep_json=self.settings.raw_output)
        return append_derp_map_arg(args, self.settings.derp_map)

    async def run_cycle(self) -> ProbeCycleResult:
        # Cycles share self.store, so they never overlap
        async with self._cycle_lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> ProbeCycleResult:
        started = time.monotonic()
        args = self.build_args()
        timeout_ms = resolve_timeout_ms(self.settings.timeout_ms, args)
        log.info(f"Running {self.settings.command} {' '.join(args)} (timeout {timeout_ms}ms)")

        outcome = await self.supervisor.run(self.settings.command, args, timeout_ms)
        checked_at = now_iso()

        if outcome.kind is OutcomeKind.TIMED_OUT:
            result = self._failed(started, checked_at, outcome, f"{PROBE_NAME} timed out after {timeout_ms}ms")
        elif outcome.kind is OutcomeKind.LAUNCH_FAILED:
            result = self._failed(started, checked_at, outcome, outcome.error or f"{PROBE_NAME} failed to start")
        else:
            result = await self._completed(started, checked_at, outcome)

        log.info(f"Probe cycle finished: ok={result.ok}, nodes={len(result.nodes)}, took {result.duration_ms}ms")
        return result

    def parse_nodes(self, stdout: str, stderr: str, checked_at: str) -> List[NodeRecord]:
        for parser in self.parsers:
            nodes = parser.parse(stdout, stderr, checked_at)
            if nodes:
                if parser.smoothed:
                    nodes = self.store.apply(nodes)
                return nodes
            log.debug(f"{type(parser).__name__} produced no nodes")
        return []

    async def _completed(self, started: float, checked_at: str, outcome: ProcessOutcome) -> ProbeCycleResult:
        nodes = self.parse_nodes(outcome.stdout, outcome.stderr, checked_at)
        table = await load_region_table(self.settings.derp_map)
        nodes = RegionOrderResolver(table).order(nodes)

        ok = is_ok(outcome.exit_code, nodes)
        error = None
        if not ok:
            if outcome.exit_code is not None:
                error = f"{PROBE_NAME} exited with code {outcome.exit_code}"
            else:
                error = f"{PROBE_NAME} exited with an unknown error"
            log.warning(error)

        return ProbeCycleResult(
            ok=ok,
            checked_at=checked_at,
            duration_ms=self._elapsed_ms(started),
            summary=summarize(nodes),
            nodes=nodes,
            stderr=outcome.stderr.strip() or None,
            error=error,
            raw=decode_output(outcome.stdout),
        )

    def _failed(self, started: float, checked_at: str, outcome: ProcessOutcome, error: str) -> ProbeCycleResult:
        return ProbeCycleResult(
            ok=False,
            checked_at=checked_at,
            duration_ms=self._elapsed_ms(started),
            summary=ProbeSummary(),
            nodes=[],
            stderr=outcome.stderr.strip() or None,
            error=error,
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
