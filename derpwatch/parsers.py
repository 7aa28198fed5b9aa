import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .history import round_half_up
from .models.NodeRecord import NodeRecord, ProbeStatus

log = logging.getLogger(__name__)

DEGRADED_LOSS_PCT = 20
DEGRADED_LATENCY_MS = 180

LOG_PREFIX_RE = re.compile(r"^\d{4}/\d{2}/\d{2}\s+\d{2}:\d{2}:\d{2}\s+")
PROBE_LINE_RE = re.compile(r"^(good|bad):\s+derp/([^:]+):\s*(.+)$")
LATENCY_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)\s*(ms|µs|μs|us)")

UDP6_UNREACHABLE = "udp6: network is unreachable"
UNSPECIFIED_ADDR_MARKERS = ("write udp [::]", "dial udp [::]")

# Field spellings tried on structured records, in priority order
ID_FIELDS = ("id", "node", "nodeId", "node_id", "name", "regionCode", "region_code")
NAME_FIELDS = ("name", "nodeName", "node_name")
REGION_FIELDS = ("region", "regionName", "region_name", "regionCode", "region_code")
LATENCY_FIELDS = ("latencyMs", "latency_ms", "latency", "pingMs", "ping_ms", "rttMs", "rtt_ms")
LOSS_FIELDS = ("lossPct", "loss_pct", "packetLossPct", "packet_loss_pct")
ERROR_FIELDS = ("error", "err", "message")


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str)):
        return None
    try:
        parsed = float(value)
    except (ValueError, OverflowError):
        return None
    return parsed if math.isfinite(parsed) else None


def _first_string(obj: Dict[str, Any], fields) -> Optional[str]:
    for name in fields:
        value = obj.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def _first_number(obj: Dict[str, Any], fields) -> Optional[float]:
    for name in fields:
        value = to_number(obj.get(name))
        if value is not None:
            return value
    return None


def to_loss_pct(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return min(100, max(0, int(round_half_up(value))))


def classify_structured_status(latency_ms: Optional[float], loss_pct: Optional[float], error: Optional[str]) -> ProbeStatus:
    if error:
        return "down"
    if latency_ms is None:
        return "unknown"
    if loss_pct is not None and loss_pct >= DEGRADED_LOSS_PCT:
        return "degraded"
    if latency_ms >= DEGRADED_LATENCY_MS:
        return "degraded"
    return "healthy"


def decode_output(stdout: str) -> Any:
    """
    Decode derpprobe's stdout: a single JSON document, or JSON lines with
    non-JSON lines skipped. Plain text comes back as {"text": ...}.
    """
    text = stdout.strip()
    if not text:
        return None

    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        pass

    decoded = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            decoded.append(json.loads(line))
        except (ValueError, RecursionError):
            continue

    if decoded:
        return decoded
    return {"text": text}


def flatten_objects(document: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    # explicit stack, depth-first in document order
    stack = [document]
    while stack:
        node = stack.pop()
        if isinstance(node, list):
            stack.extend(reversed(node))
        elif isinstance(node, dict):
            out.append(node)
            stack.extend(reversed(list(node.values())))
    return out


class RawOutputParser:
    """Pulls node records straight out of structured (-json) output."""

    smoothed = False

    def parse(self, raw_output: str, raw_diagnostics: str, checked_at: str) -> List[NodeRecord]:
        return self.pick_nodes(decode_output(raw_output), checked_at)

    def pick_nodes(self, document: Any, checked_at: str) -> List[NodeRecord]:
        seen = set()
        nodes: List[NodeRecord] = []

        for obj in flatten_objects(document):
            node_id = _first_string(obj, ID_FIELDS)
            latency_ms = _first_number(obj, LATENCY_FIELDS)
            raw_loss = _first_number(obj, LOSS_FIELDS)
            error = _first_string(obj, ERROR_FIELDS)

            if not node_id and latency_ms is None and raw_loss is None and not error:
                continue

            key = node_id or json.dumps(obj, sort_keys=True, default=str)
            if key in seen:
                continue
            seen.add(key)

            position = len(nodes) + 1
            nodes.append(NodeRecord(
                id=node_id or f"node-{position}",
                name=_first_string(obj, NAME_FIELDS) or node_id or f"Node {position}",
                region=_first_string(obj, REGION_FIELDS),
                latency_ms=latency_ms,
                loss_pct=to_loss_pct(raw_loss),
                status=classify_structured_status(latency_ms, raw_loss, error),
                message=error,
                checked_at=checked_at,
                raw=obj,
            ))

        return nodes


def strip_log_prefix(line: str) -> str:
    return LOG_PREFIX_RE.sub("", line).strip()


def parse_latency_ms(text: str) -> Optional[float]:
    match = LATENCY_RE.search(text)
    if not match:
        return None
    value = float(match.group(1))
    if match.group(2) == "ms":
        return value
    return round(value / 1000, 2)


def is_udp6_unreachable(probe_type: str, result_text: str) -> bool:
    return probe_type == "udp6" and "network is unreachable" in result_text


def normalize_probe_message(probe_type: str, result_text: str) -> str:
    if is_udp6_unreachable(probe_type, result_text):
        return UDP6_UNREACHABLE
    return f"{probe_type}: {result_text}"


@dataclass
class ProbeLine:
    good: bool
    path: List[str]
    text: str

    @property
    def probe_type(self) -> str:
        return self.path[-1]

    @property
    def node_id(self) -> str:
        return f"{self.path[0]}-{self.path[1]}"


def parse_probe_lines(raw_diagnostics: str) -> List[ProbeLine]:
    lines = []
    for line in raw_diagnostics.splitlines():
        line = strip_log_prefix(line)
        if not line:
            continue
        match = PROBE_LINE_RE.match(line)
        if not match:
            continue
        path = match.group(2).split("/")
        if len(path) < 3:
            continue
        lines.append(ProbeLine(good=match.group(1) == "good", path=path, text=match.group(3)))
    return lines


def host_ipv6_unavailable(lines: List[ProbeLine]) -> bool:
    """
    True when every failure in the cycle is udp6 hitting an unconfigured
    IPv6 stack on this host rather than a relay problem.
    """
    bad = [line for line in lines if not line.good]
    if not bad:
        return False

    good_udp6 = [line for line in lines if line.good and line.probe_type == "udp6"]
    good_other = [line for line in lines if line.good and line.probe_type != "udp6"]
    if good_udp6 or not good_other:
        return False

    return all(
        is_udp6_unreachable(line.probe_type, line.text)
        and any(marker in line.text for marker in UNSPECIFIED_ADDR_MARKERS)
        for line in bad
    )


@dataclass
class NodeTally:
    id: str
    name: str
    region: str
    good: int = 0
    bad: int = 0
    bad_udp6: int = 0
    other_error: bool = False
    latency_samples: List[float] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)

    def status(self, ipv6_unavailable: bool) -> ProbeStatus:
        if self.other_error or (self.bad > 0 and self.good == 0):
            return "down"
        if self.bad_udp6 > 0 and not ipv6_unavailable:
            return "degraded"
        if self.good > 0:
            return "healthy"
        return "unknown"

    def raw_latency(self) -> Optional[float]:
        if not self.latency_samples:
            return None
        return round(sum(self.latency_samples) / len(self.latency_samples), 2)


class LogParser:
    """
    Aggregates derpprobe's good/bad log lines into per-node records.
    latency_ms is the cycle's mean raw udp RTT; the engine smooths it.
    """

    smoothed = True

    def parse(self, raw_output: str, raw_diagnostics: str, checked_at: str) -> List[NodeRecord]:
        lines = parse_probe_lines(raw_diagnostics)
        ipv6_unavailable = host_ipv6_unavailable(lines)
        if ipv6_unavailable:
            log.debug("All failures are udp6 on a host without IPv6, not counting them against nodes")

        tallies: Dict[str, NodeTally] = {}
        for line in lines:
            tally = tallies.get(line.node_id)
            if tally is None:
                tally = tallies[line.node_id] = NodeTally(id=line.node_id, name=line.path[0], region=line.path[1])

            if line.good:
                tally.good += 1
                if line.probe_type == "udp":
                    latency = parse_latency_ms(line.text)
                    if latency is not None:
                        tally.latency_samples.append(latency)
            else:
                tally.bad += 1
                tally.messages.append(normalize_probe_message(line.probe_type, line.text))
                if is_udp6_unreachable(line.probe_type, line.text):
                    tally.bad_udp6 += 1
                else:
                    tally.other_error = True

        return [
            NodeRecord(
                id=tally.id,
                name=tally.name,
                region=tally.region,
                latency_ms=tally.raw_latency(),
                status=tally.status(ipv6_unavailable),
                message=" | ".join(tally.messages) if tally.messages else None,
                checked_at=checked_at,
            )
            for tally in tallies.values()
        ]


DEFAULT_PARSERS = (RawOutputParser(), LogParser())
