from __future__ import annotations

import json

from derpwatch.parsers import (
    LogParser,
    RawOutputParser,
    classify_structured_status,
    decode_output,
    flatten_objects,
    host_ipv6_unavailable,
    parse_latency_ms,
    parse_probe_lines,
    strip_log_prefix,
    to_loss_pct,
    to_number,
)

CHECKED_AT = "2026-10-19T08:00:00.000Z"

UDP6_HOST_FAILURE = (
    "bad: derp/{node}/udp6: write udp [::]:41641->[2001:db8::1]:3478: "
    "sendto: network is unreachable"
)


def _by_id(nodes):
    return {node.id: node for node in nodes}


# --- LogParser ---

def test_two_good_udp_lines_give_two_healthy_nodes() -> None:
    stderr = "good: derp/nyc/us-east/udp: 31ms\ngood: derp/sea/us-west/udp: 20ms\n"

    nodes = LogParser().parse("", stderr, CHECKED_AT)

    assert [node.id for node in nodes] == ["nyc-us-east", "sea-us-west"]
    assert all(node.status == "healthy" for node in nodes)
    assert nodes[0].name == "nyc"
    assert nodes[0].region == "us-east"
    assert nodes[0].latency_ms == 31.0
    assert nodes[1].checked_at == CHECKED_AT


def test_bad_tcp_line_marks_node_down() -> None:
    nodes = LogParser().parse("", "bad: derp/lhr/eu-west/tcp: i/o timeout\n", CHECKED_AT)

    assert len(nodes) == 1
    assert nodes[0].status == "down"
    assert "tcp: i/o timeout" in nodes[0].message
    assert nodes[0].latency_ms is None


def test_timestamp_prefix_and_noise_are_ignored() -> None:
    stderr = "\n".join([
        "2026/10/19 08:00:01 starting derpprobe",
        "2026/10/19 08:00:02 good: derp/fra/eu-central/udp: 500µs",
        "2026/10/19 08:00:02 good: derp/fra/eu-central/tcp: 3.1ms",
        "",
        "   ",
        "bad: derp/short/udp: too few segments",
        "good: derp/fra/eu-central/1a/udp: 1.5ms",
        "unrelated line",
    ])

    nodes = LogParser().parse("", stderr, CHECKED_AT)

    assert len(nodes) == 1
    assert nodes[0].id == "fra-eu-central"
    assert nodes[0].status == "healthy"
    # tcp samples do not count towards latency
    assert nodes[0].latency_ms == 1.0


def test_udp6_unreachable_degrades_when_host_has_ipv6() -> None:
    stderr = "\n".join([
        "good: derp/nyc/us-east/udp: 10ms",
        "good: derp/nyc/us-east/udp6: 11ms",
        "bad: derp/sea/us-west/udp6: dial udp 10.0.0.1: network is unreachable",
        "good: derp/sea/us-west/udp: 12ms",
    ])

    nodes = _by_id(LogParser().parse("", stderr, CHECKED_AT))

    assert nodes["nyc-us-east"].status == "healthy"
    assert nodes["sea-us-west"].status == "degraded"
    assert nodes["sea-us-west"].message == "udp6: network is unreachable"


def test_udp6_failures_on_host_without_ipv6_are_not_faults() -> None:
    stderr = "\n".join([
        "good: derp/nyc/us-east/udp: 10ms",
        UDP6_HOST_FAILURE.format(node="nyc/us-east"),
        "good: derp/sea/us-west/udp: 12ms",
        UDP6_HOST_FAILURE.format(node="sea/us-west"),
    ])

    nodes = LogParser().parse("", stderr, CHECKED_AT)

    assert [node.status for node in nodes] == ["healthy", "healthy"]
    assert nodes[0].message == "udp6: network is unreachable"


def test_node_with_only_failures_is_down() -> None:
    stderr = "\n".join([
        "good: derp/nyc/us-east/udp: 10ms",
        UDP6_HOST_FAILURE.format(node="ord/us-central"),
    ])

    nodes = _by_id(LogParser().parse("", stderr, CHECKED_AT))

    assert nodes["ord-us-central"].status == "down"


def test_mixed_failures_join_messages() -> None:
    stderr = "\n".join([
        "good: derp/nyc/us-east/udp: 10ms",
        "bad: derp/nyc/us-east/tcp: connection refused",
        "bad: derp/nyc/us-east/udp6: network is unreachable",
    ])

    nodes = LogParser().parse("", stderr, CHECKED_AT)

    assert nodes[0].status == "down"
    assert nodes[0].message == "tcp: connection refused | udp6: network is unreachable"


def test_empty_diagnostics_give_no_nodes() -> None:
    assert LogParser().parse("", "", CHECKED_AT) == []
    assert LogParser().parse("", "derpprobe: flag provided but not defined\n", CHECKED_AT) == []


def test_host_ipv6_unavailable_requires_unspecified_address() -> None:
    with_marker = parse_probe_lines("\n".join([
        "good: derp/nyc/us-east/udp: 10ms",
        UDP6_HOST_FAILURE.format(node="nyc/us-east"),
    ]))
    without_marker = parse_probe_lines("\n".join([
        "good: derp/nyc/us-east/udp: 10ms",
        "bad: derp/nyc/us-east/udp6: network is unreachable",
    ]))
    with_good_udp6 = parse_probe_lines("\n".join([
        "good: derp/nyc/us-east/udp6: 10ms",
        UDP6_HOST_FAILURE.format(node="sea/us-west"),
    ]))
    no_failures = parse_probe_lines("good: derp/nyc/us-east/udp: 10ms")

    assert host_ipv6_unavailable(with_marker) is True
    assert host_ipv6_unavailable(without_marker) is False
    assert host_ipv6_unavailable(with_good_udp6) is False
    assert host_ipv6_unavailable(no_failures) is False


def test_parse_latency_units() -> None:
    assert parse_latency_ms("31ms") == 31.0
    assert parse_latency_ms("12.75ms") == 12.75
    assert parse_latency_ms("1234µs") == 1.23
    assert parse_latency_ms("999μs") == 1.0
    assert parse_latency_ms("50us") == 0.05
    assert parse_latency_ms("ok") is None


def test_strip_log_prefix() -> None:
    assert strip_log_prefix("2026/10/19 08:00:02 good: derp/a/b/udp: 1ms ") == "good: derp/a/b/udp: 1ms"
    assert strip_log_prefix("good: x") == "good: x"


# --- RawOutputParser ---

def test_single_latency_record_gets_generated_id() -> None:
    nodes = RawOutputParser().parse(json.dumps({"latencyMs": 42}), "", CHECKED_AT)

    assert len(nodes) == 1
    assert nodes[0].id == "node-1"
    assert nodes[0].name == "Node 1"
    assert nodes[0].latency_ms == 42
    assert nodes[0].status == "healthy"
    assert nodes[0].raw == {"latencyMs": 42}


def test_nested_records_are_flattened_and_deduplicated() -> None:
    document = {
        "results": [
            {"id": "nyc", "latency_ms": "25.5", "region": "us-east"},
            {"id": "nyc", "latency_ms": 99},
            {"node": "sea", "pingMs": 190},
            {"name": "lhr", "lossPct": 35, "latency": 40},
            {"id": "fra", "error": "tls handshake failed"},
            {"nothing": "useful", "nested": {"regionCode": "syd"}},
        ]
    }

    nodes = _by_id(RawOutputParser().parse(json.dumps(document), "", CHECKED_AT))

    assert set(nodes) == {"nyc", "sea", "lhr", "fra", "syd"}
    assert nodes["nyc"].latency_ms == 25.5
    assert nodes["nyc"].status == "healthy"
    assert nodes["nyc"].region == "us-east"
    assert nodes["sea"].status == "degraded"
    assert nodes["lhr"].status == "degraded"
    assert nodes["lhr"].loss_pct == 35
    assert nodes["fra"].status == "down"
    assert nodes["fra"].message == "tls handshake failed"
    assert nodes["syd"].status == "unknown"
    assert nodes["syd"].region == "syd"


def test_json_lines_with_interleaved_text() -> None:
    stdout = "\n".join([
        "probing...",
        json.dumps({"id": "nyc", "latencyMs": 12}),
        "not json {",
        json.dumps({"id": "sea", "latencyMs": 14}),
    ])

    nodes = RawOutputParser().parse(stdout, "", CHECKED_AT)

    assert [node.id for node in nodes] == ["nyc", "sea"]


def test_unstructured_output_yields_nothing() -> None:
    assert RawOutputParser().parse("", "", CHECKED_AT) == []
    assert RawOutputParser().parse("plain text only", "", CHECKED_AT) == []
    assert RawOutputParser().parse("[1, 2, true]", "", CHECKED_AT) == []


def test_booleans_are_not_latencies() -> None:
    nodes = RawOutputParser().parse(json.dumps([{"latency": True}, {"latency": "fast"}]), "", CHECKED_AT)
    assert nodes == []


def test_decode_output_shapes() -> None:
    assert decode_output("  ") is None
    assert decode_output('{"a": 1}') == {"a": 1}
    assert decode_output('{"a": 1}\n{"b": 2}') == [{"a": 1}, {"b": 2}]
    assert decode_output("hello") == {"text": "hello"}


def test_flatten_objects_visits_every_depth() -> None:
    document = [{"a": {"b": [{"c": 1}]}}, [{"d": 2}]]
    flattened = flatten_objects(document)
    assert {"c": 1} in flattened
    assert {"d": 2} in flattened
    assert len(flattened) == 4


def test_classify_structured_status_thresholds() -> None:
    assert classify_structured_status(10, None, "boom") == "down"
    assert classify_structured_status(None, 0, None) == "unknown"
    assert classify_structured_status(10, 20, None) == "degraded"
    assert classify_structured_status(180, 0, None) == "degraded"
    assert classify_structured_status(179.9, 19.9, None) == "healthy"


def test_numbers_beyond_float_range_are_not_values() -> None:
    huge = "1" + "0" * 400
    stdout = '[{"id": "nyc", "latencyMs": ' + huge + '}, {"id": "sea", "latency": 12, "lossPct": 1e400}]'

    nodes = _by_id(RawOutputParser().parse(stdout, "", CHECKED_AT))

    assert set(nodes) == {"nyc", "sea"}
    assert nodes["nyc"].latency_ms is None
    assert nodes["nyc"].status == "unknown"
    assert nodes["sea"].loss_pct is None
    assert nodes["sea"].status == "healthy"
    assert to_number(10 ** 400) is None
    assert to_number("-1e400") is None
    assert to_number("nan") is None


def test_loss_pct_is_a_whole_percentage() -> None:
    nodes = RawOutputParser().parse(json.dumps({"id": "lhr", "latency": 40, "lossPct": 35.5}), "", CHECKED_AT)

    assert nodes[0].loss_pct == 36
    assert isinstance(nodes[0].loss_pct, int)
    assert nodes[0].status == "degraded"
    assert to_loss_pct(150) == 100
    assert to_loss_pct(-3) == 0
    assert to_loss_pct(19.4) == 19
    assert to_loss_pct(None) is None


def test_deeply_nested_output_decodes_as_text() -> None:
    stdout = "[" * 100_000 + "]" * 100_000

    assert decode_output(stdout) == {"text": stdout}
    assert RawOutputParser().parse(stdout, "", CHECKED_AT) == []


def test_flatten_objects_handles_deep_nesting() -> None:
    document = {"id": "leaf", "latencyMs": 3}
    for _ in range(5000):
        document = {"child": document}

    flattened = flatten_objects(document)

    assert len(flattened) == 5001
    assert flattened[-1] == {"id": "leaf", "latencyMs": 3}
    nodes = RawOutputParser().pick_nodes(document, CHECKED_AT)
    assert [node.id for node in nodes] == ["leaf"]
