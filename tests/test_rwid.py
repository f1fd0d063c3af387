import socket
import time
from types import SimpleNamespace

import pytest

from brubeck.metric import InternalStats, MetricType, Modifier
from brubeck.rwid import (
    RwidMessage,
    RwidSampler,
    parse_rwid_message,
    parse_rwid_packet,
    rwid_key,
)
from brubeck.statsd import ParseError
from brubeck.store import MetricTable
from brubeck.utils import ConfigError


def make_server():
    return SimpleNamespace(
        metrics=MetricTable(1024),
        backends=[],
        internal_stats=InternalStats(),
        at_capacity=False,
        log_all_metrics=0,
        log_all_regex=None,
        name="brubeck",
    )


def test_plain_line_has_zero_timestamp():
    msg = parse_rwid_message("github.auth.fingerprint.sha1:1|c|@0.1")
    assert msg == RwidMessage(
        "github.auth.fingerprint.sha1", MetricType.METER, 1.0, 10.0, Modifier.NONE, 0
    )


def test_timestamp_is_floored():
    msg = parse_rwid_message("key:5|g|T1500000000.7")
    assert msg.timestamp == 1500000000
    assert msg.type is MetricType.GAUGE
    assert msg.value == 5.0


def test_rate_and_timestamp_together():
    msg = parse_rwid_message("key:5|ms|@0.25|T100")
    assert msg.type is MetricType.TIMER
    assert msg.sample_freq == 4.0
    assert msg.timestamp == 100


def test_trailing_newline_accepted():
    assert parse_rwid_message(b"key:2|h|T100\n").timestamp == 100


def test_relative_gauge():
    msg = parse_rwid_message("gauge.decrement:-1|g")
    assert msg.value == -1
    assert msg.modifiers == Modifier.RELATIVE_VALUE


@pytest.mark.parametrize(
    "line",
    [
        "key:5|g|T-1",
        "key:5|g|T100x",
        "key:5|g|T1|T2",
        "this.are.some.floats:12.89.23|g",
        "this.are.some.floats:12.89|a",
        "this.are.some.floats:12.89 |g",
        "this.are.some.floats|g",
        "this.are.some.floats:1.0|g|@0.0",
        "this.are.some.floats:1.0|g|@3.0",
        "bad.key.:1|g",
    ],
)
def test_malformed_lines(line):
    with pytest.raises(ParseError):
        parse_rwid_message(line)


def test_rwid_key_format():
    assert rwid_key("a.b", 100) == "a.b|100|"
    assert rwid_key("a.b", 0) == "a.b|0|"


def test_packet_records_per_timestamp():
    server = make_server()
    accepted = parse_rwid_packet(server, b"a.b:3|g|T100\na.b:4|g|T200\nc:1|c")
    assert accepted == 3
    first = server.metrics.find(rwid_key("a.b", 100))
    second = server.metrics.find(rwid_key("a.b", 200))
    assert first.value == 3.0 and first.timestamp == 100
    assert second.value == 4.0 and second.timestamp == 200
    assert server.metrics.find(rwid_key("c", 0)).type is MetricType.METER
    assert server.internal_stats.live["metrics"] == 3
    assert server.internal_stats.live["unique_keys"] == 3


def test_packet_counts_errors():
    server = make_server()
    accepted = parse_rwid_packet(server, "good:1|g|T5\nbroken|g\n")
    assert accepted == 1
    assert server.internal_stats.live["errors"] == 1
    assert len(server.metrics) == 1


def test_packet_at_capacity_drops_new_keys():
    server = make_server()
    server.at_capacity = True
    assert parse_rwid_packet(server, "x:1|g|T9") == 1
    assert len(server.metrics) == 0


def test_from_config_requires_port():
    with pytest.raises(ConfigError):
        RwidSampler.from_config(make_server(), {"address": "127.0.0.1"})


def test_sampler_receives_packets():
    server = make_server()
    sampler = RwidSampler(server, "127.0.0.1", 0, workers=1)
    try:
        assert sampler.type is SamplerType_rwid()
        sampler.start()
        target = sampler.in_sock.getsockname()
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as out:
            out.sendto(b"net.rx:7|g|T42", target)
        deadline = time.monotonic() + 5.0
        metric = None
        while metric is None and time.monotonic() < deadline:
            metric = server.metrics.find(rwid_key("net.rx", 42))
            time.sleep(0.01)
        assert metric is not None
        assert metric.value == 7.0
        assert metric.timestamp == 42
    finally:
        sampler.shutdown()
    assert sampler.in_sock is None
    assert sampler.workers == []


def SamplerType_rwid():
    from brubeck.sampler import SamplerType

    return SamplerType.RWID