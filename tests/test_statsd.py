import socket
import time

import pytest

from brubeck.log import open_log
from brubeck.metric import InternalStats, MetricType, Modifier
from brubeck.statsd import (
    ParseError,
    StatsdMessage,
    StatsdSampler,
    parse_message,
    parse_packet,
    parse_value,
)
from brubeck.store import MetricTable
from brubeck.utils import ConfigError

REL = Modifier.RELATIVE_VALUE


class FakeServer:
    def __init__(self):
        self.name = "brubeck"
        self.metrics = MetricTable(1024)
        self.backends = []
        self.internal_stats = InternalStats()
        self.at_capacity = False
        self.log_all_metrics = 0
        self.log_all_regex = None


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.mark.parametrize(
    "text, value, sample, modifiers",
    [
        ("github.auth.fingerprint.sha1:1|c", 1, 1.0, 0),
        ("github.auth.fingerprint.sha1:1|c|@0.1", 1, 10.0, 0),
        ("github.auth.fingerprint.sha1:1|g", 1, 1.0, 0),
        ("lol:1|ms", 1, 1.0, 0),
        ("this.is.sparta:199812|C", 199812, 1.0, 0),
        ("this.is.sparta:0012|h", 12, 1.0, 0),
        ("this.is.sparta:23.23|g", 23.23, 1.0, 0),
        ("this.is.sparta:0.232030|g", 0.23203, 1.0, 0),
        ("this.are.some.floats:1234567.89|g", 1234567.89, 1.0, 0),
        ("this.are.some.floats:1234567.89|g|@0.025", 1234567.89, 40.0, 0),
        ("this.are.some.floats:1234567.89|g|@0.25", 1234567.89, 4.0, 0),
        ("this.are.some.floats:1234567.89|g|@0.01", 1234567.89, 100.0, 0),
        ("this.are.some.floats:1234567.89|g|@000.0100", 1234567.89, 100.0, 0),
        ("this.are.some.floats:1234567.89|g|@1.0", 1234567.89, 1.0, 0),
        ("this.are.some.floats:1234567.89|g|@1", 1234567.89, 1.0, 0),
        ("this.are.some.floats:1234567.89|g|@1.", 1234567.89, 1.0, 0),
        ("this.are.some.floats:|g", 0.0, 1.0, 0),
        ("this.are.some.floats:1234567.89|g", 1234567.89, 1.0, 0),
        ("gauge.increment:+1|g", 1, 1.0, REL),
        ("gauge.decrement:-1|g", -1, 1.0, REL),
    ],
)
def test_must_parse(text, value, sample, modifiers):
    msg = parse_message(text)
    assert msg.value == value
    assert msg.sample_freq == sample
    assert msg.modifiers == modifiers


@pytest.mark.parametrize(
    "text",
    [
        "this.are.some.floats:12.89.23|g",
        "this.are.some.floats:12.89|a",
        "this.are.some.floats:12.89|msdos",
        "this.are.some.floats:12.89g|g",
        "this.are.some.floats:12.89|",
        "this.are.some.floats:12.89",
        "this.are.some.floats:12.89 |g",
        "this.are.some.floats|g",
        "this.are.some.floats:1.0|g|1.0",
        "this.are.some.floats:1.0|g|0.1",
        "this.are.some.floats:1.0|g|@0.1.1",
        "this.are.some.floats:1.0|g|@0.1@",
        "this.are.some.floats:1.0|g|@0.1125.2",
        "this.are.some.floats:1.0|g|@1.23",
        "this.are.some.floats:1.0|g|@3.0",
        "this.are.some.floats:1.0|g|@-3.0",
        "this.are.some.floats:1.0|g|@-1.0",
        "this.are.some.floats:1.0|g|@-0.23",
        "this.are.some.floats:1.0|g|@0.0",
        "this.are.some.floats:1.0|g|@0",
    ],
)
def test_must_not_parse(text):
    with pytest.raises(ParseError):
        parse_message(text)


@pytest.mark.parametrize(
    "text, kind",
    [
        ("a:1|g", MetricType.GAUGE),
        ("a:1|c", MetricType.METER),
        ("a:1|C", MetricType.COUNTER),
        ("a:1|h", MetricType.HISTO),
        ("a:1|ms", MetricType.TIMER),
        ("a:1|m", MetricType.TELEM),
    ],
)
def test_type_codes(text, kind):
    assert parse_message(text).type is kind


def test_key_and_bytes_input():
    msg = parse_message(b"lol:1|ms\n")
    assert msg == StatsdMessage("lol", MetricType.TIMER, 1.0, 1.0, Modifier.NONE)


def test_key_ending_with_dot_rejected():
    with pytest.raises(ParseError):
        parse_message("bad.:1|g")


def test_space_in_key_rejected():
    with pytest.raises(ParseError):
        parse_message("bad key:1|g")


def test_parse_value_exponent():
    value, mods, rest = parse_value("1e3|g")
    assert value == 1000.0
    assert mods == Modifier.NONE
    assert rest == "|g"


def test_parse_value_sign_sets_relative():
    value, mods, rest = parse_value("-2.5|g")
    assert value == -2.5
    assert mods == Modifier.RELATIVE_VALUE
    assert rest == "|g"


def test_parse_packet_records_metrics():
    server = FakeServer()
    accepted = parse_packet(server, b"a.b:1|c\na.b:2|c\nbad\n")
    assert accepted == 2
    assert server.internal_stats.live["metrics"] == 2
    assert server.internal_stats.live["errors"] == 1
    metric = server.metrics.find("a.b")
    assert metric.type is MetricType.METER
    assert metric.value == 3.0
    assert server.internal_stats.live["unique_keys"] == 1


def test_parse_packet_blank_line_is_error():
    server = FakeServer()
    parse_packet(server, "g:5|g\n\n")
    assert server.metrics.find("g").value == 5.0
    assert server.internal_stats.live["errors"] == 1


def test_parse_packet_at_capacity_skips_new_keys():
    server = FakeServer()
    server.at_capacity = True
    assert parse_packet(server, b"new.key:1|g") == 1
    assert server.metrics.find("new.key") is None


def test_parse_packet_sample_rate_upsamples():
    server = FakeServer()
    parse_packet(server, b"m:2|c|@0.5")
    assert server.metrics.find("m").value == 4.0


def test_log_all_metrics_with_filter(capsys):
    open_log(None)
    server = FakeServer()
    server.log_all_metrics = 1
    server.log_all_regex = "^keep"
    parse_packet(server, b"keep.x:1|c\ndrop.x:1|c\nbroken\n")
    err = capsys.readouterr().err
    assert "metric=keep.x value=1.0 type=meter" in err
    assert "metric=drop.x" not in err
    assert "bad_metric=broken" in err


def test_packet_drop_is_logged(capsys):
    open_log(None)
    parse_packet(FakeServer(), b"nonsense")
    assert "sampler=statsd event=packet_drop" in capsys.readouterr().err


def test_from_config_requires_port():
    with pytest.raises(ConfigError):
        StatsdSampler.from_config(FakeServer(), {"address": "127.0.0.1"})


def test_negative_workers_rejected():
    with pytest.raises(ValueError):
        StatsdSampler(FakeServer(), "127.0.0.1", 0, workers=-1)


@pytest.mark.parametrize("multimsg", [1, 4])
def test_sampler_receives_packets(multimsg):
    server = FakeServer()
    sampler = StatsdSampler(server, "127.0.0.1", 0, workers=2, multimsg=multimsg)
    sampler.start()
    try:
        target = sampler.in_sock.getsockname()
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as out:
            out.sendto(b"udp.gauge:42|g", target)
            out.sendto(b"udp.meter:1|c\nudp.meter:1|c", target)
        assert _wait_for(lambda: server.metrics.find("udp.gauge") is not None)
        assert _wait_for(
            lambda: server.metrics.find("udp.meter") is not None
            and server.metrics.find("udp.meter").value == 2.0
        )
        assert server.metrics.find("udp.gauge").value == 42.0
        assert sampler.inflow == 2
    finally:
        sampler.shutdown()
    assert sampler.in_sock is None
    assert sampler.workers == []