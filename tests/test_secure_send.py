import socket

import pytest

from brubeck.metric import InternalStats
from brubeck.secure_send import DEFAULT_HMAC_KEY, build_secure_packet, main
from brubeck.statsd_secure import SecureStatsdSampler
from brubeck.store import MetricTable


class _Server:
    def __init__(self):
        self.internal_stats = InternalStats()
        self.metrics = MetricTable(64)
        self.backends = []
        self.at_capacity = False


@pytest.fixture
def server():
    return _Server()


@pytest.fixture
def sampler(server):
    smp = SecureStatsdSampler(server, "127.0.0.1", 0, DEFAULT_HMAC_KEY, 10, 100)
    yield smp
    smp.shutdown()


def test_packet_layout():
    packet = build_secure_packet("secret", "foo:1|c", 1000, 7)
    assert len(packet) == 32 + 12 + len(b"foo:1|c")
    assert packet[44:] == b"foo:1|c"


def test_packet_is_accepted_once(server, sampler):
    packet = build_secure_packet(DEFAULT_HMAC_KEY, "foo:1|c", 1000, 7)
    assert sampler.handle_packet(packet, now=1000) is True
    assert server.metrics.find("foo").value == 1.0
    assert sampler.handle_packet(packet, now=1000) is False
    assert server.internal_stats.live["secure.replayed"] == 1


def test_wrong_key_fails_authentication(server, sampler):
    packet = build_secure_packet("token", "foo:1|c", 1000, 7)
    assert sampler.authenticate(packet) is False
    assert server.internal_stats.live["secure.failed"] == 1


def test_metric_too_long_is_rejected():
    with pytest.raises(ValueError):
        build_secure_packet("secret", "x" * 1024, 0, 0)


def test_main_sends_signed_packet(sampler):
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as receiver:
        receiver.bind(("127.0.0.1", 0))
        receiver.settimeout(5)
        port = receiver.getsockname()[1]
        assert main(["127.0.0.1", str(port), "bar:2|g"]) == 0
        data = receiver.recv(1024)
    assert data[44:] == b"bar:2|g"
    assert sampler.authenticate(data) is True


def test_main_needs_three_arguments(capsys):
    assert main(["127.0.0.1", "8126"]) == -1
    assert "Usage:" in capsys.readouterr().err


def test_main_rejects_bad_ip(capsys):
    assert main(["bogus", "8126", "foo:1|c"]) == 1
    assert "inet_aton() failed" in capsys.readouterr().err