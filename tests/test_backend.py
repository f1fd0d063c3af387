import threading
import time

import pytest

from brubeck.backend import Backend, BackendType, expire_metric
from brubeck.metric import Expire, Metric, MetricType


class RecordingBackend(Backend):
    def __init__(self, backend_type=BackendType.CARBON, connected=True, expire=0, sample_freq=1):
        super().__init__(None, backend_type, sample_freq, expire)
        self.connected = connected
        self.samples = []
        self.flushes = 0
        self.flushed = threading.Event()

    def connect(self):
        return self.connected

    def is_connected(self):
        return self.connected

    def sample(self, key, value, timestamp):
        self.samples.append((key, value, timestamp))

    def flush(self):
        self.flushes += 1
        self.flushed.set()


@pytest.mark.parametrize(
    "backend_type, name",
    [
        (BackendType.CARBON, "carbon"),
        (BackendType.RWI_CARBON, "rwi_carbon"),
        (BackendType.DATADOG, "datadog"),
    ],
)
def test_backend_names(backend_type, name):
    assert RecordingBackend(backend_type).name() == name


def test_register_metric_puts_newest_first():
    backend = RecordingBackend()
    first = Metric("first", MetricType.GAUGE)
    second = Metric("second", MetricType.GAUGE)
    backend.register_metric(first)
    backend.register_metric(second)
    assert backend.queue == (second, first)


def test_tick_samples_active_metrics_and_flushes():
    backend = RecordingBackend()
    gauge = Metric("g", MetricType.GAUGE)
    gauge.record(4.0)
    gauge.timestamp = 99
    backend.register_metric(gauge)

    before = int(time.time())
    assert backend.tick() is True
    after = int(time.time())

    assert backend.samples == [("g", 4.0, 99)]
    assert backend.flushes == 1
    assert before <= backend.tick_time <= after


def test_tick_without_connection_samples_nothing():
    backend = RecordingBackend(connected=False)
    gauge = Metric("g", MetricType.GAUGE)
    gauge.record(1.0)
    backend.register_metric(gauge)
    assert backend.tick() is False
    assert backend.samples == []
    assert backend.flushes == 0


def test_expiring_backend_deactivates_idle_metrics():
    backend = RecordingBackend(expire=1)
    gauge = Metric("g", MetricType.GAUGE)
    gauge.record(3.0)
    backend.register_metric(gauge)

    backend.tick()
    assert backend.samples == [("g", 3.0, 0)]
    assert gauge.expire == Expire.INACTIVE
    assert gauge.value == 0.0

    backend.tick()
    assert len(backend.samples) == 1

    gauge.record(5.0)
    backend.tick()
    assert backend.samples[-1] == ("g", 5.0, 0)


def test_non_expiring_backend_keeps_metrics_active():
    backend = RecordingBackend(expire=0)
    gauge = Metric("g", MetricType.GAUGE)
    gauge.record(3.0)
    backend.register_metric(gauge)
    backend.tick()
    backend.tick()
    assert backend.samples == [("g", 3.0, 0), ("g", 3.0, 0)]
    assert gauge.expire == Expire.ACTIVE


def test_expire_metric_empties_histograms():
    histo = Metric("h", MetricType.HISTO)
    histo.record(1.0)
    histo.record(2.0)
    expire_metric(histo)
    assert histo.expire == Expire.INACTIVE
    assert len(histo.histogram) == 0
    assert histo.histogram.count == 0


def test_expire_metric_leaves_never_and_inactive_alone():
    never = Metric("n", MetricType.GAUGE)
    never.record(7.0)
    never.expire = Expire.NEVER
    expire_metric(never)
    assert never.expire == Expire.NEVER
    assert never.value == 7.0

    inactive = Metric("i", MetricType.GAUGE)
    inactive.record(7.0)
    inactive.expire = Expire.INACTIVE
    expire_metric(inactive)
    assert inactive.expire == Expire.INACTIVE
    assert inactive.value == 7.0


def test_run_threaded_ticks_until_stopped():
    backend = RecordingBackend(sample_freq=0.01)
    gauge = Metric("g", MetricType.GAUGE)
    gauge.record(1.0)
    backend.register_metric(gauge)

    backend.run_threaded()
    try:
        assert backend.flushed.wait(5.0) is True
    finally:
        backend.stop()

    flushes = backend.flushes
    time.sleep(0.05)
    assert backend.flushes == flushes
    assert ("g", 1.0, 0) in backend.samples