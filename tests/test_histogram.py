import random
import threading

from brubeck.histogram import PERCENTILES, Histogram, HistogramSample

HISTO_CAP = 65535


def test_sampling_under_concurrency():
    histo = Histogram()
    lock = threading.Lock()
    pushes = []

    def worker(seed):
        rng = random.Random(seed)
        done = 0
        for _ in range(2000):
            if rng.random() < 0.5:
                with lock:
                    histo.sample()
            else:
                with lock:
                    histo.push(0.42, 1.0)
                done += 1
        with lock:
            pushes.append(done)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert histo.count == sum(pushes)
    assert len(histo) == sum(pushes)
    assert histo.sample().max == 0.42


def test_single_element():
    h = Histogram()
    h.push(42.0, 1.0)
    assert len(h) == 1
    assert h.count == 1

    sample = h.sample()
    assert sample.min == 42.0
    assert sample.max == 42.0
    assert sample.percentiles[75] == 42.0
    assert sample.percentiles[99] == 42.0
    assert sample.mean == 42.0
    assert sample.count == 1
    assert sample.sum == 42.0


def test_large_range():
    h = Histogram()
    h.push(1.3e12, 1.0)
    h.push(42.0, 1.0)
    h.push(42.0, 1.0)

    sample = h.sample()
    assert sample.min == 42.0
    assert sample.max == 1.3e12
    assert sample.median == 42.0


def test_multisamples():
    h = Histogram()
    for _ in range(8):
        for j in range(128):
            h.push(float(j + 1), 1.0)

        assert len(h) == 128
        assert h.count == 128

        sample = h.sample()
        assert sample.min == 1.0
        assert sample.max == 128.0
        assert sample.percentiles[99] == 127.0
        assert sample.percentiles[75] == 96.0
        assert sample.mean == 64.5
        assert sample.count == 128
        assert sample.sum == 8256.0
        h.empty()


def test_with_sample_rate():
    h = Histogram()
    for j in range(128):
        h.push(float(j + 1), 10.0)

    assert len(h) == 128
    assert h.count == 1280

    sample = h.sample()
    assert sample.min == 1.0
    assert sample.max == 128.0
    assert sample.percentiles[99] == 127.0
    assert sample.mean == 64.5
    assert sample.count == 1280
    assert sample.sum == 8256.0


def test_capacity():
    h = Histogram()
    for j in range(HISTO_CAP + 500):
        h.push(float(j + 1), 1.0)

    assert len(h) == HISTO_CAP
    assert h.count == HISTO_CAP + 500

    sample = h.sample()
    assert sample.min == 1.0
    assert sample.max == float(HISTO_CAP)
    assert sample.count == HISTO_CAP + 500

    h.empty()
    for j in range(HISTO_CAP + 500):
        h.push(float(j + 1), 10.0)

    assert len(h) == HISTO_CAP
    assert h.count == (HISTO_CAP + 500) * 10

    sample = h.sample()
    assert sample.min == 1.0
    assert sample.max == float(HISTO_CAP)
    assert sample.count == (HISTO_CAP + 500) * 10


def test_empty_histogram_samples_to_zero():
    sample = Histogram().sample()
    assert sample == HistogramSample()
    assert sample.count == 0.0
    assert all(sample.percentiles[p] == 0.0 for p in PERCENTILES)


def test_sample_keeps_values_and_sorts_them():
    h = Histogram()
    for v in (3.0, 1.0, 2.0):
        h.push(v)
    h.sample()
    assert h.values == [1.0, 2.0, 3.0]
    assert h.count == 3


def test_empty_resets():
    h = Histogram()
    h.push(5.0, 2.0)
    h.empty()
    assert len(h) == 0
    assert h.count == 0


def test_percentiles_are_ordered():
    h = Histogram()
    rng = random.Random(7)
    for _ in range(500):
        h.push(rng.uniform(-100, 100))
    sample = h.sample()
    ordered = [sample.percentiles[p] for p in PERCENTILES]
    assert ordered == sorted(ordered)
    assert sample.min <= ordered[0] and ordered[-1] <= sample.max
    assert sample.percentiles[25] <= sample.median <= sample.percentiles[75]


def test_fractional_sample_frequency_truncates_count():
    h = Histogram()
    h.push(1.0, 2.5)
    h.push(1.0, 2.5)
    assert h.count == 4