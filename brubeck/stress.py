"""Floods a statsd endpoint with random metrics and reports the send rate."""

from __future__ import annotations

import random
import socket
import sys
import threading
import time
from typing import Optional, Sequence

from .balancer import _atoi

MAX_THREADS = 4
_TYPES = "gcCh"


def build_packet(rng: random.Random) -> bytes:
    """One random statsd line among 128 keys of four types."""
    stat = rng.randrange(128)
    value = rng.randrange(1024)
    kind = _TYPES[(stat * 0x37) % 4]
    return f"github.test.packet.{stat}:{value}|{kind}".encode("ascii")


class _Counter:
    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def add(self) -> None:
        with self._lock:
            self._value += 1

    def swap(self) -> int:
        with self._lock:
            value, self._value = self._value, 0
            return value


def _report(counter: _Counter) -> None:
    while True:
        print(f"{counter.swap()} metrics/s", flush=True)
        time.sleep(1)
        print("\033[F\033[J", end="", flush=True)


def _spam(target, counter: _Counter) -> None:
    rng = random.Random()
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        while True:
            try:
                sock.sendto(build_packet(rng), target)
            except OSError:
                print("C ==> DROPPED")
            counter.add()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Send random metrics to ``IP PORT`` from several threads, forever."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 2:
        print("Usage: 'udp-stress IP PORT'", file=sys.stderr)
        return -1
    try:
        host = socket.inet_ntoa(socket.inet_aton(args[0]))
    except OSError:
        print("inet_aton() failed", file=sys.stderr)
        return 1
    target = (host, _atoi(args[1]) & 0xFFFF)

    counter = _Counter()
    threading.Thread(target=_report, args=(counter,), daemon=True).start()
    threads = [
        threading.Thread(target=_spam, args=(target, counter), daemon=True)
        for _ in range(MAX_THREADS)
    ]
    for thread in threads:
        thread.start()
    try:
        for thread in threads:
            thread.join()
    except KeyboardInterrupt:
        return 0
    return 0