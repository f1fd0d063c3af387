"""The statsd text protocol and the UDP sampler that receives it."""

from __future__ import annotations

import functools
import re
import select
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Pattern, Tuple, Union

from .log import die, log_splunk, log_splunk_errno
from .metric import MetricType, Modifier, find_metric
from .sampler import Sampler, SamplerType
from .utils import unpack_config

MAX_PACKET_SIZE = 8192
_POLL_INTERVAL = 0.25

_STRTOD = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")

_TYPE_CODES = {
    "g": MetricType.GAUGE,
    "C": MetricType.COUNTER,
    "c": MetricType.METER,
    "h": MetricType.HISTO,
}

_TYPE_NAMES = {
    MetricType.GAUGE: "gauge",
    MetricType.METER: "meter",
    MetricType.COUNTER: "counter",
    MetricType.HISTO: "histo",
    MetricType.TIMER: "timer",
    MetricType.TELEM: "telem",
}


class ParseError(ValueError):
    """Raised for a line that is not a valid metric."""


@dataclass(frozen=True)
class StatsdMessage:
    """One parsed ``key:value|type[|@rate]`` line."""

    key: str
    type: MetricType
    value: float
    sample_freq: float = 1.0
    modifiers: Modifier = Modifier.NONE


def _is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


def parse_value(text: str) -> Tuple[float, Modifier, str]:
    """Parse a number at the start of ``text``.

    Returns the value, the modifiers implied by a leading sign and the
    unparsed rest of the text.
    """
    pos = 0
    negative = False
    modifiers = Modifier.NONE
    value = 0.0

    if text[:1] == "-":
        pos = 1
        negative = True
        modifiers |= Modifier.RELATIVE_VALUE
    elif text[:1] == "+":
        pos = 1
        modifiers |= Modifier.RELATIVE_VALUE

    while pos < len(text) and _is_digit(text[pos]):
        value = value * 10.0 + (ord(text[pos]) - 48)
        pos += 1

    if text[pos : pos + 1] == ".":
        pos += 1
        frac = 0.0
        n = 0
        while pos < len(text) and _is_digit(text[pos]):
            frac = frac * 10.0 + (ord(text[pos]) - 48)
            pos += 1
            n += 1
        value += frac / (10.0**n)

    if negative:
        value = -value

    if text[pos : pos + 1] == "e":
        match = _STRTOD.match(text)
        if match:
            value = float(match.group())
            pos = match.end()
        else:
            value = 0.0
            pos = 0

    return value, modifiers, text[pos:]


def _as_text(line: Union[str, bytes, bytearray, memoryview]) -> str:
    if isinstance(line, str):
        text = line
    else:
        text = bytes(line).decode("utf-8", "replace")
    nul = text.find("\0")
    return text if nul < 0 else text[:nul]


def _parse_common(text: str) -> Tuple[str, MetricType, float, Modifier, float, str]:
    colon = text.find(":")
    space = text.find(" ")
    if colon < 0:
        raise ParseError("missing ':' after the key")
    if 0 <= space < colon:
        raise ParseError("the key contains a space")

    key = text[:colon]
    if key.endswith("."):
        raise ParseError("the key ends with '.'")

    value, modifiers, rest = parse_value(text[colon + 1 :])
    if not rest.startswith("|"):
        raise ParseError("missing '|' after the value")
    rest = rest[1:]

    code = rest[:1]
    if code == "m":
        if rest[1:2] == "s":
            metric_type = MetricType.TIMER
            rest = rest[2:]
        else:
            metric_type = MetricType.TELEM
            rest = rest[1:]
    elif code in _TYPE_CODES:
        metric_type = _TYPE_CODES[code]
        rest = rest[1:]
    else:
        raise ParseError(f"unknown metric type {code!r}")

    sample_freq = 1.0
    if rest.startswith("|@"):
        rate, _, rest = parse_value(rest[2:])
        if rate <= 0.0 or rate > 1.0:
            raise ParseError("the sample rate must be in (0, 1]")
        sample_freq = 1.0 / rate

    return key, metric_type, value, modifiers, sample_freq, rest


def parse_message(line: Union[str, bytes]) -> StatsdMessage:
    """Parse one statsd line; raise :class:`ParseError` if it is malformed."""
    key, metric_type, value, modifiers, sample_freq, rest = _parse_common(_as_text(line))
    if rest not in ("", "\n"):
        raise ParseError(f"trailing characters {rest!r}")
    return StatsdMessage(key, metric_type, value, sample_freq, modifiers)


def _split_lines(data: Union[str, bytes, bytearray, memoryview]) -> List:
    if isinstance(data, str):
        lines = data.split("\n")
        empty: Any = ""
    else:
        lines = bytes(data).split(b"\n")
        empty = b""
    if lines[-1] == empty:
        lines.pop()
    return lines


@functools.lru_cache(maxsize=None)
def _log_filter(pattern: str, label: str) -> Optional[Pattern]:
    try:
        return re.compile(pattern)
    except re.error:
        log_splunk(f"sampler={label} event=metchk badregex={pattern}")
        return None


def _log_rejected(label: str, line: Any, now: int) -> None:
    log_splunk(f"sampler={label} event=metchk bad_metric={_as_text(line)} stamp={now}")


def _log_accepted(
    server: Any, label: str, key: str, value: float, metric_type: MetricType, now: int
) -> None:
    pattern = getattr(server, "log_all_regex", None)
    if pattern is not None:
        regex = _log_filter(pattern, label)
        if regex is not None and regex.search(key) is None:
            return
    kind = _TYPE_NAMES.get(metric_type, "unknown")
    log_splunk(
        f"sampler={label} event=metchk metric={key} value={value:.1f} type={kind} stamp={now}"
    )


def parse_packet(server: Any, data: Union[str, bytes]) -> int:
    """Record every valid line of a packet; return how many were accepted."""
    log_all = getattr(server, "log_all_metrics", 0) > 0
    now = int(time.time()) if log_all else 0
    accepted = 0

    for line in _split_lines(data):
        try:
            msg = parse_message(line)
        except ParseError:
            server.internal_stats.increment("errors")
            log_splunk("sampler=statsd event=packet_drop")
            if log_all:
                _log_rejected("statsd", line, now)
            continue

        server.internal_stats.increment("metrics")
        accepted += 1
        metric = find_metric(server, msg.key, msg.type)
        if metric is None:
            continue
        metric.record(msg.value, msg.sample_freq, msg.modifiers)
        if log_all:
            _log_accepted(server, "statsd", msg.key, msg.value, msg.type, now)

    return accepted


class StatsdSampler(Sampler):
    """Receives statsd packets on a UDP port with a pool of worker threads."""

    _sampler_type = SamplerType.STATSD
    _label = "statsd"

    def __init__(
        self,
        server: Any,
        address: Optional[str],
        port: int,
        workers: int = 4,
        multimsg: int = 1,
        multisock: bool = False,
    ) -> None:
        if workers < 0 or multimsg < 0:
            raise ValueError("workers and multimsg must not be negative")
        super().__init__(server, self._sampler_type, address, port)
        self.worker_count = workers
        self.mmsg_count = multimsg
        self.multisock = bool(multisock) and hasattr(socket, "SO_REUSEPORT")
        self.workers: List[threading.Thread] = []
        self._worker_socks: List[socket.socket] = []
        self._socks_lock = threading.Lock()
        self._stopping = threading.Event()
        if not self.multisock:
            self.in_sock = self.open_socket(False)

    @classmethod
    def from_config(cls, server: Any, settings: Any) -> "StatsdSampler":
        """Build the sampler from its JSON settings and start its workers."""
        conf = unpack_config(
            settings,
            {"address": str, "port": int},
            {"workers": int, "multimsg": int, "multisock": bool},
        )
        sampler = cls(
            server,
            conf["address"],
            conf["port"],
            workers=conf.get("workers", 4),
            multimsg=conf.get("multimsg", 1),
            multisock=conf.get("multisock", False),
        )
        sampler.start()
        return sampler

    def _parse(self, data: bytes) -> None:
        parse_packet(self.server, data)

    def _drain(self, sock: socket.socket, limit: int) -> List[bytes]:
        extra: List[bytes] = []
        while len(extra) < limit:
            try:
                ready, _, _ = select.select([sock], [], [], 0)
                if not ready:
                    break
                extra.append(sock.recv(MAX_PACKET_SIZE - 1))
            except OSError:
                break
        return extra

    def _worker(self) -> None:
        sock = self.in_sock
        if sock is None:
            sock = self.open_socket(True)
            with self._socks_lock:
                self._worker_socks.append(sock)
        sock.settimeout(_POLL_INTERVAL)

        label = self._label
        batched = self.mmsg_count > 1
        syscall = "recvmmsg" if batched else "recvmsg"
        log_splunk(
            f"sampler={label} event=worker_online syscall={syscall} socket={sock.fileno()}"
        )

        reporter = "0.0.0.0"
        while not self._stopping.is_set():
            try:
                data, peer = sock.recvfrom(MAX_PACKET_SIZE - 1)
            except socket.timeout:
                continue
            except InterruptedError:
                continue
            except OSError as err:
                if self._stopping.is_set():
                    break
                if batched:
                    log_splunk_errno(f"sampler={label} event=failed_read", err)
                else:
                    log_splunk_errno(f"sampler={label} event=failed_read from={reporter}", err)
                self.server.internal_stats.increment("errors")
                continue

            reporter = peer[0]
            batch = [data]
            if batched:
                batch.extend(self._drain(sock, self.mmsg_count - 1))
            self.count_packets(len(batch))
            for packet in batch:
                self._parse(packet)

    def start(self) -> None:
        """Start the worker threads."""
        self._stopping.clear()
        for i in range(self.worker_count):
            thread = threading.Thread(
                target=self._worker, name=f"{self._label}-worker-{i}", daemon=True
            )
            try:
                thread.start()
            except RuntimeError:
                die("failed to start sampler thread")
            self.workers.append(thread)

    def shutdown(self) -> None:
        """Stop the workers and close every socket."""
        self._stopping.set()
        for thread in self.workers:
            if thread is not threading.current_thread():
                thread.join()
        self.workers.clear()
        with self._socks_lock:
            socks, self._worker_socks = self._worker_socks, []
        for sock in socks:
            sock.close()
        super().shutdown()