"""Statsd variant whose lines carry their own timestamp: ``key:value|type[|@rate][|Tstamp]``."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

from .log import log_splunk
from .metric import MetricType, Modifier, find_metric
from .sampler import SamplerType
from .statsd import (
    ParseError,
    StatsdSampler,
    _as_text,
    _log_accepted,
    _log_rejected,
    _parse_common,
    _split_lines,
    parse_value,
)
from .utils import unpack_config

_U32 = 0xFFFFFFFF


@dataclass(frozen=True)
class RwidMessage:
    """One parsed line, with the timestamp it was sent for (0 when absent)."""

    key: str
    type: MetricType
    value: float
    sample_freq: float = 1.0
    modifiers: Modifier = Modifier.NONE
    timestamp: int = 0


def parse_rwid_message(line: Union[str, bytes]) -> RwidMessage:
    """Parse one line; raise :class:`ParseError` if it is malformed."""
    key, metric_type, value, modifiers, sample_freq, rest = _parse_common(_as_text(line))

    timestamp = 0
    if rest.startswith("|T"):
        stamp, _, rest = parse_value(rest[2:])
        if stamp < 0.0:
            raise ParseError("the timestamp must not be negative")
        if not math.isfinite(stamp):
            raise ParseError("the timestamp must be finite")
        timestamp = int(math.floor(stamp)) & _U32

    if rest not in ("", "\n"):
        raise ParseError(f"trailing characters {rest!r}")
    return RwidMessage(key, metric_type, value, sample_freq, modifiers, timestamp)


def rwid_key(key: str, timestamp: int) -> str:
    """The table key for a metric at a given timestamp: ``key|timestamp|``."""
    stamp = timestamp & _U32
    if stamp >= 1 << 31:
        stamp -= 1 << 32
    return f"{key}|{stamp}|"


def parse_rwid_packet(server: Any, data: Union[str, bytes]) -> int:
    """Record every valid line of a packet; return how many were accepted."""
    log_all = getattr(server, "log_all_metrics", 0) > 0
    now = int(time.time()) if log_all else 0
    accepted = 0

    for line in _split_lines(data):
        try:
            msg = parse_rwid_message(line)
        except ParseError:
            server.internal_stats.increment("errors")
            log_splunk("sampler=rwid event=packet_drop")
            if log_all:
                _log_rejected("rwid", line, now)
            continue

        server.internal_stats.increment("metrics")
        accepted += 1
        metric = find_metric(server, rwid_key(msg.key, msg.timestamp), msg.type)
        if metric is None:
            continue
        metric.timestamp = msg.timestamp
        metric.record(msg.value, msg.sample_freq, msg.modifiers)
        if log_all:
            _log_accepted(server, "rwid", msg.key, msg.value, msg.type, now)

    return accepted


class RwidSampler(StatsdSampler):
    """Receives timestamped statsd packets on a UDP port with a pool of workers."""

    _sampler_type = SamplerType.RWID
    _label = "rwid"

    def __init__(
        self,
        server: Any,
        address: Optional[str],
        port: int,
        workers: int = 4,
        multimsg: int = 1,
        multisock: bool = False,
    ) -> None:
        super().__init__(server, address, port, workers, multimsg, multisock)

    @classmethod
    def from_config(cls, server: Any, settings: Any) -> "RwidSampler":
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
        parse_rwid_packet(self.server, data)

    def start(self) -> None:
        """Start the worker threads."""
        super().start()

    def shutdown(self) -> None:
        """Stop the workers and close every socket."""
        super().shutdown()