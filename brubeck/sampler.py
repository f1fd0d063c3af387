"""Base class for the UDP listeners that feed metrics into the server."""

from __future__ import annotations

import socket
import threading
from enum import IntEnum
from typing import Any, Optional

from .log import FatalError, die, log_splunk
from .utils import (
    enlarge_receive_buffer,
    resolve_inet_address,
    set_reuse,
    set_reuse_port,
)

_NAMES = {0: "statsd", 1: "statsd-secure"}


class SamplerType(IntEnum):
    """Kinds of sampler."""

    STATSD = 0
    STATSD_SECURE = 1
    RWID = 2


class Sampler:
    """A UDP endpoint with a packet-rate counter."""

    def __init__(
        self, server: Any, sampler_type: SamplerType, address: Optional[str], port: int
    ) -> None:
        self.server = server
        self.type = SamplerType(sampler_type)
        self.port = port
        self.addr = resolve_inet_address(address, port)
        self.in_sock: Optional[socket.socket] = None
        self.inflow = 0
        self.current_flow = 0
        self._flow_lock = threading.Lock()
        label = self.name() or "(null)"
        log_splunk(f"sampler={label} event=load_udp addr=0.0.0.0:{port}")

    def name(self) -> Optional[str]:
        """Short name of the sampler kind, or None when it has none."""
        return _NAMES.get(int(self.type))

    def open_socket(self, multisock: bool) -> socket.socket:
        """Open a UDP socket bound to the sampler's address."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            enlarge_receive_buffer(sock)
            set_reuse(sock, 1)
            if multisock:
                set_reuse_port(sock, 1)
            try:
                sock.bind(self.addr)
            except (OSError, OverflowError):
                die("failed to bind socket")
        except (FatalError, OSError):
            sock.close()
            raise
        return sock

    def count_packets(self, n: int = 1) -> None:
        """Add ``n`` received packets to the running tally."""
        with self._flow_lock:
            self.inflow += n

    def update_flow(self) -> None:
        """Publish the tally as the current flow and start a new one."""
        with self._flow_lock:
            self.current_flow = self.inflow
            self.inflow = 0

    def shutdown(self) -> None:
        """Close the listening socket."""
        sock, self.in_sock = self.in_sock, None
        if sock is not None:
            sock.close()