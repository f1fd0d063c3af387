"""Sends one HMAC-signed metric to a secure statsd endpoint."""

from __future__ import annotations

import hashlib
import hmac
import os
import socket
import struct
import sys
import time
from typing import Optional, Sequence, Union

from .balancer import _atoi

SHA_SIZE = 32
BUFFER_SIZE = 1024
DEFAULT_HMAC_KEY = "secret"


def build_secure_packet(
    key: Union[str, bytes], metric: Union[str, bytes], timestamp: int, nonce: int
) -> bytes:
    """``hmac-sha256 | timestamp (u64) | nonce (u32) | metric``, the MAC covering the rest."""
    key_bytes = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    metric_bytes = metric.encode("utf-8") if isinstance(metric, str) else bytes(metric)
    if SHA_SIZE + 12 + len(metric_bytes) > BUFFER_SIZE:
        raise ValueError("metric too long for one packet")
    body = struct.pack("<QI", timestamp & 0xFFFFFFFFFFFFFFFF, nonce & 0xFFFFFFFF) + metric_bytes
    return hmac.new(key_bytes, body, hashlib.sha256).digest() + body


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Send ``METRIC`` to ``IP PORT`` as a signed packet."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 3:
        print("Usage: 'udp-stress IP PORT METRIC'", file=sys.stderr)
        return -1
    try:
        host = socket.inet_ntoa(socket.inet_aton(args[0]))
    except OSError:
        print("inet_aton() failed", file=sys.stderr)
        return 1
    port = _atoi(args[1]) & 0xFFFF
    metric = args[2]

    nonce = int.from_bytes(os.urandom(4), "little")
    timestamp = int(time.time()) - 2  # pretend the packet was delayed
    try:
        packet = build_secure_packet(DEFAULT_HMAC_KEY, metric, timestamp, nonce)
    except ValueError as err:
        print(err, file=sys.stderr)
        return 1

    print(
        f"HMAC: {packet[:SHA_SIZE].hex()}\nTIMESTAMP: {timestamp}\n"
        f"NONCE: {nonce:08x}\nMETRIC: {metric}",
        file=sys.stderr,
    )

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.sendto(packet, (host, port))
        except OSError as err:
            print(f"sendto: {err}", file=sys.stderr)
            return 1
    return 0