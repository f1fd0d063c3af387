"""Statsd sampler that accepts only HMAC-signed, fresh, non-replayed packets."""

from __future__ import annotations

import hashlib
import hmac
import socket
import struct
import threading
import time
from typing import Any, Optional, Union

from .bloom import MultiBloom
from .log import die, log_splunk, log_splunk_errno
from .sampler import Sampler, SamplerType
from .statsd import parse_packet
from .utils import unpack_config

SHA_SIZE = 32
MAX_PACKET_SIZE = 1024
MIN_PACKET_SIZE = SHA_SIZE + 12
_POLL_INTERVAL = 0.25


class SecureStatsdSampler(Sampler):
    """Packets are ``hmac(32) | timestamp(u64) | nonce(u32) | statsd lines``."""

    def __init__(
        self,
        server: Any,
        address: Optional[str],
        port: int,
        hmac_key: Union[str, bytes],
        max_drift: int,
        replay_len: int,
    ) -> None:
        if max_drift <= 0:
            raise ValueError("max_drift must be positive")
        super().__init__(server, SamplerType.STATSD_SECURE, address, port)
        self.hmac_key = hmac_key.encode("utf-8") if isinstance(hmac_key, str) else bytes(hmac_key)
        self.drift = int(max_drift)
        self.replays = MultiBloom(self.drift, replay_len, 0.001)
        self.now = 0
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.in_sock = self.open_socket(False)

    @classmethod
    def from_config(cls, server: Any, settings: Any) -> "SecureStatsdSampler":
        """Build the sampler from its JSON settings and start it."""
        conf = unpack_config(
            settings,
            {
                "address": str,
                "port": int,
                "hmac_key": str,
                "max_drift": int,
                "replay_len": int,
            },
        )
        sampler = cls(
            server,
            conf["address"],
            conf["port"],
            conf["hmac_key"],
            conf["max_drift"],
            conf["replay_len"],
        )
        sampler.start()
        return sampler

    def _fail(self, stat: str) -> bool:
        self.server.internal_stats.increment(stat)
        return False

    def authenticate(self, packet: bytes) -> bool:
        """Check the packet's length and signature."""
        packet = bytes(packet)
        if len(packet) < MIN_PACKET_SIZE:
            log_splunk(f"sampler=statsd-secure event=short_pkt len={len(packet)}")
            return self._fail("secure.failed")

        digest = hmac.new(self.hmac_key, packet[SHA_SIZE:], hashlib.sha256).digest()
        if not hmac.compare_digest(digest, packet[:SHA_SIZE]):
            log_splunk(f"sampler=statsd-secure event=fail_auth hmac={packet[:SHA_SIZE].hex()}")
            return self._fail("secure.failed")
        return True

    def verify_token(self, packet: bytes, now: Optional[int] = None) -> bool:
        """Reject packets from the future, too old, or already seen."""
        packet = bytes(packet)
        if len(packet) < MIN_PACKET_SIZE:
            raise ValueError("packet too short to hold a token")
        if now is None:
            now = int(time.time())

        (timestamp,) = struct.unpack_from("<Q", packet, SHA_SIZE)

        if now != self.now:
            self.now = now
            self.replays.reset(self.now % self.drift)

        if self.now < timestamp:
            log_splunk(
                f"sampler=statsd-secure event=fail_future now={self.now} timestamp={timestamp}"
            )
            return self._fail("secure.from_future")

        if self.now - timestamp > self.drift:
            log_splunk(
                f"sampler=statsd-secure event=fail_delayed now={self.now} "
                f"timestamp={timestamp} drift={self.now - timestamp}"
            )
            return self._fail("secure.delayed")

        ha, hb = struct.unpack_from("<II", packet, 0)
        if self.replays.check(timestamp % self.drift, ha, hb):
            log_splunk(
                f"sampler=statsd-secure event=fail_replayed hmac={packet[:SHA_SIZE].hex()}"
            )
            return self._fail("secure.replayed")
        return True

    def handle_packet(self, packet: bytes, now: Optional[int] = None) -> bool:
        """Authenticate a packet and record its metrics; tell whether it was accepted."""
        packet = bytes(packet)
        if not self.authenticate(packet):
            return False
        if not self.verify_token(packet, now):
            return False
        parse_packet(self.server, packet[MIN_PACKET_SIZE:])
        return True

    def _run(self) -> None:
        sock = self.in_sock
        sock.settimeout(_POLL_INTERVAL)
        log_splunk("sampler=statsd-secure event=worker_online")
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
                log_splunk_errno(
                    f"sampler=statsd-secure event=failed_read from={reporter}", err
                )
                self.server.internal_stats.increment("errors")
                continue
            reporter = peer[0]
            self.count_packets(1)
            self.handle_packet(data)

    def start(self) -> None:
        """Start the receiving thread."""
        self._stopping.clear()
        thread = threading.Thread(target=self._run, name="statsd-secure", daemon=True)
        try:
            thread.start()
        except RuntimeError:
            die("failed to start sampler thread")
        self._thread = thread

    def shutdown(self) -> None:
        """Stop the receiving thread and close the socket."""
        self._stopping.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        super().shutdown()