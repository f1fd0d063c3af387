"""Graphite carbon backend speaking the plaintext or the pickle protocol."""

from __future__ import annotations

import socket
import struct
from typing import Any, Optional, Tuple, Union

from .backend import Backend, BackendType
from .log import log_splunk, log_splunk_errno
from .utils import (
    enlarge_send_buffer,
    ftoa,
    itoa,
    resolve_inet_address,
    unpack_config,
    write_in_full,
)

PICKLE_BUFFER_SIZE = 32768
MAX_PICKLE_SIZE = 256

_HEADER_LEN = 4
_PICKLE_LEAD = b"]q\x00("
_PICKLE_TRAIL = b"e."
_EMPTY_LEN = _HEADER_LEN + len(_PICKLE_LEAD)


def _pickle_entry_size(key_len: int) -> int:
    return 32 + key_len


def format_plaintext(key: str, value: float, tick_time: int) -> bytes:
    """One line of the carbon plaintext protocol: ``key value timestamp``."""
    return f"{key} {ftoa(value)} {itoa(tick_time)}\n".encode("utf-8")


class PicklePayload:
    """Accumulates ``(key, (timestamp, value))`` tuples as a length-prefixed pickle list."""

    def __init__(self) -> None:
        self._buf = bytearray()
        self._memo = 1
        self.reset()

    def reset(self) -> None:
        """Drop every pushed entry."""
        self._buf[:] = bytes(_HEADER_LEN) + _PICKLE_LEAD
        self._memo = 1

    def _next_memo(self) -> bytes:
        memo = self._memo & 0xFF
        self._memo = (self._memo + 1) & 0xFFFF
        return bytes([memo])

    def push(self, key: Union[str, bytes], timestamp: int, value: float) -> None:
        """Append one sample to the payload."""
        raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
        key_len = len(raw) & 0xFF
        buf = self._buf
        buf += b"(U" + bytes([key_len]) + raw[:key_len]
        buf += b"q" + self._next_memo()
        buf += b"(J" + struct.pack("<I", timestamp & 0xFFFFFFFF)
        buf += b"G" + struct.pack(">d", value)
        buf += b"tq" + self._next_memo()
        buf += b"tq" + self._next_memo()

    def encode(self) -> bytes:
        """The complete frame: a big-endian length followed by the pickled list."""
        body = bytes(self._buf[_HEADER_LEN:]) + _PICKLE_TRAIL
        return struct.pack(">I", len(body)) + body

    def __len__(self) -> int:
        return len(self._buf)


def _open_connection(address: Tuple[str, int], name: str) -> Optional[socket.socket]:
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
    except OSError as err:
        log_splunk_errno(f"backend={name} event=failed_to_connect", err)
        return None
    try:
        sock.connect(address)
    except OSError as err:
        sock.close()
        log_splunk_errno(f"backend={name} event=failed_to_connect", err)
        return None
    log_splunk(f"backend={name} event=connected")
    enlarge_send_buffer(sock)
    return sock


def _set_nodelay(sock: socket.socket, on: int) -> None:
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, on)
    except OSError:
        pass


class CarbonBackend(Backend):
    """Sends samples to carbon over TCP."""

    def __init__(
        self,
        server: Any,
        address: str,
        port: int,
        sample_freq: float,
        pickle: bool = False,
        expire: int = 0,
    ) -> None:
        super().__init__(server, BackendType.CARBON, sample_freq, expire)
        self.address = resolve_inet_address(address, port)
        self.pickle = bool(pickle)
        self.pickler: Optional[PicklePayload] = PicklePayload() if self.pickle else None
        self.out_sock: Optional[socket.socket] = None
        self.sent = 0
        self._last_error: Union[OSError, int] = 0

    @classmethod
    def from_config(cls, server: Any, settings: Any) -> "CarbonBackend":
        """Build the backend from its JSON settings and start sampling."""
        conf = unpack_config(
            settings,
            {"address": str, "port": int, "frequency": int},
            {"pickle": bool, "expire": int},
        )
        backend = cls(
            server,
            conf["address"],
            conf["port"],
            conf["frequency"],
            pickle=conf.get("pickle", False),
            expire=conf.get("expire", 0),
        )
        backend.run_threaded()
        log_splunk("backend=carbon event=started")
        return backend

    def is_connected(self) -> bool:
        return self.out_sock is not None

    def connect(self) -> bool:
        if self.is_connected():
            return True
        self.out_sock = _open_connection(self.address, self.name())
        return self.out_sock is not None

    def disconnect(self) -> None:
        """Close the connection; the next tick reconnects."""
        log_splunk_errno("backend=carbon event=disconnected", self._last_error)
        if self.out_sock is not None:
            self.out_sock.close()
        self.out_sock = None

    def _fail(self, err: OSError) -> None:
        self._last_error = err
        self.disconnect()

    def sample(self, key: str, value: float, timestamp: int) -> None:
        if self.pickler is not None:
            self._pickle_sample(key, value)
            return
        if not self.is_connected():
            return
        try:
            written = write_in_full(self.out_sock, format_plaintext(key, value, self.tick_time))
        except OSError as err:
            self._fail(err)
            return
        self.sent += written

    def _pickle_sample(self, key: str, value: float) -> None:
        key_len = len(key.encode("utf-8")) & 0xFF
        if len(self.pickler) + _pickle_entry_size(key_len) >= PICKLE_BUFFER_SIZE:
            self.flush()
        if not self.is_connected():
            return
        self.pickler.push(key, self.tick_time, value)

    def flush(self) -> None:
        pickler = self.pickler
        if pickler is None or len(pickler) == _EMPTY_LEN or not self.is_connected():
            return

        sock = self.out_sock
        _set_nodelay(sock, 1)
        error: Optional[OSError] = None
        written = 0
        try:
            written = write_in_full(sock, pickler.encode())
        except OSError as err:
            error = err
        _set_nodelay(sock, 0)

        pickler.reset()
        if error is not None:
            self._fail(error)
            return
        self.sent += written