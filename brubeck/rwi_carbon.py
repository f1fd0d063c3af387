"""Carbon plaintext backend for keys that carry their own timestamp."""

from __future__ import annotations

import socket
from typing import Any, Optional, Union

from .backend import Backend, BackendType
from .carbon import _open_connection
from .log import log_splunk, log_splunk_errno
from .utils import ftoa, itoa, resolve_inet_address, unpack_config, write_in_full


def format_rwi_plaintext(key: str, value: float, timestamp: int, tick_time: int) -> bytes:
    """One carbon plaintext line for a ``name|timestamp|suffix`` key.

    The name is the part before the first ``|``; whatever follows the last
    ``|`` is appended to it. A positive ``timestamp`` wins over ``tick_time``.
    """
    first = key.find("|")
    name = key if first < 0 else key[:first]
    last = key.rfind("|")
    if last >= 0 and last != first:
        name += key[last + 1 :]
    stamp = itoa(timestamp) if timestamp > 0 else itoa(tick_time)
    return f"{name} {ftoa(value)} {stamp}\n".encode("utf-8")


class RwiCarbonBackend(Backend):
    """Sends timestamped samples to carbon over TCP."""

    def __init__(
        self,
        server: Any,
        address: str,
        port: int,
        sample_freq: float,
        expire: int = 0,
    ) -> None:
        super().__init__(server, BackendType.RWI_CARBON, sample_freq, expire)
        self.address = resolve_inet_address(address, port)
        self.out_sock: Optional[socket.socket] = None
        self.sent = 0
        self._last_error: Union[OSError, int] = 0

    @classmethod
    def from_config(cls, server: Any, settings: Any) -> "RwiCarbonBackend":
        """Build the backend from its JSON settings and start sampling."""
        conf = unpack_config(
            settings,
            {"address": str, "port": int, "frequency": int},
            {"expire": int},
        )
        backend = cls(
            server,
            conf["address"],
            conf["port"],
            conf["frequency"],
            expire=conf.get("expire", 0),
        )
        backend.run_threaded()
        log_splunk("backend=rwi_carbon event=started")
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
        log_splunk_errno("backend=rwi_carbon event=disconnected", self._last_error)
        if self.out_sock is not None:
            self.out_sock.close()
        self.out_sock = None

    def sample(self, key: str, value: float, timestamp: int) -> None:
        if not self.is_connected():
            return
        line = format_rwi_plaintext(key, value, timestamp, self.tick_time)
        try:
            written = write_in_full(self.out_sock, line)
        except OSError as err:
            self._last_error = err
            self.disconnect()
            return
        self.sent += written