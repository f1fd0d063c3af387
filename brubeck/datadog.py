"""Backend sending gauges to a DogStatsD agent over UDP."""

from __future__ import annotations

import re
import socket
from typing import Any, Optional, Union

from .backend import Backend, BackendType
from .log import log_splunk, log_splunk_errno
from .utils import ConfigError, unpack_config


def _key_tags(key: str) -> list:
    tokens = [t for t in key.split(".") if t]
    if not tokens:
        return [key]
    lead = len(key) - len(key.lstrip("."))
    end = key.find(".", lead)
    head = key if end < 0 else key[:end]
    return [head] + tokens[1:]


def format_datadog(key: str, value: float, tags: Optional[str], tagify: bool) -> str:
    """A DogStatsD gauge line, with optional static tags and key-derived tags."""
    if tags is not None:
        line = f"{key}:{value:.6f}|g|#{tags}\n"
    else:
        line = f"{key}:{value:.6f}|g\n"

    if not tagify:
        return line

    delim = "#" if line[-2] == "g" else ","
    body = line[:-1]
    for i, part in enumerate(_key_tags(key)):
        body += f"{delim}m_{i}:{part}"
        delim = ","
    return body + "\n"


class DatadogBackend(Backend):
    """Sends the samples whose keys match a filter to a DogStatsD agent."""

    def __init__(
        self,
        server: Any,
        address: str = "127.0.0.1",
        port: int = 8125,
        sample_freq: float = 10,
        filter: Optional[str] = None,
        tags: Optional[str] = None,
        tagify: bool = False,
        expire: int = 0,
    ) -> None:
        super().__init__(server, BackendType.DATADOG, sample_freq, expire)
        if not filter:
            log_splunk("backend=datadog no regex")
            raise ConfigError("datadog backend needs a non-empty filter")
        try:
            self.regex = re.compile(filter)
        except re.error as err:
            log_splunk(f"backend=datadog badregex={filter}")
            raise ConfigError(f"invalid datadog filter {filter!r}: {err}") from err

        self.address = address
        self.port = port
        self.tags = tags
        self.tagify = bool(tagify)
        self.out: Optional[socket.socket] = None
        self.sent = 0
        self._last_error: Union[OSError, int] = 0

    @classmethod
    def from_config(cls, server: Any, settings: Any) -> "DatadogBackend":
        """Build the backend from its JSON settings and start sampling."""
        conf = unpack_config(
            settings,
            {},
            {
                "address": str,
                "port": int,
                "frequency": int,
                "filter": str,
                "expire": int,
                "tags": str,
                "tagify": int,
            },
        )
        backend = cls(
            server,
            address=conf.get("address", "127.0.0.1"),
            port=conf.get("port", 8125),
            sample_freq=conf.get("frequency", 10),
            filter=conf.get("filter"),
            tags=conf.get("tags"),
            tagify=bool(conf.get("tagify", 0)),
            expire=conf.get("expire", 0),
        )
        backend.run_threaded()
        log_splunk("backend=datadog event=started")
        return backend

    def is_connected(self) -> bool:
        return self.out is not None

    def connect(self) -> bool:
        if self.out is not None:
            return True
        sock = None
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.connect((self.address, self.port))
        except OSError as err:
            if sock is not None:
                sock.close()
            log_splunk_errno("backend=datadog event=failed_to_connect", err)
            return False
        self.out = sock
        log_splunk("backend=datadog event=connected")
        return True

    def disconnect(self) -> None:
        """Drop the UDP socket; the next tick opens a new one."""
        log_splunk_errno("backend=datadog event=disconnected", self._last_error)
        if self.out is not None:
            self.out.close()
        self.out = None

    def sample(self, key: str, value: float, timestamp: int) -> None:
        if not self.is_connected():
            return
        if self.regex.search(key) is None:
            return
        data = format_datadog(key, value, self.tags, self.tagify).encode("utf-8")
        try:
            self.out.send(data)
        except OSError as err:
            log_splunk(f"backend=datadog bad_send={err}")
            self._last_error = err
            self.disconnect()
            return
        self.sent += len(data)