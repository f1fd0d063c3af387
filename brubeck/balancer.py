"""A UDP fan-out proxy: every datagram received is copied to each target."""

from __future__ import annotations

import re
import socket
import sys
import threading
from typing import Iterable, List, Optional, Sequence, Tuple

from .utils import enlarge_receive_buffer, enlarge_send_buffer

MAX_PACKET_SIZE = 512
MAX_THREADS = 4
MAX_FANOUT = 4
_POLL_INTERVAL = 0.25

Address = Tuple[str, int]


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def _inet_host(host: str) -> str:
    if host == "0.0.0.0":
        return host
    try:
        return socket.inet_ntoa(socket.inet_aton(host))
    except OSError:
        return "255.255.255.255"


def parse_address(text: str) -> Address:
    """Parse ``host:port`` into an IPv4 address pair."""
    host, sep, port = text.partition(":")
    if not sep:
        raise ValueError(f"Invalid address: {text}")
    return (_inet_host(host), _atoi(port) & 0xFFFF)


class Balancer:
    """Receives datagrams on one socket and resends them to every target."""

    def __init__(self, listen: Optional[Address], targets: Iterable[Address]) -> None:
        targets = list(targets)
        if len(targets) > MAX_FANOUT:
            raise ValueError(f"at most {MAX_FANOUT} fanout addresses")
        if not targets:
            raise ValueError("No fanout addresses to proxy.")
        self.listen = listen
        self.targets: List[Address] = targets
        self._outs: List[Tuple[socket.socket, Address]] = []
        self._stopping = threading.Event()
        self.in_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            if listen is not None:
                enlarge_receive_buffer(self.in_sock)
                self.in_sock.bind(listen)
            for target in targets:
                sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                self._outs.append((sock, target))
                enlarge_send_buffer(sock)
        except BaseException:
            self._close()
            raise

    def __enter__(self) -> "Balancer":
        return self

    def __exit__(self, *exc) -> None:
        self._close()

    def _close(self) -> None:
        self._stopping.set()
        self.in_sock.close()
        for sock, _ in self._outs:
            sock.close()

    def forward(self, packet: bytes) -> int:
        """Send ``packet`` to every target; return how many sends succeeded."""
        sent = 0
        for sock, target in self._outs:
            try:
                sock.sendto(packet, target)
            except OSError:
                continue
            sent += 1
        return sent

    def _worker(self) -> None:
        while not self._stopping.is_set():
            try:
                packet = self.in_sock.recv(MAX_PACKET_SIZE)
            except socket.timeout:
                continue
            except OSError:
                if self._stopping.is_set():
                    break
                continue
            if packet:
                self.forward(packet)

    def run(self) -> None:
        """Forward packets with a pool of threads until the sockets are closed."""
        self.in_sock.settimeout(_POLL_INTERVAL)
        threads = [
            threading.Thread(target=self._worker, name=f"balancer-{i}", daemon=True)
            for i in range(MAX_THREADS)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the proxy: ``[--listen addr] addr...``."""
    args = sys.argv[1:] if argv is None else list(argv)

    def usage() -> int:
        print("Usage: balancer [--listen addr] addr...")
        return -1

    listen = None
    start = 0
    try:
        if args and args[0] == "--listen":
            if len(args) == 1:
                return usage()
            listen = parse_address(args[1])
            start = 2
        targets = []
        for text in args[start:]:
            if len(targets) == MAX_FANOUT:
                return usage()
            targets.append(parse_address(text))
    except ValueError as err:
        print(err, file=sys.stderr)
        return 1

    if not targets:
        print("No fanout addresses to proxy.", file=sys.stderr)
        return 1

    try:
        with Balancer(listen, targets) as balancer:
            balancer.run()
    except OSError as err:
        print(f"bind: {err}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    return 0