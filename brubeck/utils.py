"""Socket helpers, number formatting and configuration unpacking."""

from __future__ import annotations

import math
import select
import socket
import struct
import sys
from typing import Any, Mapping, Optional, Tuple

from .log import die

LARGE_SOCK_SIZE = 33554431 if sys.platform.startswith("linux") else 65565
FLOAT_PRECISION = 4

_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF


class ConfigError(ValueError):
    """Raised when a configuration object does not have the expected shape."""


def find_substr(s: str, find: str, slen: int) -> Optional[int]:
    """Return the index of ``find`` within the first ``slen`` characters of ``s``."""
    if not find:
        return 0
    first, rest = find[0], find[1:]
    remaining = slen
    for pos, ch in enumerate(s):
        if ch == "\0" or remaining < 1:
            return None
        remaining -= 1
        if ch != first:
            continue
        if len(rest) > remaining:
            return None
        if s[pos + 1 : pos + 1 + len(rest)] == rest:
            return pos
    return None


def starts_with(s: str, prefix: str) -> bool:
    """Tell whether ``s`` begins with ``prefix``."""
    return s.startswith(prefix)


def itoa(number: int) -> str:
    """Decimal text of ``number`` taken as an unsigned 32-bit integer."""
    return str(number & _U32)


def _float32_bits(value: float) -> int:
    try:
        packed = struct.pack("<f", value)
    except OverflowError:
        packed = struct.pack("<f", math.copysign(math.inf, value))
    return struct.unpack("<i", packed)[0]


def ftoa(value: float) -> str:
    """Format ``value`` as a single-precision number with at most four decimals.

    Digits past the fourth are truncated, trailing zeros dropped.
    """
    bits = _float32_bits(float(value))
    exp2 = ((bits >> 23) & 0xFF) - 127
    mantissa = (bits & 0x7FFFFF) | 0x800000

    out = "-" if bits < 0 else ""
    if exp2 < -36:
        return out + "0"

    safe_shift = -(exp2 + 1)
    safe_mask = _U64 >> (64 - 24 - safe_shift)
    int_part = 0
    frac_part = 0

    if exp2 >= 64:
        int_part = _U64
    elif exp2 >= 23:
        int_part = (mantissa << (exp2 - 23)) & _U64
    elif exp2 >= 0:
        int_part = mantissa >> (23 - exp2)
        frac_part = mantissa & safe_mask
    else:
        frac_part = mantissa & 0xFFFFFF

    out += itoa(int_part) if int_part else "0"

    if frac_part:
        digits = []
        for _ in range(FLOAT_PRECISION):
            frac_part = (frac_part * 10) & _U64
            digits.append(str(frac_part >> (24 + safe_shift)))
            frac_part &= safe_mask
        fraction = "".join(digits).rstrip("0")
        if fraction:
            out += "." + fraction

    return out


def resolve_inet_address(url: Optional[str], port: int) -> Tuple[str, int]:
    """Resolve ``url`` to an IPv4 ``(host, port)`` pair; None means any address."""
    if url is None:
        return ("0.0.0.0", port)
    try:
        infos = socket.getaddrinfo(url, None, socket.AF_INET)
    except (socket.gaierror, UnicodeError):
        die(f"failed to resolve address '{url}'")
    for family, _type, _proto, _name, sockaddr in infos:
        if family == socket.AF_INET:
            return (sockaddr[0], port)
    die("address format not supported")


def set_nonblocking(sock: socket.socket) -> None:
    """Put ``sock`` into non-blocking mode."""
    try:
        sock.setblocking(False)
    except OSError:
        die("Failed to set O_NONBLOCK")


def set_reuse(sock: socket.socket, reuse: int) -> None:
    """Set SO_REUSEADDR on ``sock``."""
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, int(reuse))
    except OSError:
        die("Failed to set SO_REUSEADDR")


def set_reuse_port(sock: socket.socket, reuse: int) -> None:
    """Set SO_REUSEPORT on ``sock`` where the platform has it."""
    option = getattr(socket, "SO_REUSEPORT", None)
    if option is None:
        return
    try:
        sock.setsockopt(socket.SOL_SOCKET, option, int(reuse))
    except OSError:
        die("failed to set SO_REUSEPORT")


def enlarge_send_buffer(sock: socket.socket) -> None:
    """Ask for a large kernel send buffer on ``sock``."""
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, LARGE_SOCK_SIZE)
    except OSError:
        die("Failed to set SO_SNDBUF")


def enlarge_receive_buffer(sock: socket.socket) -> None:
    """Ask for a large kernel receive buffer on ``sock``."""
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, LARGE_SOCK_SIZE)
    except OSError:
        die("Failed to set SO_RCVBUF")


def write_in_full(sock: socket.socket, data: bytes) -> int:
    """Send all of ``data``, retrying on interruptions; return the byte count."""
    view = memoryview(data)
    total = 0
    while view:
        try:
            sent = sock.send(view)
        except InterruptedError:
            continue
        except BlockingIOError:
            select.select([], [sock], [])
            continue
        if sent == 0:
            raise OSError(28, "No space left on device")
        view = view[sent:]
        total += sent
    return total


_TYPE_NAMES = {
    str: "string",
    int: "integer",
    float: "real",
    bool: "true or false",
    object: "any value",
}


def _check_type(name: str, value: Any, kind: type) -> Any:
    if kind is object:
        ok = True
    elif kind is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif kind is float:
        ok = isinstance(value, float)
    else:
        ok = isinstance(value, kind)
    if not ok:
        expected = _TYPE_NAMES.get(kind, kind.__name__)
        raise ConfigError(
            f"config error: expected {expected} for '{name}', got {type(value).__name__}"
        )
    return value


def unpack_config(
    settings: Any,
    required: Mapping[str, type],
    optional: Optional[Mapping[str, type]] = None,
) -> dict:
    """Pick typed entries out of a JSON object.

    ``required`` and ``optional`` map keys to the Python type expected
    (``str``, ``int``, ``float``, ``bool`` or ``object`` for anything).
    Optional keys that are absent are left out of the result.
    """
    if not isinstance(settings, Mapping):
        raise ConfigError("config error: expected an object")
    result = {}
    for name, kind in required.items():
        if name not in settings:
            raise ConfigError(f"config error: object item not found: {name}")
        result[name] = _check_type(name, settings[name], kind)
    for name, kind in (optional or {}).items():
        if name in settings:
            result[name] = _check_type(name, settings[name], kind)
    return result