"""32-bit CityHash over byte strings."""

from __future__ import annotations

from typing import Union

_M = 0xFFFFFFFF
_C1 = 0xCC9E2D51
_C2 = 0x1B873593
_K = 0xE6546B64


def _fmix(h: int) -> int:
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _M
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _M
    h ^= h >> 16
    return h


def _ror(value: int, shift: int) -> int:
    if shift == 0:
        return value
    return ((value >> shift) | (value << (32 - shift))) & _M


def _bswap(value: int) -> int:
    return int.from_bytes(value.to_bytes(4, "little"), "big")


def _mur(a: int, h: int) -> int:
    a = (a * _C1) & _M
    a = _ror(a, 17)
    a = (a * _C2) & _M
    h ^= a
    h = _ror(h, 19)
    return (h * 5 + _K) & _M


def _mix(h: int) -> int:
    return (_ror(h, 19) * 5 + _K) & _M


def _scramble(word: int) -> int:
    return (_ror((word * _C1) & _M, 17) * _C2) & _M


def _read32(data: bytes, pos: int) -> int:
    return int.from_bytes(data[pos : pos + 4], "little")


def _hash_0_to_4(s: bytes) -> int:
    b = 0
    c = 9
    for byte in s:
        signed = byte - 256 if byte >= 128 else byte
        b = (b * _C1 + signed) & _M
        c ^= b
    return _fmix(_mur(b, _mur(len(s), c)))


def _hash_5_to_12(s: bytes) -> int:
    n = len(s)
    a = (n + _read32(s, 0)) & _M
    b = (n * 5 + _read32(s, n - 4)) & _M
    c = (9 + _read32(s, (n >> 1) & 4)) & _M
    d = (n * 5) & _M
    return _fmix(_mur(c, _mur(b, _mur(a, d))))


def _hash_13_to_24(s: bytes) -> int:
    n = len(s)
    a = _read32(s, (n >> 1) - 4)
    b = _read32(s, 4)
    c = _read32(s, n - 8)
    d = _read32(s, n >> 1)
    e = _read32(s, 0)
    f = _read32(s, n - 4)
    h = n
    return _fmix(_mur(f, _mur(e, _mur(d, _mur(c, _mur(b, _mur(a, h)))))))


def city_hash32(data: Union[bytes, bytearray, memoryview, str]) -> int:
    """Return the 32-bit CityHash of ``data`` (text is hashed as UTF-8)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    elif not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"expected bytes or str, got {type(data).__name__}")
    s = bytes(data)
    n = len(s)

    if n <= 4:
        return _hash_0_to_4(s)
    if n <= 12:
        return _hash_5_to_12(s)
    if n <= 24:
        return _hash_13_to_24(s)

    h = n & _M
    g = (_C1 * n) & _M
    f = g

    a0 = _scramble(_read32(s, n - 4))
    a1 = _scramble(_read32(s, n - 8))
    a2 = _scramble(_read32(s, n - 16))
    a3 = _scramble(_read32(s, n - 12))
    a4 = _scramble(_read32(s, n - 20))

    h = _mix(h ^ a0)
    h = _mix(h ^ a2)
    g = _mix(g ^ a1)
    g = _mix(g ^ a3)
    f = _mix((f + a4) & _M)

    for pos in range(0, ((n - 1) // 20) * 20, 20):
        b0 = _scramble(_read32(s, pos))
        b1 = _read32(s, pos + 4)
        b2 = _scramble(_read32(s, pos + 8))
        b3 = _scramble(_read32(s, pos + 12))
        b4 = _read32(s, pos + 16)

        h = (_ror(h ^ b0, 18) * 5 + _K) & _M
        f = (_ror((f + b1) & _M, 19) * _C1) & _M
        g = (_ror((g + b2) & _M, 18) * 5 + _K) & _M
        h = _mix(h ^ ((b3 + b1) & _M))
        g = (_bswap(g ^ b4) * 5) & _M
        h = _bswap((h + b4 * 5) & _M)
        f = (f + b0) & _M
        f, h, g = g, f, h

    g = (_ror(g, 11) * _C1) & _M
    g = (_ror(g, 17) * _C1) & _M
    f = (_ror(f, 11) * _C1) & _M
    f = (_ror(f, 17) * _C1) & _M
    h = _mix((h + g) & _M)
    h = (_ror(h, 17) * _C1) & _M
    h = _mix((h + f) & _M)
    h = (_ror(h, 17) * _C1) & _M
    return h