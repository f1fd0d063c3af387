"""A set of equally sized Bloom filters addressed by index."""

from __future__ import annotations

import math

from .log import log_splunk

_U32 = 0xFFFFFFFF


class MultiBloom:
    """Several Bloom filters sharing one size and hash count."""

    def __init__(self, filters: int, entries: int, error: float) -> None:
        if entries <= 1 or error <= 0.0:
            raise ValueError("a bloom filter needs entries > 1 and error > 0")
        bpe = -(math.log(error) / 0.480453013918201)
        self.bits = int(entries * bpe)
        if self.bits <= 0:
            raise ValueError("error rate too large for a bloom filter")
        self.nbytes = self.bits // 8 + (1 if self.bits % 8 else 0)
        self.hashes = math.ceil(0.693147180559945 * bpe)
        self.filters = [bytearray(self.nbytes) for _ in range(filters)]

        log_splunk(
            f"event=bloom_init entries={entries} error={error:f} bits={self.bits} "
            f"bpe={bpe:f} bytes={self.nbytes} hash_funcs={self.hashes}"
        )

    def check(self, f: int, a: int, b: int) -> bool:
        """Add the item hashed as ``(a, b)`` to filter ``f``; tell if it was already there."""
        bitmap = self.filters[f]
        hits = 0
        for i in range(self.hashes):
            x = ((a + i * b) & _U32) % self.bits
            byte = x >> 3
            mask = 1 << (x & 7)
            if bitmap[byte] & mask:
                hits += 1
            else:
                bitmap[byte] |= mask
        return hits == self.hashes

    def reset(self, f: int) -> None:
        """Clear filter ``f``."""
        self.filters[f][:] = bytes(self.nbytes)