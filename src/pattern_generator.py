#!/usr/bin/env python3
"""
PatternGenerator class for captest - test data generation.

All block data of a run is derived from one pseudo-random pattern of
block_size_max bytes. Pattern bytes are never 0 (what sparse or
unwritten storage reads back as) and never 0xFF (the trailer sentinel).
"""

import random

from global_constants import (
    DEFAULT_BLOCK_SIZE,
    PATTERN_BYTE_MAX,
    PATTERN_BYTE_MIN,
)

# Byte values that may not appear in a pattern
_EXCLUDED_BYTES = bytes(b for b in range(256)
                        if not PATTERN_BYTE_MIN <= b <= PATTERN_BYTE_MAX)


class PatternGenerator:
    """
    Generates the test pattern for one session.

    Owns its own random number generator so that runs do not share RNG
    state and tests can pass a fixed seed.
    """

    def __init__(self, size=DEFAULT_BLOCK_SIZE, seed=None):
        """
        Initialize pattern generator.

        Args:
            size: Pattern length in bytes (block_size_max)
            seed: Optional RNG seed; None seeds from the OS entropy pool
                  (or the current time where there is none)
        """
        if size <= 0:
            raise ValueError(f"Pattern size must be positive: {size}")
        self.size = size
        self._rng = random.Random(seed)

    def generate(self):
        """
        Generate a new pattern.

        Random bytes are drawn in bulk and the excluded values are
        dropped, which keeps the remaining values uniformly distributed.

        Returns:
            bytes: Pattern of exactly self.size bytes
        """
        pattern = bytearray()
        while len(pattern) < self.size:
            needed = self.size - len(pattern)
            # ~1% of drawn bytes are dropped
            chunk = self._rng.randbytes(needed + needed // 64 + 16)
            pattern += chunk.translate(None, _EXCLUDED_BYTES)
        del pattern[self.size:]

        assert len(pattern) == self.size
        return bytes(pattern)


def block_data(pattern, block_info):
    """
    Derive the data of one block from the pattern.

    The pattern is cut to the block size and the block tag is put at the
    beginning, so every block holds pattern data and a unique fingerprint.

    Args:
        pattern: Session pattern bytes
        block_info: BlockInfo of the block

    Returns:
        bytes: Block data of exactly block_info.size bytes
    """
    assert pattern, "pattern must be generated first"
    assert block_info.size <= len(pattern)

    data = bytearray(pattern[:block_info.size])
    tag = block_info.id[:block_info.size]
    data[:len(tag)] = tag

    assert len(data) == block_info.size
    return bytes(data)
