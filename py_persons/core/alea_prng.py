"""
Alea pseudo-random number generator with explicit, serializable state.

Based on Johannes Baagøe's Alea algorithm. Terrain generation and resource
harvesting seed a fresh instance from a string and, where a sequence must
continue across requests, persist ``state()`` and resume with ``from_state``.
There is deliberately no module-level generator.
"""

from typing import Any, Dict, Sequence


def _uint32(n):
    """Convert to unsigned 32-bit integer."""
    return int(n) & 0xFFFFFFFF


def _mash_factory():
    """Return Alea's string hashing function with its own running state."""
    mash_n = 0xEFC8249D  # 4022871197

    def mash(data):
        nonlocal mash_n
        data = str(data)
        for char in data:
            mash_n = mash_n + ord(char)
            h = 0.02519603282416938 * mash_n
            mash_n = _uint32(h)
            h -= mash_n
            h *= mash_n
            mash_n = _uint32(h)
            h -= mash_n
            mash_n += h * 0x100000000  # 2^32
        return _uint32(mash_n) * 2.3283064365386963e-10  # 2^-32

    return mash


class AleaPRNG:
    """
    Alea PRNG producing the same sequence as the JavaScript ``seedrandom.alea``.

    The generator is a plain value: four numbers (``c``, ``s0``, ``s1``, ``s2``)
    fully describe where it is in its sequence.
    """

    def __init__(self, seed):
        """Initialize with seed string or number."""
        self.call_count = 0

        # Convert arguments to array
        if hasattr(seed, "__iter__") and not isinstance(seed, str):
            args = list(seed)
        else:
            args = [seed]

        mash = _mash_factory()

        # Initialize state
        self.s0 = mash(" ")
        self.s1 = mash(" ")
        self.s2 = mash(" ")
        self.c = 1

        # Process seed arguments
        for arg in args:
            self.s0 -= mash(arg)
            if self.s0 < 0:
                self.s0 += 1
            self.s1 -= mash(arg)
            if self.s1 < 0:
                self.s1 += 1
            self.s2 -= mash(arg)
            if self.s2 < 0:
                self.s2 += 1

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "AleaPRNG":
        """Resume a generator from a value previously returned by ``state()``."""
        try:
            prng = cls.__new__(cls)
            prng.call_count = 0
            prng.c = int(state["c"])
            prng.s0 = float(state["s0"])
            prng.s1 = float(state["s1"])
            prng.s2 = float(state["s2"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid Alea state: {state!r}") from e
        return prng

    def state(self) -> Dict[str, Any]:
        """Snapshot of the generator position, safe to store as JSON."""
        return {"c": self.c, "s0": self.s0, "s1": self.s1, "s2": self.s2}

    def random(self):
        """Generate next random number in [0, 1)."""
        self.call_count += 1
        t = 2091639 * self.s0 + self.c * 2.3283064365386963e-10  # 2^-32
        self.s0 = self.s1
        self.s1 = self.s2
        self.c = int(t)
        self.s2 = t - self.c
        return self.s2

    # seedrandom exposes the raw 32-bit draw as ``quick``
    quick = random

    def double(self):
        """Random float in [0, 1) with 53 bits of precision."""
        return self.random() + int(self.random() * 0x200000) * 1.1102230246251565e-16

    def int32(self):
        """Random signed 32-bit integer."""
        value = _uint32(self.random() * 0x100000000)
        if value >= 0x80000000:
            value -= 0x100000000
        return value

    def choice(self, seq: Sequence):
        """Choose a random element from a non-empty sequence."""
        if not seq:
            raise IndexError("Cannot choose from an empty sequence")
        return seq[int(self.random() * len(seq))]
