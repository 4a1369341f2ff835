"""Deterministic point streams on the unit cube.

An engine is an immutable value: drawing points returns a new engine whose
position has advanced. Any slice of the stream can be generated on its own,
so batches of rows can be produced independently and in any order.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from typing import Sequence

import torch

HALTON_MAX_DIM = 300
PSEUDO_BLOCK = 1024

_KINDS = ("halton", "sobol", "pseudo")


def _first_primes(k: int) -> list[int]:
    # Sieve large enough for the first k primes (p_k < k (log k + log log k) for k >= 6).
    limit = max(15, int(k * (math.log(k + 1) + math.log(math.log(k + 3))) + 10))
    sieve = bytearray([1]) * (limit + 1)
    sieve[0:2] = b"\x00\x00"
    for i in range(2, int(limit ** 0.5) + 1):
        if sieve[i]:
            sieve[i * i::i] = bytearray(len(sieve[i * i::i]))
    return [i for i, is_p in enumerate(sieve) if is_p][:k]


_PRIMES = _first_primes(HALTON_MAX_DIM)


def _seed_from(seeds: Sequence[int]) -> int:
    if not seeds:
        return int(torch.randint(0, 2**31 - 1, (1,)).item())
    seed = 0
    for s in seeds:
        seed = (seed * 1_000_003 + int(s)) % (2**31 - 1)
    return seed


def _radical_inverse(index: torch.Tensor, base: int, multiplier: int) -> torch.Tensor:
    """Van der Corput radical inverse with linearly scrambled digits."""
    out = torch.zeros(index.shape, dtype=torch.float64)
    i = index.clone()
    scale = 1.0 / base
    while bool((i > 0).any()):
        digit = (i % base) * multiplier % base
        out = out + digit.to(torch.float64) * scale
        i = i // base
        scale /= base
    return out


@dataclass(frozen=True)
class QuasiRandomEngine:
    kind: str
    dim: int
    seed: int
    position: int = 0

    def __post_init__(self):
        if self.kind not in _KINDS:
            raise ValueError(f"kind must be one of {_KINDS}, got {self.kind!r}")
        if self.dim < 1:
            raise ValueError("dim must be positive")
        if self.kind == "halton" and self.dim > HALTON_MAX_DIM:
            raise ValueError(f"Halton sequences are limited to {HALTON_MAX_DIM} dimensions")

    @classmethod
    def for_dimension(cls, d: int, *, qrng: bool = True, seeds: Sequence[int] = ()) -> "QuasiRandomEngine":
        """Halton up to 300 dimensions, Sobol above, block pseudo-random without ``qrng``."""
        if not qrng:
            kind = "pseudo"
        elif d <= HALTON_MAX_DIM:
            kind = "halton"
        else:
            kind = "sobol"
        return cls(kind=kind, dim=int(d), seed=_seed_from(seeds))

    def advance(self, n: int) -> "QuasiRandomEngine":
        return dataclasses.replace(self, position=self.position + int(n))

    def draw(self, n: int) -> tuple[torch.Tensor, "QuasiRandomEngine"]:
        return self.slice(0, n), self.advance(n)

    def slice(self, start: int, n: int) -> torch.Tensor:
        """Points ``position + start`` to ``position + start + n - 1`` as an ``(n, dim)`` tensor."""
        n = int(n)
        if n < 0 or start < 0:
            raise ValueError("start and n must be non-negative")
        first = self.position + int(start)
        if n == 0:
            return torch.empty((0, self.dim), dtype=torch.float64)
        if self.kind == "halton":
            pts = self._halton(first, n)
        elif self.kind == "sobol":
            pts = self._sobol(first, n)
        else:
            pts = self._pseudo(first, n)
        return pts.clamp(1e-10, 1.0 - 1e-10)

    def _halton(self, first: int, n: int) -> torch.Tensor:
        g = torch.Generator().manual_seed(self.seed)
        # Index 0 maps to the origin; the stream starts at index 1.
        idx = torch.arange(first + 1, first + 1 + n, dtype=torch.int64)
        cols = []
        for k in range(self.dim):
            base = _PRIMES[k]
            mult = 1 if base == 2 else int(torch.randint(1, base, (1,), generator=g).item())
            shift = float(torch.rand((1,), generator=g, dtype=torch.float64).item())
            cols.append(torch.remainder(_radical_inverse(idx, base, mult) + shift, 1.0))
        return torch.stack(cols, dim=1)

    def _sobol(self, first: int, n: int) -> torch.Tensor:
        eng = torch.quasirandom.SobolEngine(dimension=self.dim, scramble=True, seed=self.seed)
        if first:
            eng.fast_forward(first)
        return eng.draw(n, dtype=torch.float64)

    def _pseudo(self, first: int, n: int) -> torch.Tensor:
        b0, b1 = first // PSEUDO_BLOCK, (first + n - 1) // PSEUDO_BLOCK
        blocks = []
        for b in range(b0, b1 + 1):
            g = torch.Generator().manual_seed((self.seed * 1_000_003 + b) % (2**63 - 1))
            blocks.append(torch.rand((PSEUDO_BLOCK, self.dim), generator=g, dtype=torch.float64))
        rows = torch.cat(blocks, dim=0)
        off = first - b0 * PSEUDO_BLOCK
        return rows[off:off + n]
