"""Density, distribution function and simulation through the vine recursion.

All routines walk the trees of a natural-order structure and propagate
h-function transforms edge by edge. Rows are independent, so every routine
splits its input into contiguous row batches for the worker pool and
concatenates the results in order.
"""

from __future__ import annotations

from typing import Sequence

import torch

from . import stats
from .bicop import PairCopula
from .errors import StructureError
from .parallel import ParallelBatcher
from .qrng import QuasiRandomEngine
from .structure import StructureModel

_CDF_CHUNK = 256


def check_pair_copulas(pair_copulas: Sequence[Sequence[PairCopula]], structure: StructureModel) -> None:
    d, trunc = structure.d, structure.trunc_lvl
    if len(pair_copulas) < trunc:
        raise StructureError(f"expected pair copulas for {trunc} trees, got {len(pair_copulas)}")
    for t in range(trunc):
        if len(pair_copulas[t]) != d - 1 - t:
            raise StructureError(f"tree {t} must have {d - 1 - t} pair copulas, got {len(pair_copulas[t])}")
        for e, pc in enumerate(pair_copulas[t]):
            if not isinstance(pc, PairCopula):
                raise StructureError(f"tree {t}, edge {e}: expected a PairCopula, got {type(pc).__name__}")


class VineEvaluator:
    def __init__(self, structure: StructureModel, pair_copulas: Sequence[Sequence[PairCopula]], *, cores: int = 1):
        check_pair_copulas(pair_copulas, structure)
        self.structure = structure
        self.pair_copulas = pair_copulas
        self.batcher = ParallelBatcher(cores)

    def _check_input(self, u: torch.Tensor) -> torch.Tensor:
        u = stats.as_float64(u)
        if u.ndim == 1 and u.numel() == self.structure.d:
            u = u.reshape(1, -1)
        if u.ndim != 2 or u.shape[1] != self.structure.d:
            raise ValueError(f"u must have shape (n, {self.structure.d})")
        return stats.clamp_unit(u)

    def _natural(self, u: torch.Tensor) -> list[torch.Tensor]:
        return [u[:, var - 1] for var in self.structure.order]

    # ---- density ----

    def _pdf_rows(self, u: torch.Tensor) -> torch.Tensor:
        s = self.structure
        d = s.d
        hfunc2 = self._natural(u)
        hfunc1: list[torch.Tensor | None] = [None] * d
        pdf = torch.ones(u.shape[0], dtype=torch.float64)
        for tree in range(s.trunc_lvl):
            next1: list[torch.Tensor | None] = [None] * d
            next2: list[torch.Tensor | None] = [None] * d
            for edge in range(d - 1 - tree):
                m = s.min_at(tree, edge)
                u2 = hfunc2[m - 1] if m == s.struct_at(tree, edge) else hfunc1[m - 1]
                uu = torch.stack([hfunc2[edge], u2], dim=1)
                pc = self.pair_copulas[tree][edge]
                pdf = pdf * pc.pdf(uu)
                if s.needed_hfunc1_at(tree, edge):
                    next1[edge] = pc.hfunc1(uu)
                if s.needed_hfunc2_at(tree, edge):
                    next2[edge] = pc.hfunc2(uu)
            hfunc1, hfunc2 = next1, next2
        return pdf

    def pdf(self, u: torch.Tensor) -> torch.Tensor:
        u = self._check_input(u)
        return self.batcher.map_rows(self._pdf_rows, u)

    def loglik(self, u: torch.Tensor) -> float:
        lp = torch.log(self.pdf(u))
        return float(lp[torch.isfinite(lp)].sum())

    # ---- Rosenblatt transforms ----

    def _rosenblatt_rows(self, u: torch.Tensor) -> torch.Tensor:
        s = self.structure
        d, trunc = s.d, s.trunc_lvl
        hfunc2 = self._natural(u)
        hfunc1: list[torch.Tensor | None] = [None] * d
        out = torch.empty_like(u)
        out[:, s.order[d - 1] - 1] = hfunc2[d - 1]
        for tree in range(trunc):
            next1: list[torch.Tensor | None] = [None] * d
            next2: list[torch.Tensor | None] = [None] * d
            for edge in range(d - 1 - tree):
                m = s.min_at(tree, edge)
                u2 = hfunc2[m - 1] if m == s.struct_at(tree, edge) else hfunc1[m - 1]
                uu = torch.stack([hfunc2[edge], u2], dim=1)
                pc = self.pair_copulas[tree][edge]
                next2[edge] = pc.hfunc2(uu)
                if s.needed_hfunc1_at(tree, edge):
                    next1[edge] = pc.hfunc1(uu)
            hfunc1, hfunc2 = next1, next2
            # Columns whose last tree this was are finished.
            for edge in range(d - 1 - tree):
                if min(trunc, d - 1 - edge) == tree + 1:
                    out[:, s.order[edge] - 1] = hfunc2[edge]
        if trunc == 0:
            for var in s.order:
                out[:, var - 1] = u[:, var - 1]
        return out

    def rosenblatt(self, u: torch.Tensor) -> torch.Tensor:
        """Map copula data to independent uniforms."""
        u = self._check_input(u)
        return stats.clamp_unit(self.batcher.map_rows(self._rosenblatt_rows, u))

    def _inverse_rosenblatt_rows(self, w: torch.Tensor) -> torch.Tensor:
        s = self.structure
        d, trunc = s.d, s.trunc_lvl
        out = torch.empty_like(w)
        if trunc == 0:
            for var in s.order:
                out[:, var - 1] = w[:, var - 1]
            return out
        hinv2 = [[None] * d for _ in range(trunc + 1)]
        hfunc1 = [[None] * d for _ in range(trunc + 1)]
        for j, var in enumerate(s.order):
            hinv2[min(trunc, d - 1 - j)][j] = w[:, var - 1]
        for var in range(d - 2, -1, -1):
            for tree in range(min(trunc - 1, d - var - 2), -1, -1):
                pc = self.pair_copulas[tree][var]
                m = s.min_at(tree, var)
                u1 = hinv2[tree][m - 1] if m == s.struct_at(tree, var) else hfunc1[tree][m - 1]
                hinv2[tree][var] = pc.hinv2(torch.stack([hinv2[tree + 1][var], u1], dim=1))
                if s.needed_hfunc1_at(tree, var):
                    hfunc1[tree + 1][var] = pc.hfunc1(torch.stack([hinv2[tree][var], u1], dim=1))
        for j, var in enumerate(s.order):
            out[:, var - 1] = hinv2[0][j]
        return out

    def inverse_rosenblatt(self, w: torch.Tensor) -> torch.Tensor:
        """Map independent uniforms to data from the vine."""
        w = self._check_input(w)
        return self.batcher.map_rows(self._inverse_rosenblatt_rows, w)

    # ---- simulation and distribution function ----

    def simulate(self, n: int, engine: QuasiRandomEngine) -> tuple[torch.Tensor, QuasiRandomEngine]:
        """Draw ``n`` rows; each batch uses its own slice of ``engine``.

        Returns the sample and the engine advanced past the points used.
        """
        n = int(n)
        if n < 0:
            raise ValueError("n must be non-negative")
        if engine.dim != self.structure.d:
            raise ValueError(f"engine has dimension {engine.dim}, vine has {self.structure.d}")

        def batch(start: int, stop: int) -> torch.Tensor:
            return self._inverse_rosenblatt_rows(engine.slice(start, stop - start))

        x = self.batcher.map_ranges(batch, n)
        return stats.clamp_unit(x), engine.advance(n)

    def cdf(self, u: torch.Tensor, n_mc: int, engine: QuasiRandomEngine) -> tuple[torch.Tensor, QuasiRandomEngine]:
        """Quasi-Monte-Carlo estimate of the distribution function at each row of ``u``."""
        u = self._check_input(u)
        if n_mc < 1:
            raise ValueError("n_mc must be positive")
        sample, engine = self.simulate(n_mc, engine)

        def rows(x: torch.Tensor) -> torch.Tensor:
            parts = []
            for a in range(0, x.shape[0], _CDF_CHUNK):
                block = x[a:a + _CDF_CHUNK]
                inside = (sample.unsqueeze(0) <= block.unsqueeze(1)).all(dim=2)
                parts.append(inside.to(torch.float64).mean(dim=1))
            return torch.cat(parts) if parts else torch.empty(0, dtype=torch.float64)

        return self.batcher.map_rows(rows, u), engine
