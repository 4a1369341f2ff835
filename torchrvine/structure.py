"""R-vine structures: natural-order triangular arrays and the matrix encoding."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import torch

from .errors import StructureError


def _check_order(order: Sequence[int], d: int) -> tuple[int, ...]:
    o = tuple(int(x) for x in order)
    if len(o) != d:
        raise StructureError(f"order must have length d={d}, got {len(o)}")
    if sorted(o) != list(range(1, d + 1)):
        raise StructureError(f"order must be a permutation of 1..{d}, got {list(o)}")
    return o


def _check_shape(struct: Sequence[Sequence[int]], d: int, trunc_lvl: int) -> None:
    if trunc_lvl > max(d - 1, 0):
        raise StructureError(f"a {d}-dimensional vine has at most {max(d - 1, 0)} trees, got {trunc_lvl}")
    if len(struct) != trunc_lvl:
        raise StructureError(f"struct_array must have {trunc_lvl} rows, got {len(struct)}")
    for t in range(trunc_lvl):
        if len(struct[t]) != d - 1 - t:
            raise StructureError(f"tree {t} must have {d - 1 - t} edges, got {len(struct[t])}")


def _check_columns(struct: Sequence[Sequence[int]], d: int, trunc_lvl: int) -> None:
    # Column e holds the partners of the variable at position e, which must
    # come from positions further right and must not repeat.
    for e in range(d - 1):
        seen = set()
        for t in range(min(trunc_lvl, d - 1 - e)):
            v = struct[t][e]
            if not e + 2 <= v <= d:
                raise StructureError(
                    f"tree {t}, edge {e}: entry {v} must be in {e + 2}..{d}")
            if v in seen:
                raise StructureError(f"tree {t}, edge {e}: variable {v} repeated in column {e}")
            seen.add(v)


def _compute_min_array(struct: Sequence[Sequence[int]], d: int, trunc_lvl: int) -> list[list[int]]:
    min_array = [list(row) for row in struct]
    for e in range(d - 1):
        for t in range(1, min(d - 1 - e, trunc_lvl)):
            min_array[t][e] = min(struct[t][e], min_array[t - 1][e])
    return min_array


def _check_proximity(struct: Sequence[Sequence[int]], min_array: list[list[int]], d: int, trunc_lvl: int) -> None:
    for t in range(1, trunc_lvl):
        for e in range(d - 1 - t):
            m = min_array[t][e]
            target = {struct[i][e] for i in range(t)} | {struct[t][e]}
            test = {struct[i][m - 1] for i in range(t)} | {m}
            if target != test:
                raise StructureError(f"tree {t}, edge {e}: proximity condition violated")


def _compute_needed_hfunc1(struct, min_array, d: int, trunc_lvl: int) -> list[list[bool]]:
    needed = [[False] * (d - 1) for _ in range(trunc_lvl)]
    for t in range(min(d - 2, max(trunc_lvl - 1, 0))):
        for e in range(d - 2 - t):
            if struct[t + 1][e] != min_array[t + 1][e]:
                needed[t][min_array[t + 1][e] - 1] = True
    return needed


def _compute_needed_hfunc2(struct, min_array, d: int, trunc_lvl: int) -> list[list[bool]]:
    needed = [[False] * (d - 1) for _ in range(trunc_lvl)]
    for t in range(min(d - 2, max(trunc_lvl - 1, 0))):
        for e in range(d - 2 - t):
            needed[t][e] = True
            if struct[t + 1][e] == min_array[t + 1][e]:
                needed[t][min_array[t + 1][e] - 1] = True
    return needed


@dataclass(frozen=True)
class StructureModel:
    """R-vine structure stored in natural order.

    ``order`` is a permutation of ``1..d``. ``struct_array[t][e]`` is the
    1-based position in ``order`` of the second conditioned variable of edge
    ``e`` in tree ``t``; the first conditioned variable is ``order[e]``. Trees
    beyond ``trunc_lvl`` are independence trees and are not stored.
    """

    d: int
    trunc_lvl: int
    order: tuple[int, ...]
    struct_array: tuple[tuple[int, ...], ...]
    min_array: list[list[int]] = field(init=False, repr=False, compare=False, hash=False)
    needed_hfunc1: list[list[bool]] = field(init=False, repr=False, compare=False, hash=False)
    needed_hfunc2: list[list[bool]] = field(init=False, repr=False, compare=False, hash=False)

    def __post_init__(self):
        d, trunc = int(self.d), int(self.trunc_lvl)
        if d < 1:
            raise StructureError("dimension must be at least 1")
        if trunc < 0:
            raise StructureError("trunc_lvl must be non-negative")
        order = _check_order(self.order, d)
        struct = tuple(tuple(int(v) for v in row) for row in self.struct_array)
        _check_shape(struct, d, trunc)
        _check_columns(struct, d, trunc)
        min_array = _compute_min_array(struct, d, trunc)
        _check_proximity(struct, min_array, d, trunc)
        object.__setattr__(self, "d", d)
        object.__setattr__(self, "trunc_lvl", trunc)
        object.__setattr__(self, "order", order)
        object.__setattr__(self, "struct_array", struct)
        object.__setattr__(self, "min_array", min_array)
        object.__setattr__(self, "needed_hfunc1", _compute_needed_hfunc1(struct, min_array, d, trunc))
        object.__setattr__(self, "needed_hfunc2", _compute_needed_hfunc2(struct, min_array, d, trunc))

    # ---- construction ----

    @classmethod
    def from_order_and_struct_array(
        cls,
        order: Sequence[int],
        struct_array: Sequence[Sequence[int]],
        *,
        trunc_lvl: int | None = None,
    ) -> "StructureModel":
        trunc = len(struct_array) if trunc_lvl is None else int(trunc_lvl)
        return cls(d=len(order), trunc_lvl=trunc, order=tuple(order),
                   struct_array=tuple(tuple(r) for r in struct_array[:trunc]))

    @classmethod
    def from_matrix(cls, matrix) -> "StructureModel":
        """Parse a ``d x d`` R-vine matrix (order on the anti-diagonal)."""
        M = torch.as_tensor(matrix)
        if M.ndim != 2 or M.shape[0] != M.shape[1]:
            raise StructureError("matrix must be square")
        if M.is_floating_point():
            if not bool(torch.all(M == torch.round(M))):
                raise StructureError("matrix entries must be integers")
        M = M.to(torch.int64)
        d = int(M.shape[0])
        for i in range(d):
            for j in range(d - i, d):
                if int(M[i, j]) != 0:
                    raise StructureError(f"entry ({i}, {j}) below the anti-diagonal must be zero")
        order = _check_order([int(M[d - 1 - j, j]) for j in range(d)], d)
        position = {v: k + 1 for k, v in enumerate(order)}

        struct: list[list[int]] = []
        trunc = d - 1
        for t in range(d - 1):
            row = [int(M[t, e]) for e in range(d - 1 - t)]
            if all(v == 0 for v in row):
                trunc = t
                break
            if any(v == 0 for v in row):
                raise StructureError(f"tree {t} is only partially specified")
            unknown = [v for v in row if v not in position]
            if unknown:
                raise StructureError(f"tree {t}: unknown variable {unknown[0]}")
            struct.append([position[v] for v in row])
        for t in range(trunc, d - 1):
            if any(int(M[t, e]) != 0 for e in range(d - 1 - t)):
                raise StructureError(f"tree {t} follows a truncated tree and must be all zero")
        return cls(d=d, trunc_lvl=trunc, order=order, struct_array=tuple(tuple(r) for r in struct))

    @classmethod
    def dvine(cls, order: Sequence[int], *, trunc_lvl: int | None = None) -> "StructureModel":
        d = len(order)
        trunc = d - 1 if trunc_lvl is None else max(0, min(d - 1, int(trunc_lvl)))
        struct = [[t + e + 2 for e in range(d - 1 - t)] for t in range(trunc)]
        return cls.from_order_and_struct_array(order, struct)

    @classmethod
    def cvine(cls, order: Sequence[int], *, trunc_lvl: int | None = None) -> "StructureModel":
        d = len(order)
        trunc = d - 1 if trunc_lvl is None else max(0, min(d - 1, int(trunc_lvl)))
        struct = [[d - t] * (d - 1 - t) for t in range(trunc)]
        return cls.from_order_and_struct_array(order, struct)

    # ---- encoding ----

    def to_matrix(self) -> torch.Tensor:
        d = self.d
        M = torch.zeros((d, d), dtype=torch.int64)
        for j in range(d):
            M[d - 1 - j, j] = self.order[j]
        for t, row in enumerate(self.struct_array):
            for e, v in enumerate(row):
                M[t, e] = self.order[v - 1]
        return M

    @property
    def matrix(self) -> torch.Tensor:
        return self.to_matrix()

    # ---- queries ----

    def struct_at(self, tree: int, edge: int) -> int:
        return self.struct_array[tree][edge]

    def min_at(self, tree: int, edge: int) -> int:
        return self.min_array[tree][edge]

    def needed_hfunc1_at(self, tree: int, edge: int) -> bool:
        if not 0 <= tree < self.trunc_lvl or not 0 <= edge < self.d - 1:
            return False
        return self.needed_hfunc1[tree][edge]

    def needed_hfunc2_at(self, tree: int, edge: int) -> bool:
        if not 0 <= tree < self.trunc_lvl or not 0 <= edge < self.d - 1:
            return False
        return self.needed_hfunc2[tree][edge]

    def _check_edge(self, tree: int, edge: int) -> None:
        if not 0 <= tree < self.trunc_lvl:
            raise IndexError(f"tree {tree} out of range for truncation level {self.trunc_lvl}")
        if not 0 <= edge < self.d - 1 - tree:
            raise IndexError(f"edge {edge} out of range for tree {tree}")

    def conditioned_set(self, tree: int, edge: int) -> list[int]:
        """Variable labels of the two conditioned variables of an edge."""
        self._check_edge(tree, edge)
        return [self.order[edge], self.order[self.struct_array[tree][edge] - 1]]

    def conditioning_set(self, tree: int, edge: int) -> list[int]:
        self._check_edge(tree, edge)
        return [self.order[self.struct_array[t][edge] - 1] for t in range(tree)]

    def dim(self) -> tuple[int, int]:
        return self.d, self.trunc_lvl

    def truncate(self, trunc_lvl: int) -> "StructureModel":
        """Return the structure with trees beyond ``trunc_lvl`` removed."""
        k = int(trunc_lvl)
        if k < 0:
            raise ValueError("trunc_lvl must be non-negative")
        if k >= self.trunc_lvl:
            return self
        return StructureModel(d=self.d, trunc_lvl=k, order=self.order, struct_array=self.struct_array[:k])

    def str(self) -> str:
        lines = [f"<torchrvine.StructureModel> dim={self.d}, trunc_lvl={self.trunc_lvl}"]
        lines.extend(" ".join(f"{v:>2d}" for v in row) for row in self.to_matrix().tolist())
        return "\n".join(lines)


def as_structure(x: Any) -> StructureModel:
    """Coerce a structure, an R-vine matrix, or ``(order, struct_array)``."""
    if isinstance(x, StructureModel):
        return x
    if isinstance(x, tuple) and len(x) == 2 and not torch.is_tensor(x[1]):
        order, struct_array = x
        # A struct_array is a (possibly empty) list of rows; a matrix row holds integers.
        if len(struct_array) == 0 or isinstance(struct_array[0], (list, tuple)):
            return StructureModel.from_order_and_struct_array(order, struct_array)
    return StructureModel.from_matrix(x)


def from_matrix(matrix) -> StructureModel:
    return StructureModel.from_matrix(matrix)


def to_matrix(structure: StructureModel) -> torch.Tensor:
    return as_structure(structure).to_matrix()
