"""Fitting controls for pair copulas and vine copulas."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

import torch

from . import families
from .errors import FamilyError

T = TypeVar("T")


@dataclass(frozen=True)
class Fixed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Automatic:
    pass


Setting = Union[Fixed, Automatic]


def as_setting(x: Any, *, unbounded: Any = None) -> Setting:
    """Normalise user input into ``Fixed(value)`` or ``Automatic()``.

    ``"auto"`` and NaN select automatically. ``None`` and infinity map to
    ``Fixed(unbounded)``.
    """
    if isinstance(x, (Fixed, Automatic)):
        return x
    if isinstance(x, str):
        if x.lower() == "auto":
            return Automatic()
        raise ValueError(f"expected a number or 'auto', got {x!r}")
    if x is None:
        return Fixed(unbounded)
    x = float(x)
    if math.isnan(x):
        return Automatic()
    if math.isinf(x):
        return Fixed(unbounded)
    return Fixed(x)


@dataclass
class FitControlsBicop:
    family_set: Any = "all"
    parametric_method: str = "mle"  # "mle" or "itau"
    nonparametric_method: str = "constant"  # "constant", "linear", "quadratic"
    nonparametric_mult: float = 1.0
    selection_criterion: str = "bic"  # "loglik", "aic", "bic", "mbic"
    weights: torch.Tensor | None = None
    psi0: float = 0.9
    preselect_families: bool = True
    allow_rotations: bool = True

    _criteria = ("loglik", "aic", "bic", "mbic")

    def __post_init__(self):
        self.family_set = families.expand_family_set(self.family_set)
        if self.parametric_method not in ("mle", "itau"):
            raise ValueError("parametric_method must be 'mle' or 'itau'")
        if self.parametric_method == "itau":
            self.family_set = [f for f in self.family_set if f in families.itau]
            if not self.family_set:
                raise FamilyError("no family in family_set supports parametric_method='itau'")
        if self.nonparametric_method not in ("constant", "linear", "quadratic"):
            raise ValueError("nonparametric_method must be 'constant', 'linear', or 'quadratic'")
        if self.nonparametric_mult <= 0:
            raise ValueError("nonparametric_mult must be positive")
        if self.selection_criterion not in self._criteria:
            raise ValueError(f"selection_criterion must be one of {self._criteria}")
        if not (0.0 < float(self.psi0) < 1.0):
            raise ValueError("psi0 must be in (0,1)")
        if self.weights is not None:
            self.weights = torch.as_tensor(self.weights, dtype=torch.float64).reshape(-1)

    def pair_controls(self, weights: torch.Tensor | None = None) -> "FitControlsBicop":
        criterion = self.selection_criterion
        if criterion == "mbicv":
            criterion = "mbic"
        return FitControlsBicop(
            family_set=list(self.family_set),
            parametric_method=self.parametric_method,
            nonparametric_method=self.nonparametric_method,
            nonparametric_mult=self.nonparametric_mult,
            selection_criterion=criterion,
            weights=self.weights if weights is None else weights,
            psi0=self.psi0,
            preselect_families=self.preselect_families,
            allow_rotations=self.allow_rotations,
        )

    def str(self) -> str:
        fam_names = ", ".join(f.value for f in self.family_set)
        parts = [
            f"Family set: {fam_names}",
            f"Parametric method: {self.parametric_method}",
            f"Nonparametric method: {self.nonparametric_method}",
            f"Nonparametric multiplier: {self.nonparametric_mult}",
            f"Weights: {'yes' if self.weights is not None else 'no'}",
            f"Selection criterion: {self.selection_criterion}",
            f"Preselect families: {self.preselect_families}",
            f"psi0: {self.psi0}",
        ]
        return "\n".join(parts)


@dataclass(frozen=True)
class SelectionPolicy:
    """Controls resolved against a concrete dimension, fixed for one fit."""

    d: int
    trunc_lvl: int
    select_trunc_lvl: bool
    threshold: float
    select_threshold: bool
    tree_criterion: str
    tree_algorithm: str
    psi0: float
    cores: int
    max_rounds: int
    show_trace: bool

    @property
    def sparse(self) -> bool:
        return self.select_trunc_lvl or self.select_threshold


@dataclass
class FitControlsVinecop(FitControlsBicop):
    trunc_lvl: Any = field(default_factory=lambda: Fixed(None))
    threshold: Any = field(default_factory=lambda: Fixed(0.0))
    tree_criterion: str = "tau"
    tree_algorithm: str = "mst_prim"
    show_trace: bool = False
    cores: int = 1
    keep_data: bool = False
    max_rounds: int = 20

    _criteria = ("loglik", "aic", "bic", "mbic", "mbicv")

    def __post_init__(self):
        super().__post_init__()
        self.trunc_lvl = as_setting(self.trunc_lvl)
        self.threshold = as_setting(self.threshold, unbounded=0.0)
        if isinstance(self.trunc_lvl, Fixed) and self.trunc_lvl.value is not None:
            k = float(self.trunc_lvl.value)
            if k < 0 or k != int(k):
                raise ValueError("trunc_lvl must be a non-negative integer")
            self.trunc_lvl = Fixed(int(k))
        if isinstance(self.threshold, Fixed) and not (0.0 <= float(self.threshold.value) <= 1.0):
            raise ValueError("threshold must be in [0, 1]")
        if self.tree_criterion not in ("tau", "rho", "hoeffd", "mcor", "joe"):
            raise ValueError("tree_criterion must be one of 'tau','rho','hoeffd','mcor','joe'")
        if self.tree_algorithm not in ("mst_prim", "mst_kruskal"):
            raise ValueError("tree_algorithm must be 'mst_prim' or 'mst_kruskal'")
        if int(self.cores) < 1:
            raise ValueError("cores must be >= 1")
        if int(self.max_rounds) < 1:
            raise ValueError("max_rounds must be >= 1")

    def resolve(self, d: int) -> SelectionPolicy:
        select_trunc = isinstance(self.trunc_lvl, Automatic)
        if select_trunc or self.trunc_lvl.value is None:
            trunc = d - 1
        else:
            trunc = min(int(self.trunc_lvl.value), d - 1)
        select_thr = isinstance(self.threshold, Automatic)
        thr = 1.0 if select_thr else float(self.threshold.value)
        return SelectionPolicy(
            d=int(d),
            trunc_lvl=max(trunc, 0),
            select_trunc_lvl=select_trunc,
            threshold=thr,
            select_threshold=select_thr,
            tree_criterion=self.tree_criterion,
            tree_algorithm=self.tree_algorithm,
            psi0=float(self.psi0),
            cores=int(self.cores),
            max_rounds=int(self.max_rounds),
            show_trace=bool(self.show_trace),
        )

    def str(self) -> str:
        def fmt(s: Setting) -> str:
            if isinstance(s, Automatic):
                return "automatic"
            return "none" if s.value is None else str(s.value)

        parts = [
            super().str(),
            f"Truncation level: {fmt(self.trunc_lvl)}",
            f"Threshold: {fmt(self.threshold)}",
            f"Tree criterion: {self.tree_criterion}",
            f"Tree algorithm: {self.tree_algorithm}",
            f"Show trace: {self.show_trace}",
            f"Cores: {self.cores}",
        ]
        return "\n".join(parts)
