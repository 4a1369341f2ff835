"""Vine copula model: selection, evaluation, simulation and criteria."""

from __future__ import annotations

import copy
import dataclasses
from dataclasses import dataclass, field
from typing import Any, Sequence

import torch

from . import criteria, errors, stats
from .bicop import PairCopula
from .controls import FitControlsVinecop
from .errors import Diagnostic, StructureError
from .evaluator import VineEvaluator, check_pair_copulas
from .families import BicopFamily
from .qrng import QuasiRandomEngine
from .structure import StructureModel, as_structure, from_matrix, to_matrix
from .vine_select import StructureSelector


@dataclass
class VineCopula:
    """An R-vine structure with one pair copula per edge of each stored tree.

    Trees beyond ``structure.trunc_lvl`` are independence trees. Fitted
    models carry ``nobs``, the fitted log-likelihood, the threshold that was
    used, their controls and the non-fatal :attr:`diagnostics` raised while
    fitting; hand-specified models leave these at their defaults.
    """

    structure: StructureModel
    pair_copulas: list[list[PairCopula]]
    nobs: int = 0
    threshold: float = 0.0
    loglik_: float | None = None
    controls: FitControlsVinecop | None = field(default=None, repr=False)
    data: torch.Tensor | None = field(default=None, repr=False)
    diagnostics: list[Diagnostic] = field(default_factory=list, repr=False)

    def __post_init__(self):
        check_pair_copulas(self.pair_copulas, self.structure)
        self.pair_copulas = [list(tree) for tree in self.pair_copulas[:self.structure.trunc_lvl]]

    # ---- construction ----

    @classmethod
    def from_pair_copulas(cls, pair_copulas: Sequence[Sequence[PairCopula]], structure: Any) -> "VineCopula":
        """Hand-specified model; the structure is truncated to the trees given."""
        structure = as_structure(structure)
        k = len(pair_copulas)
        if k > structure.d - 1:
            raise StructureError(f"a {structure.d}-dimensional vine has at most {structure.d - 1} trees, got {k}")
        if k > structure.trunc_lvl:
            raise StructureError(f"structure only defines {structure.trunc_lvl} trees, got pair copulas for {k}")
        pcs = [[copy.deepcopy(pc) for pc in tree] for tree in pair_copulas]
        return cls(structure=structure.truncate(k), pair_copulas=pcs)

    @classmethod
    def independence(cls, d: int) -> "VineCopula":
        structure = StructureModel.dvine(list(range(1, int(d) + 1)), trunc_lvl=0)
        return cls(structure=structure, pair_copulas=[])

    # ---- accessors ----

    def dim(self) -> tuple[int, int]:
        return self.structure.dim()

    @property
    def d(self) -> int:
        return self.structure.d

    @property
    def trunc_lvl(self) -> int:
        return self.structure.trunc_lvl

    @property
    def order(self) -> tuple[int, ...]:
        return self.structure.order

    @property
    def matrix(self) -> torch.Tensor:
        return self.structure.to_matrix()

    @property
    def npars(self) -> float:
        return float(sum(pc.npars for tree in self.pair_copulas for pc in tree))

    def get_pair_copula(self, tree: int, edge: int) -> PairCopula:
        return self.pair_copulas[tree][edge]

    @property
    def families(self) -> list[list[BicopFamily]]:
        return [[pc.family for pc in tree] for tree in self.pair_copulas]

    @property
    def taus(self) -> list[list[float]]:
        return [[pc.tau for pc in tree] for tree in self.pair_copulas]

    def _evaluator(self, cores: int = 1) -> VineEvaluator:
        return VineEvaluator(self.structure, self.pair_copulas, cores=cores)

    # ---- evaluation ----

    def pdf(self, u: torch.Tensor, *, cores: int = 1) -> torch.Tensor:
        return self._evaluator(cores).pdf(u)

    def cdf(
        self,
        u: torch.Tensor,
        *,
        n_mc: int = 10000,
        cores: int = 1,
        seeds: Sequence[int] = (),
        engine: QuasiRandomEngine | None = None,
    ) -> torch.Tensor:
        """Distribution function by quasi-Monte-Carlo with ``n_mc`` points."""
        if engine is None:
            engine = QuasiRandomEngine.for_dimension(self.d, qrng=True, seeds=seeds)
        values, _ = self._evaluator(cores).cdf(u, n_mc, engine)
        return values

    def simulate(
        self,
        n: int,
        *,
        qrng: bool = False,
        cores: int = 1,
        seeds: Sequence[int] = (),
        engine: QuasiRandomEngine | None = None,
    ) -> torch.Tensor:
        if engine is None:
            engine = QuasiRandomEngine.for_dimension(self.d, qrng=qrng, seeds=seeds)
        x, _ = self._evaluator(cores).simulate(n, engine)
        return x

    def rosenblatt(self, u: torch.Tensor, *, cores: int = 1) -> torch.Tensor:
        return self._evaluator(cores).rosenblatt(u)

    def inverse_rosenblatt(self, u: torch.Tensor, *, cores: int = 1) -> torch.Tensor:
        return self._evaluator(cores).inverse_rosenblatt(u)

    # ---- criteria ----

    def _loglik_and_n(self, u: torch.Tensor | None) -> tuple[float, int]:
        if u is not None:
            u = stats.as_float64(u)
            return self._evaluator().loglik(u), int(u.shape[0])
        if self.loglik_ is None:
            raise ValueError("model has not been fitted; pass data explicitly")
        return float(self.loglik_), int(self.nobs)

    def loglik(self, u: torch.Tensor | None = None) -> float:
        return self._loglik_and_n(u)[0]

    def aic(self, u: torch.Tensor | None = None) -> float:
        return criteria.aic(self.loglik(u), self.npars)

    def bic(self, u: torch.Tensor | None = None) -> float:
        ll, n = self._loglik_and_n(u)
        return criteria.bic(ll, self.npars, n)

    def indep_counts(self) -> list[int]:
        return [sum(pc.family == BicopFamily.indep for pc in tree) for tree in self.pair_copulas]

    def mbicv(self, psi0: float = 0.9, newdata: torch.Tensor | None = None) -> float:
        """Modified vine BIC.

        ``-2 loglik + log(n) npars - 2 sum_t [q_t log(psi0^t) + (d - t - q_t) log(1 - psi0^t)]``
        with ``q_t`` the number of independence copulas in tree ``t``.
        """
        ll, n = self._loglik_and_n(newdata)
        return criteria.mbicv(ll, self.npars, n, self.indep_counts(), self.d, psi0)

    # ---- modification ----

    def truncate(self, trunc_lvl: int) -> None:
        """Drop trees beyond ``trunc_lvl`` in place."""
        structure = self.structure.truncate(trunc_lvl)
        if structure is self.structure:
            return
        self.structure = structure
        self.pair_copulas = self.pair_copulas[:structure.trunc_lvl]
        self.loglik_ = self._evaluator().loglik(self.data) if self.data is not None else None

    # ---- fitted values ----

    def predict(self, newdata: torch.Tensor, what: str = "pdf", *, n_mc: int = 10000,
                cores: int = 1, seeds: Sequence[int] = ()) -> torch.Tensor:
        if what == "pdf":
            return self.pdf(newdata, cores=cores)
        if what == "cdf":
            return self.cdf(newdata, n_mc=n_mc, cores=cores, seeds=seeds)
        raise ValueError("what must be 'pdf' or 'cdf'")

    def fitted(self, what: str = "pdf", *, n_mc: int = 10000, cores: int = 1,
               seeds: Sequence[int] = ()) -> torch.Tensor:
        if self.data is None:
            raise ValueError("fitted values require a model fitted with keep_data=True")
        return self.predict(self.data, what, n_mc=n_mc, cores=cores, seeds=seeds)

    # ---- reporting ----

    def summary(self) -> list[dict[str, Any]]:
        rows = []
        for t, tree in enumerate(self.pair_copulas):
            for e, pc in enumerate(tree):
                rows.append({
                    "tree": t,
                    "edge": e,
                    "conditioned": self.structure.conditioned_set(t, e),
                    "conditioning": self.structure.conditioning_set(t, e),
                    "family": pc.family.value,
                    "rotation": pc.rotation,
                    "parameters": [] if pc.family == BicopFamily.tll else pc.parameters.tolist(),
                    "df": pc.npars,
                    "tau": pc.tau,
                    "loglik": pc.loglik_,
                })
        return rows

    def str(self) -> str:
        lines = [f"<torchrvine.VineCopula> {self.d} variables, {self.trunc_lvl} trees"]
        lines.append(f"{'tree':>4}  {'edge':>4}  {'conditioned':>12}  {'conditioning':>14}  "
                     f"{'family':>9}  {'rotation':>8}  {'parameters':>18}  {'df':>6}  {'tau':>6}")
        for row in self.summary():
            pars = ", ".join(f"{v:.2f}" for v in row["parameters"])
            cond = ",".join(map(str, row["conditioned"]))
            ning = ",".join(map(str, row["conditioning"]))
            lines.append(f"{row['tree']:>4}  {row['edge']:>4}  {cond:>12}  {ning:>14}  {row['family']:>9}  "
                         f"{row['rotation']:>8}  {pars:>18}  {row['df']:>6.2f}  {row['tau']:>6.2f}")
        if self.loglik_ is not None:
            lines.append(f"nobs = {self.nobs}, loglik = {self.loglik_:.2f}, npars = {self.npars:.2f}, "
                         f"threshold = {self.threshold:.4f}")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.str()


def select_structure(
    data: torch.Tensor,
    family_set: Any = None,
    structure: Any = None,
    controls: FitControlsVinecop | None = None,
) -> VineCopula:
    """Select structure (unless given), families and parameters from copula data.

    ``data`` holds pseudo-observations in ``(0, 1)``. Non-fatal problems are
    returned as ``VineCopula.diagnostics`` and emitted as warnings.
    """
    if controls is None:
        controls = FitControlsVinecop()
    if family_set is not None:
        controls = dataclasses.replace(controls, family_set=family_set)
    fixed = as_structure(structure) if structure is not None else None
    data = stats.as_float64(data)
    result = StructureSelector(data, controls, structure=fixed).select()
    errors.emit(result.diagnostics)
    return VineCopula(
        structure=result.structure,
        pair_copulas=result.pair_copulas,
        nobs=int(data.shape[0]),
        threshold=result.threshold,
        loglik_=result.loglik,
        controls=controls,
        data=stats.clamp_unit(data) if controls.keep_data else None,
        diagnostics=result.diagnostics,
    )


def density(u: torch.Tensor, vine: VineCopula, cores: int = 1) -> torch.Tensor:
    return vine.pdf(u, cores=cores)


def cdf(u: torch.Tensor, vine: VineCopula, n_mc: int = 10000, cores: int = 1,
        seeds: Sequence[int] = ()) -> torch.Tensor:
    return vine.cdf(u, n_mc=n_mc, cores=cores, seeds=seeds)


def simulate(n: int, vine: VineCopula, qrng: bool = False, cores: int = 1,
             seeds: Sequence[int] = ()) -> torch.Tensor:
    return vine.simulate(n, qrng=qrng, cores=cores, seeds=seeds)


def mbicv(vine: VineCopula, psi0: float = 0.9, newdata: torch.Tensor | None = None) -> float:
    return vine.mbicv(psi0, newdata)


__all__ = [
    "VineCopula",
    "select_structure",
    "density",
    "cdf",
    "simulate",
    "mbicv",
    "as_structure",
    "from_matrix",
    "to_matrix",
]
