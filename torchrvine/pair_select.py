"""Selection of the family, rotation and parameters of a single pair copula."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import torch

from . import criteria, families, stats
from .bicop import PairCopula, parameter_bounds
from .controls import FitControlsBicop
from .errors import Diagnostic, FitDegeneracy, NumericWarning
from .families import BicopFamily, family_can_rotate

logger = logging.getLogger(__name__)

MIN_ROWS = 10


@dataclass
class PairSelection:
    """Outcome of :func:`select_pair`.

    ``criterion_value`` is in minimisation form; for the ``loglik`` criterion
    it is ``-2 * loglik``.
    """

    pair_copula: PairCopula
    loglik: float
    criterion_value: float
    diagnostics: list[Diagnostic] = field(default_factory=list)


def _independence(n: int, controls: FitControlsBicop, diagnostics=None) -> PairSelection:
    pc = PairCopula(BicopFamily.indep, nobs=n, loglik_=0.0)
    value = criteria.pair_criterion(controls.selection_criterion, 0.0, 0.0, max(n, 1), True, controls.psi0)
    return PairSelection(pc, 0.0, value, list(diagnostics or []))


def _candidates(controls: FitControlsBicop, tau: float) -> list[PairCopula]:
    rotations = (0, 90, 180, 270) if controls.allow_rotations else (0,)
    if controls.preselect_families and controls.allow_rotations:
        rotations = (0, 180) if tau > 0 else (90, 270)
    out = [PairCopula(BicopFamily.indep)]
    for fam in controls.family_set:
        if fam == BicopFamily.indep:
            continue
        if not family_can_rotate(fam):
            out.append(PairCopula(fam))
        else:
            out.extend(PairCopula(fam, rot) for rot in rotations)
    return out


def _quadrant_difference(u: torch.Tensor, tau: float, weights: torch.Tensor | None) -> float:
    """Normal-score correlation in the upper minus the lower diagonal quadrant."""
    z = stats.qnorm(u)
    x1, x2 = z[:, 0], z[:, 1]
    if tau > 0:
        m1, m2 = (x1 > 0) & (x2 > 0), (x1 < 0) & (x2 < 0)
    else:
        m1, m2 = (x1 < 0) & (x2 > 0), (x1 > 0) & (x2 < 0)

    def cor(mask: torch.Tensor) -> float:
        if int(mask.sum()) <= 2:
            return 0.0
        w = weights[mask] if weights is not None else None
        c = stats.pearson_cor(x1[mask], x2[mask], weights=w)
        return 0.0 if math.isnan(c) else c

    return cor(m1) - cor(m2)


def _preselect(cands: list[PairCopula], cdiff: float) -> list[PairCopula]:
    def keep(pc: PairCopula) -> bool:
        fam, rot = pc.family, pc.rotation
        if not family_can_rotate(fam):
            return not (fam == BicopFamily.frank and abs(cdiff) > 0.3)
        if fam in families.bb:
            return True
        flipped = rot in (90, 180)
        if cdiff > 0.05:
            return (fam in families.lt and flipped) or (fam in families.ut and not flipped)
        if cdiff < -0.05:
            return (fam in families.lt and not flipped) or (fam in families.ut and flipped)
        return True

    return [pc for pc in cands if keep(pc)]


def _boundary_message(pc: PairCopula) -> str | None:
    if pc.family in (BicopFamily.indep, BicopFamily.tll):
        return None
    lb, ub = parameter_bounds(pc.family)
    p = pc.parameters
    checked = 1 if pc.family == BicopFamily.student else p.numel()
    for i in range(checked):
        span = float(ub[i] - lb[i])
        if min(float(p[i] - lb[i]), float(ub[i] - p[i])) <= 1e-4 * span:
            return (f"{pc.family.value} parameter {i} = {float(p[i]):.6g} is at the boundary "
                    f"[{float(lb[i]):g}, {float(ub[i]):g}]")
    return None


def select_pair(
    u: torch.Tensor,
    controls: FitControlsBicop | None = None,
    *,
    threshold: float = 0.0,
    dependence: float | None = None,
) -> PairSelection:
    """Pick the best pair copula for bivariate pseudo-observations ``u``.

    Candidates are scored with ``controls.selection_criterion`` in family
    enumeration order, then rotation order; only a strictly better score
    replaces the incumbent, so ties keep the earlier candidate. The
    independence copula is always a candidate. When ``threshold`` is positive
    and the dependence measure (``dependence`` or ``|tau|``) is below it, the
    independence copula is returned without fitting.
    """
    if controls is None:
        controls = FitControlsBicop()
    u = stats.as_float64(u)
    if u.ndim != 2 or u.shape[1] != 2:
        raise ValueError("data must have shape (n, 2)")
    w = controls.weights
    mask = torch.isfinite(u).all(dim=1)
    if w is not None:
        mask = mask & torch.isfinite(w)
    u = stats.clamp_unit(u[mask])
    w = w[mask] if w is not None else None
    n = int(u.shape[0])

    if n < MIN_ROWS:
        return _independence(n, controls, [Diagnostic(FitDegeneracy, f"only {n} complete observations")])
    if bool((u.max(dim=0).values - u.min(dim=0).values <= 1e-12).any()):
        return _independence(n, controls, [Diagnostic(FitDegeneracy, "constant input column")])

    tau = stats.kendall_tau(u[:, 0], u[:, 1], weights=w)
    if math.isnan(tau):
        return _independence(n, controls, [Diagnostic(FitDegeneracy, "Kendall's tau is undefined")])
    if threshold > 0.0:
        measure = abs(tau) if dependence is None else abs(dependence)
        if measure < threshold:
            return _independence(n, controls)

    cands = _candidates(controls, tau)
    if controls.preselect_families:
        cands = _preselect(cands, _quadrant_difference(u, tau, w))

    fit_controls = controls if w is controls.weights else FitControlsBicop(
        family_set=list(controls.family_set),
        parametric_method=controls.parametric_method,
        nonparametric_method=controls.nonparametric_method,
        nonparametric_mult=controls.nonparametric_mult,
        selection_criterion=controls.selection_criterion,
        weights=w,
        psi0=controls.psi0,
        preselect_families=controls.preselect_families,
        allow_rotations=controls.allow_rotations,
    )
    n_eff = criteria.n_eff(w, n)
    best: PairSelection | None = None
    failures: list[str] = []
    for pc in cands:
        try:
            pc.fit(u, fit_controls)
        except (RuntimeError, ValueError) as e:
            logger.debug("fitting %s (rotation %d) failed: %s", pc.family.value, pc.rotation, e)
            failures.append(f"{pc.family.value}/{pc.rotation}: {e}")
            continue
        ll = float(pc.loglik_)
        if not math.isfinite(ll):
            failures.append(f"{pc.family.value}/{pc.rotation}: non-finite log-likelihood")
            continue
        value = criteria.pair_criterion(controls.selection_criterion, ll, pc.npars, n_eff,
                                        pc.family == BicopFamily.indep, controls.psi0)
        if best is None or value < best.criterion_value:
            best = PairSelection(pc, ll, value)

    fitted = [pc for pc in cands if pc.family != BicopFamily.indep]
    if fitted and len(failures) == len(fitted):
        return _independence(n, controls, [Diagnostic(
            FitDegeneracy, "no candidate family could be fit (" + "; ".join(failures[:3]) + ")")])

    msg = _boundary_message(best.pair_copula)
    if msg is not None:
        best.diagnostics.append(Diagnostic(NumericWarning, msg))
    return best

