"""Information criteria for pair copulas and vines."""

from __future__ import annotations

import math
from typing import Sequence

import torch


def n_eff(weights: torch.Tensor | None, n: int) -> float:
    """Effective sample size ``(sum w)^2 / sum w^2``; ``n`` without weights."""
    if weights is None or weights.numel() == 0:
        return float(n)
    ws = float(weights.sum())
    w2s = float((weights * weights).sum())
    if w2s <= 0.0:
        return float(n)
    return ws * ws / w2s


def aic(loglik: float, npars: float) -> float:
    return -2.0 * loglik + 2.0 * npars


def bic(loglik: float, npars: float, n: float) -> float:
    return -2.0 * loglik + math.log(n) * npars


def mbic(loglik: float, npars: float, n: float, is_indep: bool, psi0: float = 0.9) -> float:
    """BIC with a prior weight ``psi0`` on the edge being non-independent."""
    log_prior = math.log(1.0 - psi0) if is_indep else math.log(psi0)
    return -2.0 * loglik + math.log(n) * npars - 2.0 * log_prior


def pair_criterion(name: str, loglik: float, npars: float, n: float, is_indep: bool, psi0: float) -> float:
    """Criterion in minimisation form (``loglik`` is reported as ``-2 loglik``)."""
    if name == "loglik":
        return -2.0 * loglik
    if name == "aic":
        return aic(loglik, npars)
    if name == "bic":
        return bic(loglik, npars, n)
    if name == "mbic":
        return mbic(loglik, npars, n, is_indep, psi0)
    raise ValueError(f"unknown selection criterion {name!r}")


def mbicv_penalty(indep_counts: Sequence[int], d: int, psi0: float) -> float:
    """Tree-depth prior term of the mBICV.

    ``indep_counts[t - 1]`` is the number of independence copulas in tree
    ``t``. Trees without an entry (beyond the truncation level) count as fully
    independent.
    """
    total = 0.0
    for t in range(1, d):
        q = indep_counts[t - 1] if t - 1 < len(indep_counts) else d - t
        p = psi0 ** t
        total += q * math.log(p) + (d - t - q) * math.log1p(-p)
    return -2.0 * total


def mbicv(loglik: float, npars: float, n: float, indep_counts: Sequence[int], d: int, psi0: float = 0.9) -> float:
    if not 0.0 < psi0 < 1.0:
        raise ValueError("psi0 must be in (0,1)")
    return -2.0 * loglik + math.log(n) * npars + mbicv_penalty(indep_counts, d, psi0)


def tree_criterion(loglik: float, npars: float, n: float, n_nonindep: int, n_indep: int,
                   tree: int, psi0: float) -> float:
    """Contribution of tree ``tree`` (1-based) to the sparse-selection criterion."""
    p = psi0 ** tree
    log_prior = n_nonindep * math.log(p) + n_indep * math.log1p(-p)
    return -2.0 * loglik + math.log(n) * npars - 2.0 * log_prior


def next_threshold(thresholded: Sequence[float], alpha: float = 0.05) -> float:
    """Threshold that releases at least a fraction ``alpha`` of the thresholded edges."""
    if not thresholded:
        return 1.0
    xs = sorted(thresholded, reverse=True)
    k = max(1, math.ceil(alpha * len(xs)))
    return float(xs[k - 1])
