"""Bounded maximisation routines used to fit pair-copula parameters."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

import torch


@dataclass
class OptimizeResult:
    x: torch.Tensor
    fun: float  # objective value at x (maximized)
    n_eval: int


def _to_box(z: torch.Tensor, lb: torch.Tensor, ub: torch.Tensor) -> torch.Tensor:
    return lb + (ub - lb) * torch.sigmoid(z)


def _from_box(x: torch.Tensor, lb: torch.Tensor, ub: torch.Tensor) -> torch.Tensor:
    s = ((x - lb) / (ub - lb).clamp_min(1e-12)).clamp(1e-12, 1.0 - 1e-12)
    return torch.log(s) - torch.log1p(-s)


def maximize_bounded(
    f: Callable[[torch.Tensor], torch.Tensor],
    *,
    x0: torch.Tensor,
    lb: torch.Tensor,
    ub: torch.Tensor,
    max_iter: int = 50,
    tol: float = 1e-8,
) -> OptimizeResult:
    """Maximise a differentiable objective on a box with L-BFGS.

    The box is removed by a logistic reparametrisation so the optimiser works
    on an unconstrained vector.
    """
    lb = torch.as_tensor(lb, dtype=torch.float64).reshape(-1)
    ub = torch.as_tensor(ub, dtype=torch.float64).reshape(-1)
    x0 = torch.as_tensor(x0, dtype=torch.float64).reshape(-1)
    x0 = torch.max(torch.min(x0, ub), lb)
    z = torch.nn.Parameter(_from_box(x0, lb, ub))
    opt = torch.optim.LBFGS(
        [z],
        max_iter=max(1, int(max_iter)),
        tolerance_grad=float(tol),
        tolerance_change=float(tol),
        line_search_fn="strong_wolfe",
    )
    n_eval = 0

    def closure() -> torch.Tensor:
        nonlocal n_eval
        opt.zero_grad(set_to_none=True)
        loss = -f(_to_box(z, lb, ub))
        loss.backward()
        n_eval += 1
        return loss

    opt.step(closure)
    x = _to_box(z.detach(), lb, ub)
    with torch.no_grad():
        fun = float(f(x))
    return OptimizeResult(x=x, fun=fun, n_eval=n_eval)


def golden_section_maximize(
    f: Callable[[float], float],
    *,
    a: float,
    b: float,
    max_iter: int = 60,
    tol: float = 1e-8,
) -> OptimizeResult:
    """Derivative-free 1-D maximisation of a unimodal function on ``[a, b]``."""
    if not a < b:
        raise ValueError("require a < b")
    invphi = (math.sqrt(5.0) - 1.0) / 2.0
    c = b - (b - a) * invphi
    d = a + (b - a) * invphi
    fc, fd = f(c), f(d)
    n_eval = 2
    for _ in range(max_iter):
        if b - a <= tol * (1.0 + abs(a) + abs(b)):
            break
        if fc > fd:
            b, d, fd = d, c, fc
            c = b - (b - a) * invphi
            fc = f(c)
        else:
            a, c, fc = c, d, fd
            d = a + (b - a) * invphi
            fd = f(d)
        n_eval += 1
    x, fun = (c, fc) if fc > fd else (d, fd)
    return OptimizeResult(x=torch.tensor([x], dtype=torch.float64), fun=float(fun), n_eval=n_eval)


def coordinate_maximize(
    f: Callable[[torch.Tensor], float],
    *,
    x0: torch.Tensor,
    lb: torch.Tensor,
    ub: torch.Tensor,
    max_sweeps: int = 6,
    tol: float = 1e-8,
) -> OptimizeResult:
    """Cyclic coordinate ascent with golden-section line searches."""
    lb = torch.as_tensor(lb, dtype=torch.float64).reshape(-1)
    ub = torch.as_tensor(ub, dtype=torch.float64).reshape(-1)
    x = torch.max(torch.min(torch.as_tensor(x0, dtype=torch.float64).reshape(-1).clone(), ub), lb)
    best = float(f(x))
    n_eval = 1
    for _ in range(max_sweeps):
        improved = False
        for k in range(x.numel()):
            lo, hi = float(lb[k]), float(ub[k])
            if not lo < hi:
                continue

            def fk(v: float, k: int = k) -> float:
                trial = x.clone()
                trial[k] = v
                return float(f(trial))

            res = golden_section_maximize(fk, a=lo, b=hi, tol=tol)
            n_eval += res.n_eval
            if res.fun > best + 1e-12:
                x[k] = float(res.x[0])
                best = res.fun
                improved = True
        if not improved:
            break
    return OptimizeResult(x=x, fun=best, n_eval=n_eval)
