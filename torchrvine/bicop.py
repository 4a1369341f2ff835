"""Bivariate copula families: evaluation, rotation and parameter fitting.

Each family is implemented by a kernel that works on data which has already
been rotated into the family's base orientation. :class:`PairCopula` applies
the rotation convention (counter-clockwise rotation of the data) on top.
"""

from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass, field
from typing import Callable

import torch

from . import stats
from .controls import FitControlsBicop
from .errors import FamilyError
from .families import BicopFamily, check_rotation, normalize_family
from .optimize import coordinate_maximize, golden_section_maximize, maximize_bounded
from .tll import GRID_SIZE, InterpolationGrid, fit_tll, make_grid

logger = logging.getLogger(__name__)

_TINY = 1e-300


def rotate_data(u: torch.Tensor, rotation: int) -> torch.Tensor:
    if rotation == 0:
        return u
    if rotation == 90:
        return torch.stack([u[:, 1], 1.0 - u[:, 0]], dim=1)
    if rotation == 180:
        return 1.0 - u
    return torch.stack([1.0 - u[:, 1], u[:, 0]], dim=1)


def _swap(u: torch.Tensor) -> torch.Tensor:
    return u.flip(1)


def _bisect(f: Callable[[torch.Tensor], torch.Tensor], target: torch.Tensor,
            lo: torch.Tensor, hi: torch.Tensor, n_iter: int = 60) -> torch.Tensor:
    """Vectorised bisection for an increasing ``f`` with ``f(x) = target``."""
    for _ in range(n_iter):
        mid = 0.5 * (lo + hi)
        below = f(mid) < target
        lo = torch.where(below, mid, lo)
        hi = torch.where(below, hi, mid)
    return 0.5 * (lo + hi)


def _debye1(x: float) -> float:
    """First Debye function ``D_1(x) = 1/x * int_0^x t / (e^t - 1) dt``, x > 0."""
    if x < 2.0:
        # Power series around zero in terms of Bernoulli numbers.
        coefs = (1.0, -1.0 / 4.0, 1.0 / 36.0, -1.0 / 3600.0, 1.0 / 211680.0,
                 -1.0 / 10886400.0, 1.0 / 526901760.0, -691.0 / 16999766784000.0)
        powers = (0, 1, 2, 4, 6, 8, 10, 12)
        return sum(c * x ** p for c, p in zip(coefs, powers))
    # Exponentially convergent series for larger x.
    total = math.pi ** 2 / 6.0
    for k in range(1, 60):
        kx = k * x
        term = math.exp(-kx) * (x / k + 1.0 / (k * k))
        total -= term
        if term < 1e-17:
            break
    return total / x


def _frank_tau(theta: float) -> float:
    if abs(theta) < 1e-5:
        return 0.0
    t = 1.0 - 4.0 / abs(theta) * (1.0 - _debye1(abs(theta)))
    return t if theta > 0 else -t


def _joe_tau(theta: float) -> float:
    if theta <= 1.0 + 1e-12:
        return 0.0
    if abs(theta - 2.0) < 1e-6:
        # Removable singularity: the limit is 1 - trigamma(2).
        return 2.0 - math.pi ** 2 / 6.0
    d2 = float(torch.special.digamma(torch.tensor(2.0, dtype=torch.float64)))
    dt = float(torch.special.digamma(torch.tensor(2.0 / theta + 1.0, dtype=torch.float64)))
    return 1.0 + 2.0 * (d2 - dt) / (2.0 - theta)


class _TauTable:
    """Monotone lookup table inverting a tau(theta) relation."""

    def __init__(self, tau_of: Callable[[float], float], lo: float, hi: float, n: int = 4096):
        self.thetas = [lo + (hi - lo) * i / (n - 1) for i in range(n)]
        self.taus = [tau_of(t) for t in self.thetas]

    def __call__(self, tau: float) -> float:
        xs, ys = self.taus, self.thetas
        if tau <= xs[0]:
            return ys[0]
        if tau >= xs[-1]:
            return ys[-1]
        j = bisect.bisect_left(xs, tau)
        w = (tau - xs[j - 1]) / max(xs[j] - xs[j - 1], 1e-300)
        return ys[j - 1] + w * (ys[j] - ys[j - 1])


_joe_inverse: _TauTable | None = None
_frank_inverse: _TauTable | None = None


def _winsorize(tau: float) -> float:
    sign = -1.0 if tau < 0 else 1.0
    return sign * min(max(abs(tau), 0.01), 0.9)


# ---- family kernels ----

class _Kernel:
    family: BicopFamily
    lower: tuple[float, ...] = ()
    upper: tuple[float, ...] = ()
    itau = False

    def pdf(self, p: torch.Tensor, u: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def cdf(self, p: torch.Tensor, u: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def hfunc1(self, p: torch.Tensor, u: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def hfunc2(self, p: torch.Tensor, u: torch.Tensor) -> torch.Tensor:
        return self.hfunc1(p, _swap(u))

    def hinv1(self, p: torch.Tensor, u: torch.Tensor) -> torch.Tensor:
        u1 = u[:, 0]
        lo = torch.full_like(u1, 1e-10)
        hi = torch.full_like(u1, 1.0 - 1e-10)
        return _bisect(lambda v: self.hfunc1(p, torch.stack([u1, v], dim=1)), u[:, 1], lo, hi)

    def hinv2(self, p: torch.Tensor, u: torch.Tensor) -> torch.Tensor:
        return self.hinv1(p, _swap(u))

    def tau(self, p: list[float]) -> float:
        raise NotImplementedError

    def tau_to_parameters(self, tau: float) -> list[float]:
        raise FamilyError(f"tau inversion is not available for family {self.family.value!r}")

    def start(self, tau: float) -> list[float]:
        return self.tau_to_parameters(tau)

    @property
    def npars(self) -> int:
        return len(self.lower)


class _Indep(_Kernel):
    family = BicopFamily.indep
    itau = True

    def pdf(self, p, u):
        return u[:, 0] * 0.0 + 1.0

    def cdf(self, p, u):
        return u[:, 0] * u[:, 1]

    def hfunc1(self, p, u):
        return u[:, 1]

    def hinv1(self, p, u):
        return u[:, 1]

    def tau(self, p):
        return 0.0

    def tau_to_parameters(self, tau):
        return []


class _Gaussian(_Kernel):
    family = BicopFamily.gaussian
    lower, upper = (-1.0,), (1.0,)
    itau = True

    def pdf(self, p, u):
        rho = p[0].clamp(-0.999999, 0.999999)
        x = stats.qnorm(u)
        x1, x2 = x[:, 0], x[:, 1]
        r2 = 1.0 - rho * rho
        expo = -(rho * rho * (x1 * x1 + x2 * x2) - 2.0 * rho * x1 * x2) / (2.0 * r2)
        return torch.exp(expo) / torch.sqrt(r2)

    def cdf(self, p, u):
        x = stats.qnorm(u)
        return stats.pbvnorm(x[:, 0], x[:, 1], p[0])

    def hfunc1(self, p, u):
        rho = p[0].clamp(-0.999999, 0.999999)
        x = stats.qnorm(u)
        return stats.pnorm((x[:, 1] - rho * x[:, 0]) / torch.sqrt(1.0 - rho * rho))

    def hinv1(self, p, u):
        rho = p[0].clamp(-0.999999, 0.999999)
        x = stats.qnorm(u)
        return stats.pnorm(x[:, 1] * torch.sqrt(1.0 - rho * rho) + rho * x[:, 0])

    def tau(self, p):
        return 2.0 / math.pi * math.asin(max(-1.0, min(1.0, p[0])))

    def tau_to_parameters(self, tau):
        return [math.sin(tau * math.pi / 2.0)]


class _Student(_Gaussian):
    family = BicopFamily.student
    lower, upper = (-1.0, 2.0), (1.0, 30.0)

    def pdf(self, p, u):
        rho = p[0].clamp(-0.999999, 0.999999)
        nu = p[1]
        x = stats.qt(u, nu)
        x1, x2 = x[:, 0], x[:, 1]
        r2 = 1.0 - rho * rho
        log_c = (torch.lgamma(0.5 * (nu + 2.0)) + torch.lgamma(0.5 * nu)
                 - 2.0 * torch.lgamma(0.5 * (nu + 1.0)) - 0.5 * torch.log(r2))
        log_c = log_c + 0.5 * (nu + 1.0) * (torch.log1p(x1 * x1 / nu) + torch.log1p(x2 * x2 / nu))
        log_c = log_c - 0.5 * (nu + 2.0) * torch.log1p((x1 * x1 - 2.0 * rho * x1 * x2 + x2 * x2) / (nu * r2))
        return torch.exp(log_c)

    def cdf(self, p, u):
        x = stats.qt(u, p[1])
        return stats.pbvt(x[:, 0], x[:, 1], p[0], p[1])

    def hfunc1(self, p, u):
        rho = p[0].clamp(-0.999999, 0.999999)
        nu = p[1]
        x = stats.qt(u, nu)
        scale = torch.sqrt((nu + x[:, 0] ** 2) * (1.0 - rho * rho) / (nu + 1.0))
        return stats.pt((x[:, 1] - rho * x[:, 0]) / scale, nu + 1.0)

    def hinv1(self, p, u):
        rho = p[0].clamp(-0.999999, 0.999999)
        nu = p[1]
        x1 = stats.qt(u[:, 0], nu)
        q = stats.qt(u[:, 1], nu + 1.0)
        scale = torch.sqrt((nu + x1 * x1) * (1.0 - rho * rho) / (nu + 1.0))
        return stats.pt(rho * x1 + q * scale, nu)

    def tau_to_parameters(self, tau):
        return [math.sin(tau * math.pi / 2.0), 4.0]


class _Clayton(_Kernel):
    family = BicopFamily.clayton
    lower, upper = (1e-10,), (28.0,)
    itau = True

    def _s(self, theta, u):
        return (torch.pow(u[:, 0], -theta) + torch.pow(u[:, 1], -theta) - 1.0).clamp_min(_TINY)

    def pdf(self, p, u):
        theta = p[0]
        log_c = (torch.log1p(theta) - (1.0 + theta) * torch.log(u).sum(dim=1)
                 - (2.0 + 1.0 / theta) * torch.log(self._s(theta, u)))
        return torch.exp(log_c)

    def cdf(self, p, u):
        return torch.pow(self._s(p[0], u), -1.0 / p[0])

    def hfunc1(self, p, u):
        theta = p[0]
        return torch.pow(u[:, 0], -theta - 1.0) * torch.pow(self._s(theta, u), -1.0 / theta - 1.0)

    def hinv1(self, p, u):
        theta = p[0]
        u1, w = u[:, 0], u[:, 1]
        s = torch.pow((w * torch.pow(u1, theta + 1.0)).clamp_min(_TINY), -theta / (theta + 1.0))
        return torch.pow((s - torch.pow(u1, -theta) + 1.0).clamp_min(_TINY), -1.0 / theta)

    def tau(self, p):
        return p[0] / (2.0 + p[0])

    def tau_to_parameters(self, tau):
        t = abs(tau)
        return [min(max(2.0 * t / max(1.0 - t, 1e-12), 1e-10), 28.0)]


class _Frank(_Kernel):
    family = BicopFamily.frank
    lower, upper = (-35.0,), (35.0,)
    itau = True

    def pdf(self, p, u):
        theta = p[0]
        eu = torch.expm1(-theta * u[:, 0])
        ev = torch.expm1(-theta * u[:, 1])
        ed = torch.expm1(-theta)
        out = -theta * ed * (eu + 1.0) * (ev + 1.0) / (ed + eu * ev) ** 2
        return torch.where(theta.abs() < 1e-10, torch.ones_like(out), out)

    def cdf(self, p, u):
        theta = p[0]
        q = 1.0 + torch.expm1(-theta * u[:, 0]) * torch.expm1(-theta * u[:, 1]) / torch.expm1(-theta)
        out = -torch.log(q) / theta
        return torch.where(theta.abs() < 1e-10, u[:, 0] * u[:, 1], out)

    def hfunc1(self, p, u):
        theta = p[0]
        eu = torch.expm1(-theta * u[:, 0])
        ev = torch.expm1(-theta * u[:, 1])
        out = (eu + 1.0) * ev / (torch.expm1(-theta) + eu * ev)
        return torch.where(theta.abs() < 1e-10, u[:, 1], out)

    def hinv1(self, p, u):
        theta = p[0]
        eu = torch.expm1(-theta * u[:, 0])
        w = u[:, 1]
        ev = w * torch.expm1(-theta) / (eu + 1.0 - w * eu)
        out = -torch.log1p(ev) / theta
        return torch.where(theta.abs() < 1e-10, w, out)

    def tau(self, p):
        return _frank_tau(p[0])

    def tau_to_parameters(self, tau):
        global _frank_inverse
        if _frank_inverse is None:
            _frank_inverse = _TauTable(_frank_tau, -35.0, 35.0)
        return [_frank_inverse(tau)]


# Archimedean generators: each builder returns (phi, psi, dphi, d2phi) for
# the parameter vector p, where psi is the inverse of phi.

def _gumbel_generator(p):
    theta = p[0]

    def phi(x):
        return torch.pow((-torch.log(x)).clamp_min(_TINY), theta)

    def psi(t):
        return torch.exp(-torch.pow(t.clamp_min(_TINY), 1.0 / theta))

    def dphi(x):
        return -theta * torch.pow((-torch.log(x)).clamp_min(_TINY), theta - 1.0) / x

    def d2phi(x):
        lx = (-torch.log(x)).clamp_min(_TINY)
        return theta * torch.pow(lx, theta - 2.0) * (lx + theta - 1.0) / (x * x)

    return phi, psi, dphi, d2phi


def _joe_generator(p):
    theta = p[0]

    def phi(x):
        return -torch.log1p(-torch.pow((1.0 - x).clamp_min(_TINY), theta))

    def psi(t):
        return 1.0 - torch.pow((-torch.expm1(-t)).clamp_min(_TINY), 1.0 / theta)

    def dphi(x):
        b = (1.0 - x).clamp_min(_TINY)
        return -theta * torch.pow(b, theta - 1.0) / (1.0 - torch.pow(b, theta)).clamp_min(_TINY)

    def d2phi(x):
        b = (1.0 - x).clamp_min(_TINY)
        den = (1.0 - torch.pow(b, theta)).clamp_min(_TINY)
        return (theta * (theta - 1.0) * torch.pow(b, theta - 2.0) / den
                + theta * theta * torch.pow(b, 2.0 * theta - 2.0) / (den * den))

    return phi, psi, dphi, d2phi


def _bb1_generator(p):
    theta, delta = p[0], p[1]

    def phi(x):
        return torch.pow((torch.pow(x, -theta) - 1.0).clamp_min(_TINY), delta)

    def psi(t):
        return torch.pow(torch.pow(t.clamp_min(_TINY), 1.0 / delta) + 1.0, -1.0 / theta)

    def dphi(x):
        return (-delta * theta * torch.pow(x, -(1.0 + theta))
                * torch.pow((torch.pow(x, -theta) - 1.0).clamp_min(_TINY), delta - 1.0))

    def d2phi(x):
        t1 = (torch.pow(x, -theta) - 1.0).clamp_min(_TINY)
        core = (1.0 + delta * theta) - (1.0 + theta) * torch.pow(x, theta)
        den = ((torch.pow(x, theta) - 1.0) ** 2 * x * x).clamp_min(_TINY)
        return delta * theta * torch.pow(t1, delta) * core / den

    return phi, psi, dphi, d2phi


def _bb6_generator(p):
    theta, delta = p[0], p[1]

    def phi(x):
        return torch.pow((-torch.log1p(-torch.pow((1.0 - x).clamp_min(_TINY), theta))).clamp_min(_TINY), delta)

    def psi(t):
        inner = -torch.expm1(-torch.pow(t.clamp_min(_TINY), 1.0 / delta))
        return 1.0 - torch.pow(inner.clamp_min(_TINY), 1.0 / theta)

    def dphi(x):
        b = (1.0 - x).clamp_min(_TINY)
        tmp = torch.pow(b, theta)
        lg = (-torch.log1p(-tmp)).clamp_min(_TINY)
        return delta * theta * torch.pow(lg, delta - 1.0) * torch.pow(b, theta - 1.0) / (tmp - 1.0).clamp_max(-_TINY)

    def d2phi(x):
        b = (1.0 - x).clamp_min(_TINY)
        tmp = torch.pow(b, theta)
        lg = torch.log1p(-tmp)
        core = (delta - 1.0) * theta * tmp - (tmp + theta - 1.0) * lg
        return (torch.pow((-lg).clamp_min(_TINY), delta - 2.0) * delta * theta * torch.pow(b, theta - 2.0)
                * core / (tmp - 1.0) ** 2)

    return phi, psi, dphi, d2phi


def _bb7_generator(p):
    theta, delta = p[0], p[1]

    def phi(x):
        return torch.pow((1.0 - torch.pow((1.0 - x).clamp_min(_TINY), theta)).clamp_min(_TINY), -delta) - 1.0

    def psi(t):
        return 1.0 - torch.pow((1.0 - torch.pow(1.0 + t, -1.0 / delta)).clamp_min(_TINY), 1.0 / theta)

    def dphi(x):
        b = (1.0 - x).clamp_min(_TINY)
        return (-delta * theta * torch.pow((1.0 - torch.pow(b, theta)).clamp_min(_TINY), -1.0 - delta)
                * torch.pow(b, theta - 1.0))

    def d2phi(x):
        b = (1.0 - x).clamp_min(_TINY)
        tmp = torch.pow(b, theta)
        return (delta * theta * torch.pow((1.0 - tmp).clamp_min(_TINY), -2.0 - delta) * torch.pow(b, theta - 2.0)
                * (theta - 1.0 + (1.0 + delta * theta) * tmp))

    return phi, psi, dphi, d2phi


def _bb8_generator(p):
    theta, delta = p[0], p[1]
    norm = (1.0 - torch.pow((1.0 - delta).clamp_min(_TINY), theta)).clamp_min(_TINY)

    def phi(x):
        return -torch.log((1.0 - torch.pow((1.0 - delta * x).clamp_min(_TINY), theta)).clamp_min(_TINY) / norm)

    def psi(t):
        res = torch.exp(-t) * (torch.pow((1.0 - delta).clamp_min(_TINY), theta) - 1.0)
        return (1.0 - torch.pow((1.0 + res).clamp_min(_TINY), 1.0 / theta)) / delta

    def dphi(x):
        b = (1.0 - delta * x).clamp_min(_TINY)
        return -delta * theta * torch.pow(b, theta - 1.0) / (1.0 - torch.pow(b, theta)).clamp_min(_TINY)

    def d2phi(x):
        b = (1.0 - delta * x).clamp_min(_TINY)
        tmp = torch.pow(b, theta)
        return delta * delta * theta * torch.pow(b, theta - 2.0) * (theta - 1.0 + tmp) / (tmp - 1.0) ** 2

    return phi, psi, dphi, d2phi


class _Archimedean(_Kernel):
    def __init__(self, family, generator, lower, upper, tau_fn, itau=False, inverse=None, start=None):
        self.family = family
        self.generator = generator
        self.lower, self.upper = lower, upper
        self._tau_fn = tau_fn
        self.itau = itau
        self._inverse = inverse
        self._start = start

    def _copula(self, gen, u):
        phi, psi = gen[0], gen[1]
        return stats.clamp_unit(psi(phi(u[:, 0]) + phi(u[:, 1])))

    def pdf(self, p, u):
        gen = self.generator(p)
        c = self._copula(gen, u)
        dphi, d2phi = gen[2], gen[3]
        num = d2phi(c).abs() * dphi(u[:, 0]).abs() * dphi(u[:, 1]).abs()
        return num / torch.pow(dphi(c).abs().clamp_min(_TINY), 3.0)

    def cdf(self, p, u):
        return self._copula(self.generator(p), u)

    def hfunc1(self, p, u):
        gen = self.generator(p)
        out = gen[2](u[:, 0]) / gen[2](self._copula(gen, u))
        return torch.where(torch.isnan(out), u[:, 1], out)

    def hinv1(self, p, u):
        phi, psi, dphi, _ = self.generator(p)
        u1 = u[:, 0]
        w = u[:, 1].clamp(1e-10, 1.0 - 1e-10)
        # Solve dphi(C) = dphi(u1) / w for C in (0, u1], dphi is increasing.
        target = dphi(u1) / w
        c = _bisect(dphi, target, torch.full_like(u1, 1e-12), u1.clone())
        return stats.clamp_unit(psi((phi(c) - phi(u1)).clamp_min(_TINY)))

    def tau(self, p):
        return self._tau_fn(p)

    def tau_to_parameters(self, tau):
        if self._inverse is None:
            return super().tau_to_parameters(tau)
        return self._inverse(abs(tau))

    def start(self, tau):
        if self._start is not None:
            return list(self._start)
        return self.tau_to_parameters(tau)


def _gumbel_inverse(tau: float) -> list[float]:
    return [min(max(1.0 / max(1.0 - tau, 1e-12), 1.0), 50.0)]


def _joe_inverse_fn(tau: float) -> list[float]:
    global _joe_inverse
    if _joe_inverse is None:
        _joe_inverse = _TauTable(_joe_tau, 1.0 + 1e-6, 30.0)
    return [_joe_inverse(tau)]


def _bb_tau_numeric(family: BicopFamily) -> Callable[[list[float]], float]:
    # Kendall's tau of an Archimedean copula: 1 + 4 int_0^1 phi(t) / phi'(t) dt.
    def tau_of(p: list[float]) -> float:
        pt = torch.tensor(p, dtype=torch.float64)
        phi, _, dphi, _ = _KERNELS[family].generator(pt)
        t = torch.linspace(1e-6, 1.0 - 1e-6, 2001, dtype=torch.float64)
        ratio = phi(t) / dphi(t)
        return float(1.0 + 4.0 * torch.trapezoid(ratio, t))

    return tau_of


_KERNELS: dict[BicopFamily, _Kernel] = {
    BicopFamily.indep: _Indep(),
    BicopFamily.gaussian: _Gaussian(),
    BicopFamily.student: _Student(),
    BicopFamily.clayton: _Clayton(),
    BicopFamily.frank: _Frank(),
    BicopFamily.gumbel: _Archimedean(
        BicopFamily.gumbel, _gumbel_generator, (1.0,), (50.0,),
        lambda p: (p[0] - 1.0) / p[0], itau=True, inverse=_gumbel_inverse),
    BicopFamily.joe: _Archimedean(
        BicopFamily.joe, _joe_generator, (1.0,), (30.0,),
        lambda p: _joe_tau(p[0]), itau=True, inverse=_joe_inverse_fn),
    BicopFamily.bb1: _Archimedean(
        BicopFamily.bb1, _bb1_generator, (0.0, 1.0), (7.0, 7.0),
        lambda p: 1.0 - 2.0 / (p[1] * (p[0] + 2.0)), start=(0.5, 1.5)),
    BicopFamily.bb6: _Archimedean(
        BicopFamily.bb6, _bb6_generator, (1.0, 1.0), (6.0, 8.0),
        _bb_tau_numeric(BicopFamily.bb6), start=(1.5, 1.5)),
    BicopFamily.bb7: _Archimedean(
        BicopFamily.bb7, _bb7_generator, (1.0, 0.01), (6.0, 25.0),
        _bb_tau_numeric(BicopFamily.bb7), start=(1.5, 0.5)),
    BicopFamily.bb8: _Archimedean(
        BicopFamily.bb8, _bb8_generator, (1.0, 1e-4), (8.0, 1.0),
        _bb_tau_numeric(BicopFamily.bb8), start=(2.0, 0.7)),
}

_DEFAULT_PARAMETERS = {
    BicopFamily.indep: [],
    BicopFamily.gaussian: [0.0],
    BicopFamily.student: [0.0, 30.0],
    BicopFamily.clayton: [1e-10],
    BicopFamily.gumbel: [1.0],
    BicopFamily.frank: [0.0],
    BicopFamily.joe: [1.0],
    BicopFamily.bb1: [0.5, 1.5],
    BicopFamily.bb6: [1.5, 1.5],
    BicopFamily.bb7: [1.5, 0.5],
    BicopFamily.bb8: [2.0, 0.7],
}


def parameter_bounds(family: BicopFamily) -> tuple[torch.Tensor, torch.Tensor]:
    if family == BicopFamily.tll:
        return torch.empty(0, dtype=torch.float64), torch.empty(0, dtype=torch.float64)
    k = _KERNELS[family]
    return torch.tensor(k.lower, dtype=torch.float64), torch.tensor(k.upper, dtype=torch.float64)


@dataclass
class PairCopula:
    """A bivariate copula: family, rotation and parameters.

    For the ``tll`` family the parameters are the ``30 x 30`` density values on
    the interpolation grid and ``npars`` is the effective degrees of freedom.
    """

    family: BicopFamily = BicopFamily.indep
    rotation: int = 0
    parameters: torch.Tensor | None = None
    nobs: int = 0
    loglik_: float | None = field(default=None, repr=False)
    _df: float | None = field(default=None, repr=False)
    _grid: InterpolationGrid | None = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self.family = normalize_family(self.family)
        self.rotation = check_rotation(self.family, self.rotation)
        if self.family == BicopFamily.tll:
            vals = torch.ones(GRID_SIZE, GRID_SIZE) if self.parameters is None else self.parameters
            self._grid = InterpolationGrid(make_grid(), vals)
            self.parameters = self._grid.values
            return
        if self.parameters is None:
            self.parameters = torch.tensor(_DEFAULT_PARAMETERS[self.family], dtype=torch.float64)
        self.parameters = stats.as_float64(self.parameters).reshape(-1)
        self._check_parameters(self.parameters)

    def _check_parameters(self, p: torch.Tensor) -> None:
        k = _KERNELS[self.family]
        if p.numel() != k.npars:
            raise ValueError(f"family {self.family.value!r} expects {k.npars} parameters, got {p.numel()}")
        for i, (lo, hi) in enumerate(zip(k.lower, k.upper)):
            if not lo - 1e-12 <= float(p[i]) <= hi + 1e-12:
                raise ValueError(f"parameter {i} of family {self.family.value!r} must be in [{lo}, {hi}], got {float(p[i])}")

    @property
    def kernel(self) -> _Kernel | None:
        return _KERNELS.get(self.family)

    @property
    def npars(self) -> float:
        if self.family == BicopFamily.indep:
            return 0.0
        if self.family == BicopFamily.tll:
            return float(self._df) if self._df is not None else float(GRID_SIZE)
        return float(self.parameters.numel())

    @property
    def tau(self) -> float:
        return self.parameters_to_tau()

    def parameters_to_tau(self) -> float:
        if self.family == BicopFamily.tll:
            # Monte Carlo free approximation: tau of the tabulated density via its cdf.
            g = make_grid(20)[1:-1]
            pts = torch.stack([g.repeat_interleave(g.numel()), g.repeat(g.numel())], dim=1)
            c = self._grid.cdf(pts).reshape(g.numel(), g.numel())
            dens = self._grid.interpolate(pts).reshape(g.numel(), g.numel())
            inner = torch.trapezoid(c * dens, g, dim=1)
            tau = 4.0 * float(torch.trapezoid(inner, g)) - 1.0
        else:
            tau = self.kernel.tau(self.parameters.tolist())
        if self.rotation in (90, 270):
            tau = -tau
        return max(-1.0, min(1.0, tau))

    def tau_to_parameters(self, tau: float) -> torch.Tensor:
        if self.family == BicopFamily.tll:
            raise FamilyError("tau inversion is not available for family 'tll'")
        return torch.tensor(self.kernel.tau_to_parameters(float(tau)), dtype=torch.float64)

    # ---- evaluation ----

    def _prep(self, u: torch.Tensor) -> torch.Tensor:
        u = stats.as_float64(u)
        if u.ndim != 2 or u.shape[1] != 2:
            raise ValueError("u must have shape (n, 2)")
        return rotate_data(stats.clamp_unit(u), self.rotation)

    def _pdf0(self, u_rot: torch.Tensor, p: torch.Tensor | None = None) -> torch.Tensor:
        if self.family == BicopFamily.tll:
            return self._grid.interpolate(u_rot)
        return self.kernel.pdf(self.parameters if p is None else p, u_rot)

    def _h1(self, u_rot: torch.Tensor) -> torch.Tensor:
        if self.family == BicopFamily.tll:
            return self._grid.conditional(u_rot, 1)
        return self.kernel.hfunc1(self.parameters, u_rot)

    def _h2(self, u_rot: torch.Tensor) -> torch.Tensor:
        if self.family == BicopFamily.tll:
            return self._grid.conditional(u_rot, 2)
        return self.kernel.hfunc2(self.parameters, u_rot)

    def _hinv1_0(self, u_rot: torch.Tensor) -> torch.Tensor:
        if self.family == BicopFamily.tll:
            u1 = u_rot[:, 0]
            return _bisect(lambda v: self._h1(torch.stack([u1, v], dim=1)), u_rot[:, 1],
                           torch.full_like(u1, 1e-10), torch.full_like(u1, 1.0 - 1e-10))
        return self.kernel.hinv1(self.parameters, u_rot)

    def _hinv2_0(self, u_rot: torch.Tensor) -> torch.Tensor:
        if self.family == BicopFamily.tll:
            u2 = u_rot[:, 1]
            return _bisect(lambda v: self._h2(torch.stack([v, u2], dim=1)), u_rot[:, 0],
                           torch.full_like(u2, 1e-10), torch.full_like(u2, 1.0 - 1e-10))
        return self.kernel.hinv2(self.parameters, u_rot)

    def pdf(self, u: torch.Tensor) -> torch.Tensor:
        return self._pdf0(self._prep(u)).clamp_min(_TINY)

    def cdf(self, u: torch.Tensor) -> torch.Tensor:
        u0 = stats.clamp_unit(stats.as_float64(u))
        u_rot = self._prep(u)
        p = self._grid.cdf(u_rot) if self.family == BicopFamily.tll else self.kernel.cdf(self.parameters, u_rot)
        if self.rotation == 90:
            p = u0[:, 1] - p
        elif self.rotation == 180:
            p = p - 1.0 + u0[:, 0] + u0[:, 1]
        elif self.rotation == 270:
            p = u0[:, 0] - p
        return p.clamp(0.0, 1.0)

    def hfunc1(self, u: torch.Tensor) -> torch.Tensor:
        """Conditional distribution of the second argument given the first."""
        u_rot = self._prep(u)
        h = {0: lambda: self._h1(u_rot),
             90: lambda: self._h2(u_rot),
             180: lambda: 1.0 - self._h1(u_rot),
             270: lambda: 1.0 - self._h2(u_rot)}[self.rotation]()
        return h.clamp(0.0, 1.0)

    def hfunc2(self, u: torch.Tensor) -> torch.Tensor:
        """Conditional distribution of the first argument given the second."""
        u_rot = self._prep(u)
        h = {0: lambda: self._h2(u_rot),
             90: lambda: 1.0 - self._h1(u_rot),
             180: lambda: 1.0 - self._h2(u_rot),
             270: lambda: self._h1(u_rot)}[self.rotation]()
        return h.clamp(0.0, 1.0)

    def hinv1(self, u: torch.Tensor) -> torch.Tensor:
        """Inverse of :meth:`hfunc1` in the second argument."""
        u_rot = self._prep(u)
        out = {0: lambda: self._hinv1_0(u_rot),
               90: lambda: self._hinv2_0(u_rot),
               180: lambda: 1.0 - self._hinv1_0(u_rot),
               270: lambda: 1.0 - self._hinv2_0(u_rot)}[self.rotation]()
        return out.clamp(0.0, 1.0)

    def hinv2(self, u: torch.Tensor) -> torch.Tensor:
        """Inverse of :meth:`hfunc2` in the first argument."""
        u_rot = self._prep(u)
        out = {0: lambda: self._hinv2_0(u_rot),
               90: lambda: 1.0 - self._hinv1_0(u_rot),
               180: lambda: 1.0 - self._hinv2_0(u_rot),
               270: lambda: self._hinv1_0(u_rot)}[self.rotation]()
        return out.clamp(0.0, 1.0)

    def simulate(self, n: int, *, seeds=()) -> torch.Tensor:
        g = torch.Generator()
        if seeds:
            g.manual_seed(int(seeds[0]))
        else:
            g.manual_seed(int(torch.randint(0, 2**31 - 1, (1,)).item()))
        w = torch.rand((int(n), 2), generator=g, dtype=torch.float64)
        return torch.stack([w[:, 0], self.hinv1(w)], dim=1)

    def flip(self) -> None:
        """Swap the roles of the two arguments in place."""
        if self.rotation == 90:
            self.rotation = 270
        elif self.rotation == 270:
            self.rotation = 90
        if self.family == BicopFamily.tll:
            self._grid = self._grid.transposed()
            self.parameters = self._grid.values

    # ---- criteria ----

    def loglik(self, u: torch.Tensor, *, weights: torch.Tensor | None = None) -> float:
        lp = torch.log(self.pdf(u))
        if weights is not None and weights.numel() > 0:
            lp = lp * weights.to(lp.dtype)
        return float(lp[torch.isfinite(lp)].sum())

    def aic(self, u: torch.Tensor) -> float:
        return -2.0 * self.loglik(u) + 2.0 * self.npars

    def bic(self, u: torch.Tensor) -> float:
        return -2.0 * self.loglik(u) + math.log(u.shape[0]) * self.npars

    def mbic(self, u: torch.Tensor, *, psi0: float = 0.9) -> float:
        from .criteria import mbic

        return mbic(self.loglik(u), self.npars, u.shape[0], self.family == BicopFamily.indep, psi0)

    # ---- fitting ----

    def fit(self, u: torch.Tensor, controls: FitControlsBicop | None = None) -> "PairCopula":
        """Estimate the parameters of the current family and rotation in place."""
        if controls is None:
            controls = FitControlsBicop()
        u = stats.clamp_unit(stats.as_float64(u))
        if u.ndim != 2 or u.shape[1] != 2:
            raise ValueError("data must have shape (n, 2)")
        w = controls.weights
        self.nobs = int(u.shape[0])

        if self.family == BicopFamily.indep:
            self.loglik_ = 0.0
            return self
        if self.family == BicopFamily.tll:
            self._grid, ll, self._df = fit_tll(
                u, method=controls.nonparametric_method, mult=controls.nonparametric_mult, weights=w)
            self.parameters = self._grid.values
            self.loglik_ = ll
            return self

        kernel = self.kernel
        u_rot = rotate_data(u, self.rotation)
        tau = stats.kendall_tau(u_rot[:, 0], u_rot[:, 1], weights=w)
        if not math.isfinite(tau):
            raise ValueError("Kendall's tau is not defined for this data")

        if controls.parametric_method == "itau":
            if not kernel.itau:
                raise FamilyError(f"parametric_method='itau' is not available for family {self.family.value!r}")
            p = kernel.tau_to_parameters(tau)
            if self.family == BicopFamily.student:
                p = self._profile_student_df(u_rot, p[0], w)
            self.parameters = torch.tensor(p, dtype=torch.float64)
        elif self.family == BicopFamily.gaussian:
            self.parameters = self._gaussian_mle(u_rot, w)
        else:
            self.parameters = self._mle(u_rot, tau, w)
        self.loglik_ = self.loglik(u, weights=w)
        return self

    def _log_density_sum(self, u_rot: torch.Tensor, p: torch.Tensor, w: torch.Tensor | None) -> torch.Tensor:
        lp = torch.log(self._pdf0(u_rot, p).clamp_min(_TINY))
        if w is not None:
            lp = lp * w.to(lp.dtype)
        return torch.where(torch.isfinite(lp), lp, torch.zeros_like(lp)).sum()

    def _gaussian_mle(self, u_rot: torch.Tensor, w: torch.Tensor | None) -> torch.Tensor:
        # Start from the correlation of normal scores and polish it with L-BFGS.
        z = stats.qnorm(u_rot)
        rho = max(-0.9999, min(0.9999, stats.pearson_cor(z[:, 0], z[:, 1], weights=w)))
        x0 = torch.tensor([rho], dtype=torch.float64)
        lb = torch.tensor([max(-0.9999, rho - 0.1)], dtype=torch.float64)
        ub = torch.tensor([min(0.9999, rho + 0.1)], dtype=torch.float64)
        try:
            res = maximize_bounded(lambda p: self._log_density_sum(u_rot, p, w), x0=x0, lb=lb, ub=ub)
        except RuntimeError as e:
            logger.debug("L-BFGS failed for gaussian: %s", e)
            return x0
        if math.isfinite(res.fun) and res.fun >= float(self._log_density_sum(u_rot, x0, w)):
            return res.x
        return x0

    def _profile_student_df(self, u_rot, rho, w) -> list[float]:
        rho_t = torch.tensor(rho, dtype=torch.float64)

        def ll_nu(nu: float) -> float:
            p = torch.stack([rho_t, torch.tensor(nu, dtype=torch.float64)])
            return float(self._log_density_sum(u_rot, p, w))

        res = golden_section_maximize(ll_nu, a=2.0 + 1e-6, b=30.0, tol=1e-4)
        return [rho, float(res.x[0])]

    def _mle(self, u_rot: torch.Tensor, tau: float, w: torch.Tensor | None) -> torch.Tensor:
        kernel = self.kernel
        lb, ub = parameter_bounds(self.family)
        tau_w = _winsorize(tau)
        if kernel.npars == 1:
            # Narrow the search to parameters implied by tau +/- 0.1.
            if self.family == BicopFamily.frank:
                lo_tau, hi_tau = max(tau - 0.1, -0.99), min(tau + 0.1, 0.99)
            else:
                lo_tau, hi_tau = max(abs(tau) - 0.1, 1e-10), min(abs(tau) + 0.1, 0.95)
            lb = torch.max(lb, torch.tensor(kernel.tau_to_parameters(lo_tau), dtype=torch.float64))
            ub = torch.min(ub, torch.tensor(kernel.tau_to_parameters(hi_tau), dtype=torch.float64))
            ub = torch.max(ub, lb + 1e-6)
        x0 = torch.tensor(kernel.start(tau_w), dtype=torch.float64)
        x0 = torch.max(torch.min(x0, ub), lb)

        if self.family == BicopFamily.student:
            def objective(p: torch.Tensor) -> float:
                return float(self._log_density_sum(u_rot, p, w))

            lb = torch.tensor([max(-0.9999, float(x0[0]) - 0.2), 2.0 + 1e-6], dtype=torch.float64)
            ub = torch.tensor([min(0.9999, float(x0[0]) + 0.2), 30.0], dtype=torch.float64)
            return coordinate_maximize(objective, x0=x0, lb=lb, ub=ub, max_sweeps=2, tol=1e-4).x

        def smooth_objective(p: torch.Tensor) -> torch.Tensor:
            return self._log_density_sum(u_rot, p, w)

        try:
            res = maximize_bounded(smooth_objective, x0=x0, lb=lb, ub=ub)
            if math.isfinite(res.fun):
                return res.x
            logger.debug("L-BFGS returned a non-finite objective for %s", self.family.value)
        except RuntimeError as e:
            logger.debug("L-BFGS failed for %s: %s", self.family.value, e)
        res = coordinate_maximize(lambda p: float(smooth_objective(p)), x0=x0, lb=lb, ub=ub)
        return res.x

    def str(self) -> str:
        parts = [f"<torchrvine.PairCopula> {self.family.value}"]
        if self.rotation:
            parts.append(f"rotation: {self.rotation}")
        if self.family == BicopFamily.tll:
            parts.append(f"df: {self.npars:.2f}")
        elif self.parameters.numel():
            parts.append("parameters: [" + ", ".join(f"{v:.4f}" for v in self.parameters.tolist()) + "]")
        return ", ".join(parts)
