"""Distribution functions and dependence measures on torch tensors."""

from __future__ import annotations

import math
from typing import Callable

import torch
import torch.nn.functional as F

_SQRT2 = math.sqrt(2.0)
_INV_SQRT_2PI = 1.0 / math.sqrt(2.0 * math.pi)

# Gauss-Legendre abscissae (negative half) and weights with 6, 12 and 20 points,
# picked by |rho| for the bivariate normal and t distribution functions.
_GL_RULES = (
    ((-0.9324695142031522, -0.6612093864662647, -0.2386191860831970),
     (0.1713244923791705, 0.3607615730481384, 0.4679139345726904)),
    ((-0.9815606342467191, -0.9041172563704750, -0.7699026741943050,
      -0.5873179542866171, -0.3678314989981802, -0.1252334085114692),
     (0.04717533638651177, 0.1069393259953183, 0.1600783285433464,
      0.2031674267230659, 0.2334925365383547, 0.2491470458134029)),
    ((-0.9931285991850949, -0.9639719272779138, -0.9122344282513259,
      -0.8391169718222188, -0.7463319064601508, -0.6360536807265150,
      -0.5108670019508271, -0.3737060887154196, -0.2277858511416451,
      -0.07652652113349733),
     (0.01761400713915212, 0.04060142980038694, 0.06267204833410906,
      0.08327674157670475, 0.1019301198172404, 0.1181945319615184,
      0.1316886384491766, 0.1420961093183821, 0.1491729864726037,
      0.1527533871307259)),
)
_RHO_MAX = 1.0 - 1e-12


def as_float64(x) -> torch.Tensor:
    if torch.is_tensor(x):
        return x if x.dtype == torch.float64 else x.to(torch.float64)
    return torch.as_tensor(x, dtype=torch.float64)


def clamp_unit(u: torch.Tensor, eps: float = 1e-10) -> torch.Tensor:
    return u.clamp(min=eps, max=1.0 - eps)


def dnorm(x: torch.Tensor) -> torch.Tensor:
    return _INV_SQRT_2PI * torch.exp(-0.5 * x * x)


def pnorm(x: torch.Tensor) -> torch.Tensor:
    return 0.5 * torch.erfc(-x / _SQRT2)


def qnorm(u: torch.Tensor) -> torch.Tensor:
    return torch.special.ndtri(u)


def _by_rule(fn: Callable[..., torch.Tensor], rho: torch.Tensor, *args: torch.Tensor) -> torch.Tensor:
    """Evaluate ``fn(x, w, rho, *args)`` with the quadrature rule matching each ``|rho|``."""
    out = torch.empty_like(rho)
    r = rho.abs()
    bands = (r < 0.3, (r >= 0.3) & (r < 0.75), r >= 0.75)
    for (nodes, weights), mask in zip(_GL_RULES, bands):
        if not bool(mask.any()):
            continue
        x = torch.tensor(nodes, dtype=rho.dtype, device=rho.device)
        w = torch.tensor(weights, dtype=rho.dtype, device=rho.device)
        out[mask] = fn(x, w, rho[mask], *(a[mask] for a in args))
    return out


def _bvn_upper(x: torch.Tensor, w: torch.Tensor, r: torch.Tensor, h: torch.Tensor, k: torch.Tensor) -> torch.Tensor:
    # P(X > h, Y > k), Genz (2004) on top of Drezner and Wesolowsky (1990).
    out = torch.empty_like(r)
    low = r.abs() < 0.925
    if bool(low.any()):
        hl, kl, rl = h[low], k[low], r[low]
        hk = (hl * kl)[:, None]
        hs = (0.5 * (hl * hl + kl * kl))[:, None]
        asr = torch.asin(rl)
        total = torch.zeros_like(rl)
        for xs in (x, -x):
            sn = torch.sin(asr[:, None] * (xs + 1.0) * 0.5)
            total = total + (w * torch.exp((sn * hk - hs) / (1.0 - sn * sn))).sum(dim=-1)
        out[low] = total * asr / (4.0 * math.pi) + pnorm(-hl) * pnorm(-kl)
    high = ~low
    if bool(high.any()):
        hh, rh = h[high], r[high]
        kh = torch.where(rh < 0, -k[high], k[high])
        hk = hh * kh
        a_s = (1.0 - rh) * (1.0 + rh)
        a = torch.sqrt(a_s)
        bs = (hh - kh) ** 2
        c = (4.0 - hk) / 8.0
        d = (12.0 - hk) / 16.0
        bvn = a * torch.exp(-0.5 * (bs / a_s + hk)) * (
            1.0 - c * (bs - a_s) * (1.0 - d * bs / 5.0) / 3.0 + c * d * a_s * a_s / 5.0)
        b = torch.sqrt(bs)
        tail = (torch.exp(-0.5 * hk.clamp_min(-160.0)) * math.sqrt(2.0 * math.pi)
                * pnorm(-b / a) * b * (1.0 - c * bs * (1.0 - d * bs / 5.0) / 3.0))
        bvn = bvn - torch.where(hk > -160.0, tail, torch.zeros_like(tail))
        a, bs, hk, c, d = (v[:, None] for v in (0.5 * a, bs, hk, c, d))
        xs = (a * (x + 1.0)) ** 2
        rs = torch.sqrt(1.0 - xs)
        bvn = bvn + (a * w * (torch.exp(-bs / (2.0 * xs) - hk / (1.0 + rs)) / rs
                              - torch.exp(-0.5 * (bs / xs + hk)) * (1.0 + c * xs * (1.0 + d * xs)))).sum(dim=-1)
        xs = a_s[:, None] * (1.0 - x) ** 2 / 4.0
        rs = torch.sqrt(1.0 - xs)
        bvn = bvn + (a * w * torch.exp(-0.5 * (bs / xs + hk))
                     * (torch.exp(-hk * (1.0 - rs) / (2.0 * (1.0 + rs))) / rs
                        - (1.0 + c * xs * (1.0 + d * xs)))).sum(dim=-1)
        bvn = -bvn / (2.0 * math.pi)
        out[high] = torch.where(
            rh > 0,
            bvn + pnorm(-torch.maximum(hh, kh)),
            -bvn + (pnorm(-hh) - pnorm(-kh)).clamp_min(0.0),
        )
    return out


def pbvnorm(z1: torch.Tensor, z2: torch.Tensor, rho: torch.Tensor) -> torch.Tensor:
    """Bivariate standard normal CDF with correlation ``rho``.

    Genz's (2004) Gauss-Legendre evaluation of the Drezner-Wesolowsky
    formula, with the asymptotic expansion for ``|rho| >= 0.925``. Accurate to
    about ``1e-15``.
    """
    rho = torch.as_tensor(rho, dtype=z1.dtype, device=z1.device)
    z1, z2, rho = torch.broadcast_tensors(z1, z2, rho)
    shape = z1.shape
    h, k = -z1.reshape(-1), -z2.reshape(-1)
    r = rho.reshape(-1).clamp(-_RHO_MAX, _RHO_MAX)
    return _by_rule(_bvn_upper, r, h, k).reshape(shape).clamp(0.0, 1.0)


def _betacf(a: torch.Tensor, b: torch.Tensor, x: torch.Tensor, max_iter: int = 100, eps: float = 3e-14) -> torch.Tensor:
    # Modified Lentz continued fraction for the incomplete beta function.
    tiny = 1e-300
    c = torch.ones_like(x)
    d = 1.0 - (a + b) * x / (a + 1.0)
    d = torch.where(d.abs() < tiny, torch.full_like(d, tiny), d).reciprocal()
    h = d.clone()
    for m in range(1, max_iter + 1):
        m2 = 2.0 * m
        for aa in (m * (b - m) * x / ((a - 1.0 + m2) * (a + m2)),
                   -(a + m) * (a + b + m) * x / ((a + m2) * (a + 1.0 + m2))):
            d = 1.0 + aa * d
            d = torch.where(d.abs() < tiny, torch.full_like(d, tiny), d).reciprocal()
            c = 1.0 + aa / c
            c = torch.where(c.abs() < tiny, torch.full_like(c, tiny), c)
            delta = d * c
            h = h * delta
        if m % 5 == 0 and bool(((delta - 1.0).abs() < eps).all()):
            break
    return h


def betainc(a: torch.Tensor, b: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
    """Regularized incomplete beta function ``I_x(a, b)``."""
    x = x.clamp(0.0, 1.0)
    a, b, x = torch.broadcast_tensors(torch.as_tensor(a, dtype=x.dtype), torch.as_tensor(b, dtype=x.dtype), x)
    inner = (x > 0.0) & (x < 1.0)
    xs = torch.where(inner, x, torch.full_like(x, 0.5))
    log_front = (a * torch.log(xs) + b * torch.log1p(-xs)
                 + torch.lgamma(a + b) - torch.lgamma(a) - torch.lgamma(b))
    front = torch.exp(log_front)
    direct = xs < (a + 1.0) / (a + b + 2.0)
    lower = front * _betacf(a, b, xs) / a
    upper = 1.0 - front * _betacf(b, a, 1.0 - xs) / b
    out = torch.where(direct, lower, upper)
    out = torch.where(x <= 0.0, torch.zeros_like(out), out)
    out = torch.where(x >= 1.0, torch.ones_like(out), out)
    return out.clamp(0.0, 1.0)


def dt(x: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    nu = torch.as_tensor(nu, dtype=x.dtype, device=x.device)
    log_pdf = (torch.lgamma(0.5 * (nu + 1.0)) - torch.lgamma(0.5 * nu)
               - 0.5 * torch.log(nu * math.pi) - 0.5 * (nu + 1.0) * torch.log1p(x * x / nu))
    return torch.exp(log_pdf)


def pt(x: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    nu = torch.as_tensor(nu, dtype=x.dtype, device=x.device)
    tail = 0.5 * betainc(0.5 * nu, torch.full_like(x, 0.5), nu / (nu + x * x))
    return torch.where(x >= 0, 1.0 - tail, tail)


def qt_approx(p: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    """Hill's (1970) expansion of the Student t quantile around the normal one."""
    z = qnorm(p)
    z2 = z * z
    g1 = z * (z2 + 1.0) / 4.0
    g2 = z * ((5.0 * z2 + 16.0) * z2 + 3.0) / 96.0
    g3 = z * (((3.0 * z2 + 19.0) * z2 + 17.0) * z2 - 15.0) / 384.0
    return z + (g1 + (g2 + g3 / nu) / nu) / nu


def qt(p: torch.Tensor, nu: torch.Tensor, *, n_iter: int = 3) -> torch.Tensor:
    """Student t quantile: Hill start refined by Halley steps."""
    p = clamp_unit(p)
    nu = torch.as_tensor(nu, dtype=p.dtype, device=p.device)
    x = qt_approx(p, nu)
    for _ in range(n_iter):
        f = dt(x, nu).clamp_min(1e-300)
        r = pt(x, nu) - p
        fprime = -f * (nu + 1.0) * x / (nu + x * x)
        x = x - 2.0 * r * f / (2.0 * f * f - r * fprime)
    return x


def _bvt_lower(x: torch.Tensor, w: torch.Tensor, r: torch.Tensor, x1: torch.Tensor, x2: torch.Tensor,
               nu: torch.Tensor) -> torch.Tensor:
    # dF/drho = (1 + (x1^2 + x2^2 - 2 rho x1 x2) / (nu (1 - rho^2)))^(-nu/2) / (2 pi sqrt(1 - rho^2)),
    # integrated over theta = asin(rho) from 0, or from the nearer of -pi/2 and pi/2 when |rho| is large.
    t1, t2 = pt(x1, nu), pt(x2, nu)
    asr = torch.asin(r)
    near = r.abs() >= 0.925
    end = torch.where(near, torch.sign(r) * (0.5 * math.pi), torch.zeros_like(r))
    at_end = torch.where(
        near,
        torch.where(r > 0, torch.minimum(t1, t2), (t1 + t2 - 1.0).clamp_min(0.0)),
        t1 * t2,
    )
    mid, half = 0.5 * (asr + end), 0.5 * (asr - end)
    nodes = torch.cat([x, -x])
    theta = mid[:, None] + half[:, None] * nodes
    cos = torch.cos(theta)
    q = ((x1 * x1 + x2 * x2)[:, None] - 2.0 * torch.sin(theta) * (x1 * x2)[:, None]) / (nu[:, None] * cos * cos)
    f = torch.exp(-0.5 * nu[:, None] * torch.log1p(q.clamp_min(0.0)))
    return at_end + half * (torch.cat([w, w]) * f).sum(dim=-1) / (2.0 * math.pi)


def pbvt(x1: torch.Tensor, x2: torch.Tensor, rho: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    """Bivariate Student t CDF with correlation ``rho`` and ``nu`` degrees of freedom.

    Works for non-integer ``nu``: the derivative in ``rho`` has a closed form,
    and it is integrated with the same Gauss-Legendre rules as :func:`pbvnorm`.
    """
    rho = torch.as_tensor(rho, dtype=x1.dtype, device=x1.device)
    nu = torch.as_tensor(nu, dtype=x1.dtype, device=x1.device)
    x1, x2, rho, nu = torch.broadcast_tensors(x1, x2, rho, nu)
    shape = x1.shape
    r = rho.reshape(-1).clamp(-_RHO_MAX, _RHO_MAX)
    out = _by_rule(_bvt_lower, r, x1.reshape(-1), x2.reshape(-1), nu.reshape(-1))
    return out.reshape(shape).clamp(0.0, 1.0)


# ---- dependence measures ----

def _weights_like(x: torch.Tensor, weights: torch.Tensor | None) -> torch.Tensor | None:
    if weights is None or weights.numel() == 0:
        return None
    w = weights.to(dtype=x.dtype, device=x.device).reshape(-1)
    if w.numel() != x.numel():
        raise ValueError("weights must have the same length as the data")
    return w


def pearson_cor(x: torch.Tensor, y: torch.Tensor, *, weights: torch.Tensor | None = None) -> float:
    x = as_float64(x).reshape(-1)
    y = as_float64(y).reshape(-1)
    if x.numel() != y.numel():
        raise ValueError("x and y must have the same length")
    if x.numel() < 2:
        return float("nan")
    w = _weights_like(x, weights)
    if w is None:
        w = torch.ones_like(x)
    w = w / w.sum()
    xc = x - (w * x).sum()
    yc = y - (w * y).sum()
    den = torch.sqrt((w * xc * xc).sum() * (w * yc * yc).sum())
    if float(den) <= 0.0:
        return 0.0
    return float(((w * xc * yc).sum() / den).clamp(-1.0, 1.0))


def rank(x: torch.Tensor) -> torch.Tensor:
    """1-based ranks; ties are broken by position."""
    idx = torch.argsort(x, stable=True)
    r = torch.empty_like(x)
    r[idx] = torch.arange(1, x.numel() + 1, dtype=x.dtype, device=x.device)
    return r


def _count_inversions(values: list[int]) -> int:
    # Fenwick tree over 1-based ranks, scanning from the right.
    n = len(values)
    tree = [0] * (n + 1)
    inv = 0
    for v in reversed(values):
        i = v - 1
        while i > 0:
            inv += tree[i]
            i -= i & -i
        i = v
        while i <= n:
            tree[i] += 1
            i += i & -i
    return inv


def kendall_tau(x: torch.Tensor, y: torch.Tensor, *, weights: torch.Tensor | None = None) -> float:
    """Kendall's tau.

    Without weights an O(n log n) inversion count is used. With weights the
    pairwise definition is evaluated in row blocks.
    """
    x = as_float64(x).reshape(-1)
    y = as_float64(y).reshape(-1)
    n = x.numel()
    if n != y.numel():
        raise ValueError("x and y must have the same length")
    if n < 2:
        return float("nan")
    w = _weights_like(x, weights)
    if w is None and n > 500:
        order = torch.argsort(x, stable=True)
        ry = rank(y[order]).to(torch.long).tolist()
        inv = _count_inversions(ry)
        return max(-1.0, min(1.0, 1.0 - 4.0 * inv / (n * (n - 1.0))))

    if w is None:
        w = torch.ones_like(x)
    conc = torch.zeros((), dtype=x.dtype)
    disc = torch.zeros((), dtype=x.dtype)
    block = 1024
    for start in range(0, n, block):
        stop = min(start + block, n)
        s = torch.sign(x[start:stop, None] - x[None, :]) * torch.sign(y[start:stop, None] - y[None, :])
        ww = w[start:stop, None] * w[None, :]
        conc = conc + (ww * (s > 0)).sum()
        disc = disc + (ww * (s < 0)).sum()
    den = conc + disc
    if float(den) == 0.0:
        return 0.0
    return float(((conc - disc) / den).clamp(-1.0, 1.0))


def spearman_rho(x: torch.Tensor, y: torch.Tensor, *, weights: torch.Tensor | None = None) -> float:
    x = as_float64(x).reshape(-1)
    y = as_float64(y).reshape(-1)
    return pearson_cor(rank(x), rank(y), weights=weights)


def hoeffding_d(x: torch.Tensor, y: torch.Tensor, *, weights: torch.Tensor | None = None) -> float:
    """Hoeffding's D, scaled so that it lies in ``[-0.5, 1]``."""
    x = as_float64(x).reshape(-1)
    y = as_float64(y).reshape(-1)
    n = x.numel()
    if n != y.numel():
        raise ValueError("x and y must have the same length")
    if n < 5:
        return float("nan")
    rx = rank(x) - 1.0
    ry = rank(y) - 1.0
    q = torch.empty_like(x)
    block = 1024
    for start in range(0, n, block):
        stop = min(start + block, n)
        below = (x[None, :] < x[start:stop, None]) & (y[None, :] < y[start:stop, None])
        q[start:stop] = below.sum(dim=1).to(x.dtype)
    inner = rx * ry - q - rx - ry + 2.0
    a1 = float((q * (q - 1.0)).sum())
    a2 = float((q * inner).sum())
    a3 = float((rx * (rx - 1.0) * ry * (ry - 1.0) - 4.0 * q * inner - 2.0 * q * (q - 1.0)).sum())
    p3 = n * (n - 1.0) * (n - 2.0)
    p4 = p3 * (n - 3.0)
    p5 = p4 * (n - 4.0)
    return max(-0.5, min(1.0, 30.0 * (a1 / p3 - 2.0 * a2 / p4 + a3 / p5)))


def _moving_average(x: torch.Tensor, half_width: int) -> torch.Tensor:
    n = x.numel()
    if half_width <= 0 or half_width >= n:
        return x.clone()
    k = 2 * half_width + 1
    kernel = torch.full((1, 1, k), 1.0 / k, dtype=x.dtype, device=x.device)
    out = F.conv1d(x.reshape(1, 1, n), kernel, padding=half_width).reshape(n)
    out[:half_width] = out[half_width]
    out[-half_width:] = out[n - half_width - 1]
    return out


def ace(data: torch.Tensor, *, weights: torch.Tensor | None = None,
        max_outer: int = 100, max_inner: int = 10) -> torch.Tensor:
    """Alternating conditional expectations (Breiman and Friedman, 1985).

    Returns the two optimal transformations, shape ``(n, 2)``, standardised to
    mean zero and unit variance. Conditional expectations are estimated with
    a moving average over the rank order of the other variable.
    """
    data = as_float64(data)
    n = data.shape[0]
    w = _weights_like(data[:, 0], weights)
    if w is None:
        w = torch.ones(n, dtype=data.dtype)
    span = int(math.ceil(n / 5.0))
    orders = [torch.argsort(data[:, k], stable=True) for k in range(2)]
    inverses = [torch.argsort(o) for o in orders]

    def smooth(v: torch.Tensor, k: int) -> torch.Tensor:
        return _moving_average(v[orders[k]], span)[inverses[k]]

    def standardise(v: torch.Tensor) -> torch.Tensor:
        v = v - v.mean()
        return v / v.std().clamp_min(1e-300)

    phi = torch.stack([standardise(inverses[0].to(data.dtype)),
                       standardise(inverses[1].to(data.dtype))], dim=1) * w[:, None]
    outer_err = 1.0
    for _ in range(max_outer):
        inner_err = 1.0
        for _ in range(max_inner):
            phi[:, 1] = standardise(smooth(phi[:, 0] * w, 1))
            err = float(((phi[:, 1] - phi[:, 0]) ** 2).mean())
            done = abs(inner_err - err) <= 1e-4
            inner_err = err
            if done:
                break
        phi[:, 0] = standardise(smooth(phi[:, 1] * w, 0))
        err = float(((phi[:, 1] - phi[:, 0]) ** 2).mean())
        done = abs(outer_err - err) <= 2e-15
        outer_err = err
        if done:
            break
    return phi


def maximal_correlation(x: torch.Tensor, y: torch.Tensor, *, weights: torch.Tensor | None = None) -> float:
    phi = ace(torch.stack([as_float64(x).reshape(-1), as_float64(y).reshape(-1)], dim=1), weights=weights)
    return pearson_cor(phi[:, 0], phi[:, 1], weights=weights)


def dependence(x: torch.Tensor, y: torch.Tensor, method: str = "tau",
               *, weights: torch.Tensor | None = None) -> float:
    """Dependence measure used to weight candidate vine edges."""
    if method == "tau":
        return kendall_tau(x, y, weights=weights)
    if method == "rho":
        return spearman_rho(x, y, weights=weights)
    if method == "hoeffd":
        return hoeffding_d(x, y, weights=weights)
    if method == "mcor":
        return maximal_correlation(x, y, weights=weights)
    if method == "joe":
        z1 = qnorm(clamp_unit(as_float64(x)))
        z2 = qnorm(clamp_unit(as_float64(y)))
        r = pearson_cor(z1, z2, weights=weights)
        return -0.5 * math.log(max(1.0 - r * r, 1e-300))
    raise ValueError(f"unknown dependence measure: {method!r}")


def to_pseudo_obs(x: torch.Tensor) -> torch.Tensor:
    """Rank-transform each column to ``(0, 1)`` (ties broken by position)."""
    x = as_float64(x)
    if x.ndim == 1:
        x = x.unsqueeze(1)
    n = x.shape[0]
    cols = [rank(x[:, j]) for j in range(x.shape[1])]
    return torch.stack(cols, dim=1) / (n + 1.0)
