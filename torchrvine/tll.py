"""Nonparametric pair copula: transformation local-likelihood estimator.

The density is estimated on the normal-score scale with a Gaussian kernel,
evaluated on a fixed grid and stored as an :class:`InterpolationGrid`.
"""

from __future__ import annotations

import torch

from . import stats

GRID_SIZE = 30


def make_grid(m: int = GRID_SIZE, *, dtype=torch.float64) -> torch.Tensor:
    """Grid points on ``[0, 1]`` equally spaced on the normal-score scale."""
    return stats.pnorm(torch.linspace(-3.25, 3.25, m, dtype=dtype))


def _trapezoid_upto(upper: torch.Tensor, values: torch.Tensor, grid: torch.Tensor) -> torch.Tensor:
    """Integral of each row of the piecewise linear ``values`` from 0 to ``upper``."""
    x0, x1 = grid[:-1], grid[1:]
    v0, v1 = values[:, :-1], values[:, 1:]
    up = upper.reshape(-1, 1)
    full = (up >= x1) * (v0 + v1) * (x1 - x0) * 0.5
    dx = (up - x0).clamp_min(0.0)
    partial = ((up >= x0) & (up < x1)) * (2.0 * v0 + (v1 - v0) / (x1 - x0) * dx) * dx * 0.5
    return (full + partial).sum(dim=1)


class InterpolationGrid:
    """Bilinear interpolation of a copula density tabulated on a square grid."""

    def __init__(self, grid_points: torch.Tensor, values: torch.Tensor, *, norm_times: int = 3):
        self.grid_points = stats.as_float64(grid_points).clone()
        self.grid_points[0] = 0.0
        self.grid_points[-1] = 1.0
        self.values = stats.as_float64(values).clone()
        m = self.grid_points.numel()
        if self.values.shape != (m, m):
            raise ValueError(f"values must have shape ({m}, {m})")
        self._normalize(norm_times)

    def _normalize(self, times: int) -> None:
        # Alternate row/column rescaling so that both margins integrate to one.
        ones = torch.ones(self.grid_points.numel(), dtype=self.values.dtype)
        for _ in range(times):
            rows = _trapezoid_upto(ones, self.values, self.grid_points).clamp_min(1e-20)
            self.values = self.values / rows[:, None]
            cols = _trapezoid_upto(ones, self.values.t(), self.grid_points).clamp_min(1e-20)
            self.values = self.values / cols[None, :]

    def transposed(self) -> "InterpolationGrid":
        return InterpolationGrid(self.grid_points, self.values.t(), norm_times=0)

    def interpolate(self, u: torch.Tensor) -> torch.Tensor:
        g = self.grid_points
        m = g.numel()
        i = (torch.searchsorted(g, u[:, 0].contiguous(), right=True) - 1).clamp(0, m - 2)
        j = (torch.searchsorted(g, u[:, 1].contiguous(), right=True) - 1).clamp(0, m - 2)
        tx = (u[:, 0] - g[i]) / (g[i + 1] - g[i])
        ty = (u[:, 1] - g[j]) / (g[j + 1] - g[j])
        v = self.values
        return ((1.0 - tx) * (1.0 - ty) * v[i, j] + tx * (1.0 - ty) * v[i + 1, j]
                + (1.0 - tx) * ty * v[i, j + 1] + tx * ty * v[i + 1, j + 1])

    def _slices(self, fixed: torch.Tensor, axis: int) -> torch.Tensor:
        # Density along the grid of one argument with the other argument fixed.
        g = self.grid_points
        n, m = fixed.numel(), g.numel()
        free = g.repeat(n)
        held = fixed.repeat_interleave(m)
        pts = torch.stack([held, free], dim=1) if axis == 1 else torch.stack([free, held], dim=1)
        return self.interpolate(pts).reshape(n, m)

    def conditional(self, u: torch.Tensor, cond_var: int) -> torch.Tensor:
        """Conditional distribution given argument ``cond_var`` (1 or 2)."""
        if cond_var == 1:
            fixed, upper = u[:, 0], u[:, 1]
        else:
            fixed, upper = u[:, 1], u[:, 0]
        vals = self._slices(fixed, cond_var).clamp_min(1e-4)
        num = _trapezoid_upto(upper, vals, self.grid_points)
        den = _trapezoid_upto(torch.ones_like(upper), vals, self.grid_points).clamp_min(1e-20)
        return stats.clamp_unit(num / den)

    def cdf(self, u: torch.Tensor) -> torch.Tensor:
        g = self.grid_points
        m = g.numel()
        # Inner integral over the second argument, for every first-argument grid value.
        rows = self.values.unsqueeze(0).expand(u.shape[0], m, m).reshape(-1, m)
        inner = _trapezoid_upto(u[:, 1].repeat_interleave(m), rows, g).reshape(u.shape[0], m)
        return stats.clamp_unit(_trapezoid_upto(u[:, 0], inner, g))


def fit_tll(
    u: torch.Tensor,
    *,
    method: str = "constant",
    mult: float = 1.0,
    weights: torch.Tensor | None = None,
    grid_size: int = GRID_SIZE,
) -> tuple[InterpolationGrid, float, float]:
    """Fit the estimator and return ``(grid, loglik, effective df)``."""
    if method not in ("constant", "linear", "quadratic"):
        raise ValueError("method must be 'constant', 'linear', or 'quadratic'")
    u = stats.clamp_unit(stats.as_float64(u)[:, :2])
    n = u.shape[0]
    z_data = stats.qnorm(stats.to_pseudo_obs(u))
    w = None if weights is None or weights.numel() == 0 else stats.as_float64(weights).reshape(-1)

    # Bandwidth: normal-reference rule scaled by the shape of the dependence.
    rho = stats.pearson_cor(z_data[:, 0], z_data[:, 1], weights=w)
    rho = max(-0.95, min(0.95, rho))
    mcor = max(-0.99, min(0.99, stats.maximal_correlation(z_data[:, 0], z_data[:, 1], weights=w)))
    degree = {"constant": 0, "linear": 1, "quadratic": 2}[method]
    mult0 = n ** (-1.0 / 3.0) if degree == 0 else 1.5 * n ** (-1.0 / (2.0 * degree + 1.0))
    shape = max(abs(rho) / max(abs(mcor), 1e-6), 1e-12) ** (0.5 * mcor)
    bw = torch.tensor([[1.0, rho], [rho, 1.0]], dtype=torch.float64) * (mult0 * mult * shape)
    inv_chol = torch.linalg.inv(torch.linalg.cholesky(bw))
    det = float(torch.det(inv_chol))

    grid = make_grid(grid_size)
    gz = stats.qnorm(stats.clamp_unit(torch.stack(
        [grid.repeat_interleave(grid_size), grid.repeat(grid_size)], dim=1)))
    diff = (gz @ inv_chol.t()).unsqueeze(1) - (z_data @ inv_chol.t()).unsqueeze(0)
    kern = stats.dnorm(diff).prod(dim=2) * det
    if w is not None:
        kern = kern * (w / w.mean()).unsqueeze(0)
    f0 = kern.mean(dim=1).clamp_min(1e-300)
    fit = f0
    if degree > 0:
        b = (diff * kern.unsqueeze(2)).mean(dim=1) / f0[:, None]
        if degree == 1:
            fit = f0 * torch.exp(-0.5 * (b * b).sum(dim=1))
        else:
            second = torch.einsum("gni,gnj,gn->gij", diff, diff, kern) / (n * f0[:, None, None])
            m2 = second - b.unsqueeze(2) * b.unsqueeze(1)
            s = torch.linalg.inv(m2 + 1e-10 * torch.eye(2, dtype=m2.dtype))
            quad = torch.einsum("gi,gij,gj->g", b, s, b)
            fit = f0 * torch.sqrt(torch.det(s).clamp_min(0.0)) * torch.exp(-0.5 * quad)
    influence = stats.dnorm(torch.zeros(2, dtype=torch.float64)).prod() * det / (f0 * n)

    values = (fit / stats.dnorm(gz).prod(dim=1)).reshape(grid_size, grid_size)
    interp = InterpolationGrid(grid, values)
    dens = interp.interpolate(u).clamp_min(1e-300)
    lp = torch.log(dens) if w is None else w * torch.log(dens)
    # Effective degrees of freedom: kernel influence summed over the observations.
    infl = InterpolationGrid(grid, influence.reshape(grid_size, grid_size), norm_times=0)
    npars = max(1.0, float(infl.interpolate(u).sum()))
    return interp, float(lp.sum()), npars
