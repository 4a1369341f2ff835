"""torchrvine — R-vine copula modelling in PyTorch.

Structure selection, pair-copula fitting, density, distribution function,
Rosenblatt transforms and simulation for regular vine copulas.
"""

from __future__ import annotations

__version__ = "0.1.0"

import torch

from .families import BicopFamily
from .bicop import PairCopula
from .controls import Automatic, Fixed, FitControlsBicop, FitControlsVinecop
from .errors import (
    Diagnostic, FamilyError, FitDegeneracy, NumericWarning, SelectionNonconvergence, StructureError,
)
from .pair_select import select_pair
from .qrng import QuasiRandomEngine
from .structure import StructureModel
from .vinecop import (
    VineCopula, as_structure, cdf, density, from_matrix, mbicv, select_structure, simulate, to_matrix,
)
from .stats import (
    pearson_cor, kendall_tau, spearman_rho, hoeffding_d, to_pseudo_obs,
)
from . import families as _families


def simulate_uniform(
    n: int,
    d: int,
    *,
    qrng: bool = False,
    seeds: list[int] | tuple[int, ...] = (),
) -> torch.Tensor:
    """Simulate ``n`` points from the ``d``-dimensional uniform distribution.

    With ``qrng=True`` the points come from a randomized Halton sequence
    (``d <= 300``) or a scrambled Sobol sequence.
    """
    points, _ = QuasiRandomEngine.for_dimension(int(d), qrng=qrng, seeds=seeds).draw(int(n))
    return points


# ---------------------------------------------------------------------------
# Individual family shortcut names
# ---------------------------------------------------------------------------
indep = BicopFamily.indep
gaussian = BicopFamily.gaussian
student = BicopFamily.student
clayton = BicopFamily.clayton
gumbel = BicopFamily.gumbel
frank = BicopFamily.frank
joe = BicopFamily.joe
bb1 = BicopFamily.bb1
bb6 = BicopFamily.bb6
bb7 = BicopFamily.bb7
bb8 = BicopFamily.bb8
tll = BicopFamily.tll

# ---------------------------------------------------------------------------
# Family convenience lists
# ---------------------------------------------------------------------------
one_par = _families.one_par
two_par = _families.two_par
parametric = _families.parametric
nonparametric = _families.nonparametric
rotationless = _families.rotationless
archimedean = _families.archimedean
elliptical = _families.elliptical
bb = _families.bb
lt = _families.lt
ut = _families.ut
itau = _families.itau
all = _families.all  # noqa: A001


__all__ = [
    "BicopFamily",
    "PairCopula",
    "FitControlsBicop",
    "FitControlsVinecop",
    "Fixed",
    "Automatic",
    "StructureModel",
    "VineCopula",
    "QuasiRandomEngine",
    "select_pair",
    "select_structure",
    "density",
    "cdf",
    "simulate",
    "mbicv",
    "as_structure",
    "from_matrix",
    "to_matrix",
    "simulate_uniform",
    "to_pseudo_obs",
    # Errors and diagnostics
    "Diagnostic",
    "StructureError",
    "FamilyError",
    "FitDegeneracy",
    "NumericWarning",
    "SelectionNonconvergence",
    # Dependence measures
    "pearson_cor",
    "kendall_tau",
    "spearman_rho",
    "hoeffding_d",
    # Individual family shortcut names
    "indep",
    "gaussian",
    "student",
    "clayton",
    "gumbel",
    "frank",
    "joe",
    "bb1",
    "bb6",
    "bb7",
    "bb8",
    "tll",
    # Family convenience lists
    "one_par",
    "two_par",
    "parametric",
    "nonparametric",
    "rotationless",
    "archimedean",
    "elliptical",
    "bb",
    "lt",
    "ut",
    "itau",
    "all",
]
