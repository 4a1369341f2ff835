"""Exception and warning types raised by torchrvine.

Configuration and structure problems are fatal and raise ``ValueError``
subclasses. Problems found while fitting individual edges are not fatal: they
are collected as :class:`Diagnostic` records on the returned model and also
emitted through :mod:`warnings`.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Iterable

logger = logging.getLogger(__name__)


class StructureError(ValueError):
    """Invalid R-vine structure or array of pair copulas."""


class FamilyError(ValueError):
    """Unknown copula family, family group, or forbidden rotation."""


class FitDegeneracy(UserWarning):
    """An edge could not be fit; the independence copula was substituted."""


class NumericWarning(UserWarning):
    """A fitted parameter lies on or near the boundary of its domain."""


class SelectionNonconvergence(UserWarning):
    """The automatic threshold/truncation search ran out of rounds."""


@dataclass(frozen=True)
class Diagnostic:
    category: type[Warning]
    message: str
    tree: int | None = None
    edge: int | None = None

    def located(self, tree: int, edge: int) -> "Diagnostic":
        return Diagnostic(self.category, self.message, tree, edge)

    def __str__(self) -> str:
        if self.tree is None:
            return f"{self.category.__name__}: {self.message}"
        return f"{self.category.__name__} (tree {self.tree}, edge {self.edge}): {self.message}"


def emit(diagnostics: Iterable[Diagnostic], *, stacklevel: int = 3) -> None:
    """Log and warn for each diagnostic, in order."""
    for diag in diagnostics:
        logger.warning("%s", diag)
        warnings.warn(str(diag), diag.category, stacklevel=stacklevel)
