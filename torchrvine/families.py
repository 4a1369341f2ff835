"""BicopFamily enum and family groups."""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from .errors import FamilyError


class BicopFamily(str, Enum):
    indep = "indep"
    gaussian = "gaussian"
    student = "student"
    clayton = "clayton"
    gumbel = "gumbel"
    frank = "frank"
    joe = "joe"
    bb1 = "bb1"
    bb6 = "bb6"
    bb7 = "bb7"
    bb8 = "bb8"
    tll = "tll"


ROTATIONS = (0, 90, 180, 270)

_ROTATIONLESS = frozenset({
    BicopFamily.indep,
    BicopFamily.gaussian,
    BicopFamily.student,
    BicopFamily.frank,
    BicopFamily.tll,
})

parametric = [f for f in BicopFamily if f not in (BicopFamily.indep, BicopFamily.tll)]
nonparametric = [BicopFamily.indep, BicopFamily.tll]
one_par = [BicopFamily.gaussian, BicopFamily.clayton, BicopFamily.gumbel, BicopFamily.frank, BicopFamily.joe]
two_par = [BicopFamily.student, BicopFamily.bb1, BicopFamily.bb6, BicopFamily.bb7, BicopFamily.bb8]
elliptical = [BicopFamily.gaussian, BicopFamily.student]
archimedean = [
    BicopFamily.clayton, BicopFamily.gumbel, BicopFamily.frank, BicopFamily.joe,
    BicopFamily.bb1, BicopFamily.bb6, BicopFamily.bb7, BicopFamily.bb8,
]
bb = [BicopFamily.bb1, BicopFamily.bb6, BicopFamily.bb7, BicopFamily.bb8]
itau = [BicopFamily.indep, BicopFamily.gaussian, BicopFamily.student, BicopFamily.clayton,
        BicopFamily.gumbel, BicopFamily.frank, BicopFamily.joe]
rotationless = [f for f in BicopFamily if f in _ROTATIONLESS]
lt = [BicopFamily.clayton, BicopFamily.bb1, BicopFamily.bb7]
ut = [BicopFamily.gumbel, BicopFamily.joe, BicopFamily.bb1, BicopFamily.bb6, BicopFamily.bb7, BicopFamily.bb8]
all = list(BicopFamily)  # noqa: A001

_GROUPS = {
    "all": all,
    "parametric": parametric,
    "par": parametric,
    "nonparametric": nonparametric,
    "nonpar": nonparametric,
    "one_par": one_par,
    "onepar": one_par,
    "two_par": two_par,
    "twopar": two_par,
    "elliptical": elliptical,
    "archimedean": archimedean,
    "bb": bb,
    "itau": itau,
    "rotationless": rotationless,
}


def family_can_rotate(fam: BicopFamily) -> bool:
    return fam not in _ROTATIONLESS


def normalize_family(fam: str | BicopFamily) -> BicopFamily:
    if isinstance(fam, BicopFamily):
        return fam
    try:
        return BicopFamily(str(fam).lower())
    except ValueError as e:
        raise FamilyError(f"unknown copula family: {fam!r}") from e


def check_rotation(fam: BicopFamily, rotation: int) -> int:
    rotation = int(rotation)
    if rotation not in ROTATIONS:
        raise FamilyError(f"rotation must be one of {ROTATIONS}, got {rotation}")
    if rotation != 0 and not family_can_rotate(fam):
        raise FamilyError(f"family {fam.value!r} does not support rotation {rotation}")
    return rotation


def expand_family_set(family_set: str | BicopFamily | Iterable[str | BicopFamily] | None) -> list[BicopFamily]:
    """Resolve family names and group names into an ordered list of families.

    The result follows enumeration order and has no duplicates, which makes
    it the tie-breaking order used during selection.
    """
    if family_set is None:
        return list(BicopFamily)
    if isinstance(family_set, (str, BicopFamily)):
        family_set = [family_set]
    chosen: set[BicopFamily] = set()
    for item in family_set:
        if isinstance(item, str) and not isinstance(item, BicopFamily) and item.lower() in _GROUPS:
            chosen.update(_GROUPS[item.lower()])
        else:
            chosen.add(normalize_family(item))
    if not chosen:
        raise FamilyError("family_set is empty")
    return [f for f in BicopFamily if f in chosen]
