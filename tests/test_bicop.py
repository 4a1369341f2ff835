"""Unit tests for pair copulas: families, rotations, h-functions and fitting."""
import math
import unittest

import torch

import torchrvine as tr
from torchrvine import BicopFamily, FamilyError, FitControlsBicop, PairCopula, stats
from torchrvine.families import expand_family_set, family_can_rotate


# Fixed parameter sets for each parametric family
_FAMILY_PARAMS = {
    "gaussian": [0.5],
    "student": [0.5, 5.0],
    "clayton": [2.0],
    "gumbel": [2.0],
    "frank": [5.0],
    "joe": [2.0],
    "bb1": [0.5, 1.5],
    "bb6": [2.0, 2.0],
    "bb7": [2.0, 1.0],
    "bb8": [3.0, 0.6],
}


def _grid_points(n=15, lo=0.05, hi=0.95):
    g = torch.linspace(lo, hi, n, dtype=torch.float64)
    return torch.stack([g.repeat_interleave(n), g.repeat(n)], dim=1)


class TestFamilies(unittest.TestCase):

    def test_family_shortcut_names(self):
        for name in ["indep", "gaussian", "student", "clayton", "gumbel", "frank", "joe",
                     "bb1", "bb6", "bb7", "bb8", "tll"]:
            self.assertIs(getattr(tr, name), BicopFamily(name))

    def test_group_expansion(self):
        self.assertEqual(expand_family_set("all"), list(BicopFamily))
        self.assertEqual(expand_family_set(["frank", "gaussian"]), [BicopFamily.gaussian, BicopFamily.frank])
        self.assertEqual(set(expand_family_set("parametric")) | {BicopFamily.indep, BicopFamily.tll},
                         set(BicopFamily))
        self.assertEqual(expand_family_set(["itau"]), tr.itau)

    def test_unknown_family(self):
        with self.assertRaises(FamilyError):
            PairCopula("tawn")
        with self.assertRaises(FamilyError):
            expand_family_set(["gaussian", "nope"])

    def test_forbidden_rotation(self):
        for fam in ("gaussian", "student", "frank", "indep"):
            with self.subTest(family=fam):
                with self.assertRaises(FamilyError):
                    PairCopula(fam, rotation=90)
        with self.assertRaises(FamilyError):
            PairCopula("clayton", rotation=45)

    def test_parameter_out_of_bounds(self):
        with self.assertRaises(ValueError):
            PairCopula("gaussian", parameters=torch.tensor([1.5]))
        with self.assertRaises(ValueError):
            PairCopula("clayton", parameters=torch.tensor([1.0, 2.0]))


class TestPairCopulaEvaluation(unittest.TestCase):

    def _families(self):
        for fam, p in _FAMILY_PARAMS.items():
            rotations = (0,) if not family_can_rotate(BicopFamily(fam)) else (0, 90, 180, 270)
            for rot in rotations:
                yield PairCopula(fam, rotation=rot, parameters=torch.tensor(p, dtype=torch.float64))

    def test_pdf_positive_finite(self):
        u = _grid_points()
        for pc in self._families():
            with self.subTest(family=pc.family.value, rotation=pc.rotation):
                pdf = pc.pdf(u)
                self.assertEqual(pdf.shape, (u.shape[0],))
                self.assertTrue(torch.isfinite(pdf).all())
                self.assertTrue((pdf > 0).all())

    def test_cdf_in_unit_interval(self):
        u = _grid_points()
        for pc in self._families():
            with self.subTest(family=pc.family.value, rotation=pc.rotation):
                cdf = pc.cdf(u)
                self.assertTrue((cdf >= 0).all() and (cdf <= 1).all())

    def test_hinv_inverts_hfunc(self):
        u = _grid_points(9, 0.1, 0.9)
        for pc in self._families():
            with self.subTest(family=pc.family.value, rotation=pc.rotation):
                h1 = pc.hfunc1(u)
                back = pc.hinv1(torch.stack([u[:, 0], h1], dim=1))
                self.assertLess(float((back - u[:, 1]).abs().max()), 1e-4)
                h2 = pc.hfunc2(u)
                back = pc.hinv2(torch.stack([h2, u[:, 1]], dim=1))
                self.assertLess(float((back - u[:, 0]).abs().max()), 1e-4)

    def test_hfunc_matches_cdf_derivative(self):
        u = _grid_points(7, 0.15, 0.85)
        eps = 1e-5
        for pc in self._families():
            with self.subTest(family=pc.family.value, rotation=pc.rotation):
                du = torch.tensor([eps, 0.0], dtype=torch.float64)
                num = (pc.cdf(u + du) - pc.cdf(u - du)) / (2 * eps)
                self.assertLess(float((num - pc.hfunc1(u)).abs().max()), 1e-3)

    def test_tau_sign_follows_rotation(self):
        pc = PairCopula("clayton", parameters=torch.tensor([2.0]))
        self.assertAlmostEqual(pc.tau, 0.5, places=6)
        self.assertAlmostEqual(PairCopula("clayton", 90, torch.tensor([2.0])).tau, -0.5, places=6)
        self.assertAlmostEqual(PairCopula("clayton", 180, torch.tensor([2.0])).tau, 0.5, places=6)
        self.assertAlmostEqual(PairCopula("gumbel", parameters=torch.tensor([2.0])).tau, 0.5, places=6)

    def test_joe_tau_at_two(self):
        pc = PairCopula("joe", parameters=torch.tensor([2.0]))
        self.assertAlmostEqual(pc.tau, 2.0 - math.pi ** 2 / 6.0, places=12)
        for theta in (2.0 - 1e-4, 2.0 + 1e-4):
            near = PairCopula("joe", parameters=torch.tensor([theta]))
            self.assertAlmostEqual(near.tau, pc.tau, places=4)

    def test_tau_to_parameters_inverts(self):
        for fam in ("gaussian", "clayton", "gumbel", "frank", "joe"):
            with self.subTest(family=fam):
                pc = PairCopula(fam)
                p = pc.tau_to_parameters(0.4)
                pc2 = PairCopula(fam, parameters=p)
                self.assertAlmostEqual(pc2.tau, 0.4, places=3)
        with self.assertRaises(FamilyError):
            PairCopula("bb7").tau_to_parameters(0.3)

    def test_flip_swaps_arguments(self):
        u = _grid_points(8)
        for rot in (0, 90, 180, 270):
            with self.subTest(rotation=rot):
                pc = PairCopula("clayton", rotation=rot, parameters=torch.tensor([3.0]))
                before = pc.pdf(u.flip(1))
                pc.flip()
                self.assertTrue(torch.allclose(pc.pdf(u), before, atol=1e-10))

    def test_independence(self):
        pc = PairCopula()
        u = _grid_points(5)
        self.assertTrue(torch.allclose(pc.pdf(u), torch.ones(u.shape[0], dtype=torch.float64)))
        self.assertTrue(torch.allclose(pc.hfunc1(u), u[:, 1]))
        self.assertEqual(pc.npars, 0.0)

    def test_str(self):
        pc = PairCopula("clayton", rotation=90, parameters=torch.tensor([2.0]))
        text = pc.str()
        self.assertIn("clayton", text)
        self.assertIn("90", text)


class TestBivariateDistributions(unittest.TestCase):

    _RHOS = (-0.99, -0.95, -0.6, -0.2, 0.0, 0.2, 0.5, 0.8, 0.95, 0.99)

    def test_orthant_probability(self):
        zero = torch.zeros(1, dtype=torch.float64)
        for rho in self._RHOS:
            exact = 0.25 + math.asin(rho) / (2.0 * math.pi)
            with self.subTest(rho=rho):
                self.assertAlmostEqual(float(stats.pbvnorm(zero, zero, rho)), exact, places=12)
                self.assertAlmostEqual(float(stats.pbvt(zero, zero, rho, 4.5)), exact, places=10)

    def test_reflection_identity(self):
        # P(X <= x, Y <= y; rho) + P(X <= x, Y <= -y; -rho) = P(X <= x)
        x = torch.tensor([-1.3, -0.2, 0.4, 1.1, 2.0], dtype=torch.float64)
        y = torch.tensor([0.7, -1.5, 0.4, -0.3, 1.9], dtype=torch.float64)
        for rho in self._RHOS:
            with self.subTest(rho=rho):
                total = stats.pbvnorm(x, y, rho) + stats.pbvnorm(x, -y, -rho)
                self.assertLess(float((total - stats.pnorm(x)).abs().max()), 1e-12)
                nu = torch.tensor(6.0, dtype=torch.float64)
                total = stats.pbvt(x, y, rho, nu) + stats.pbvt(x, -y, -rho, nu)
                self.assertLess(float((total - stats.pt(x, nu)).abs().max()), 1e-8)

    def test_independence_and_symmetry(self):
        x = torch.tensor([-0.8, 0.3, 1.7], dtype=torch.float64)
        y = torch.tensor([1.2, -0.4, 0.9], dtype=torch.float64)
        self.assertTrue(torch.allclose(stats.pbvnorm(x, y, 0.0), stats.pnorm(x) * stats.pnorm(y), atol=1e-14))
        for rho in (0.5, 0.97):
            with self.subTest(rho=rho):
                self.assertTrue(torch.allclose(stats.pbvnorm(x, y, rho), stats.pbvnorm(y, x, rho), atol=1e-14))
                self.assertTrue(torch.allclose(stats.pbvt(x, y, rho, 3.0), stats.pbvt(y, x, rho, 3.0), atol=1e-12))


class TestPairCopulaFit(unittest.TestCase):

    def setUp(self):
        torch.manual_seed(1)

    def test_mle_recovers_parameters(self):
        cases = [("gaussian", 0, [0.6]), ("clayton", 0, [3.0]), ("gumbel", 180, [2.0]),
                 ("frank", 0, [-6.0]), ("joe", 90, [2.5])]
        for fam, rot, p in cases:
            with self.subTest(family=fam, rotation=rot):
                true = PairCopula(fam, rotation=rot, parameters=torch.tensor(p, dtype=torch.float64))
                u = true.simulate(2000, seeds=[7])
                pc = PairCopula(fam, rotation=rot)
                pc.fit(u)
                self.assertAlmostEqual(pc.tau, true.tau, delta=0.05)
                self.assertEqual(pc.nobs, 2000)
                self.assertTrue(math.isfinite(pc.loglik_))

    def test_gaussian_mle_is_likelihood_maximum(self):
        true = PairCopula("gaussian", parameters=torch.tensor([0.6]))
        u = true.simulate(800, seeds=[4])
        pc = PairCopula("gaussian").fit(u)
        rho = float(pc.parameters[0])
        for step in (-1e-3, 1e-3):
            with self.subTest(step=step):
                other = PairCopula("gaussian", parameters=torch.tensor([rho + step]))
                self.assertGreaterEqual(pc.loglik_, other.loglik(u) - 1e-8)

    def test_itau(self):
        true = PairCopula("clayton", parameters=torch.tensor([2.0]))
        u = true.simulate(2000, seeds=[3])
        pc = PairCopula("clayton").fit(u, FitControlsBicop(parametric_method="itau"))
        self.assertAlmostEqual(float(pc.parameters[0]), 2.0, delta=0.3)

    def test_itau_not_available(self):
        u = torch.rand(200, 2, dtype=torch.float64)
        with self.assertRaises(FamilyError):
            FitControlsBicop(family_set=["bb1"], parametric_method="itau")
        with self.assertRaises(FamilyError):
            PairCopula("bb1").fit(u, FitControlsBicop(parametric_method="itau"))

    def test_tll_fit(self):
        true = PairCopula("gaussian", parameters=torch.tensor([0.7]))
        u = true.simulate(1000, seeds=[11])
        pc = PairCopula("tll").fit(u)
        self.assertGreater(pc.npars, 1.0)
        self.assertGreater(pc.loglik_, 0.0)
        self.assertAlmostEqual(pc.tau, true.tau, delta=0.1)
        g = _grid_points(6)
        self.assertTrue((pc.pdf(g) > 0).all())

    def test_criteria(self):
        true = PairCopula("gaussian", parameters=torch.tensor([0.5]))
        u = true.simulate(500, seeds=[2])
        ll = true.loglik(u)
        self.assertAlmostEqual(true.aic(u), -2 * ll + 2, places=8)
        self.assertAlmostEqual(true.bic(u), -2 * ll + math.log(500), places=8)
        self.assertAlmostEqual(true.mbic(u, psi0=0.9), true.bic(u) - 2 * math.log(0.9), places=8)


if __name__ == "__main__":
    unittest.main()
