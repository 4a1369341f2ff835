"""Unit tests for single-edge family selection."""
import math
import unittest

import torch

from torchrvine import BicopFamily, FitControlsBicop, FitDegeneracy, PairCopula, select_pair


class TestSelectPair(unittest.TestCase):

    def setUp(self):
        torch.manual_seed(0)

    def test_selects_generating_family(self):
        cases = [("clayton", 0, [4.0]), ("gumbel", 0, [3.0]), ("clayton", 90, [4.0])]
        for fam, rot, p in cases:
            with self.subTest(family=fam, rotation=rot):
                u = PairCopula(fam, rot, torch.tensor(p)).simulate(1500, seeds=[5])
                sel = select_pair(u, FitControlsBicop(family_set=["gaussian", "clayton", "gumbel", "frank"]))
                self.assertEqual(sel.pair_copula.family, BicopFamily(fam))
                self.assertEqual(sel.pair_copula.rotation, rot)
                self.assertAlmostEqual(sel.loglik, sel.pair_copula.loglik_)
                self.assertEqual(sel.diagnostics, [])

    def test_independent_data_prefers_indep_under_bic(self):
        u = torch.rand(300, 2, dtype=torch.float64)
        sel = select_pair(u, FitControlsBicop(family_set=["indep", "gaussian"], selection_criterion="bic"))
        self.assertEqual(sel.pair_copula.family, BicopFamily.indep)
        self.assertEqual(sel.criterion_value, 0.0)

    def test_loglik_criterion_is_minus_two_loglik(self):
        u = PairCopula("gaussian", 0, torch.tensor([0.5])).simulate(400, seeds=[1])
        sel = select_pair(u, FitControlsBicop(family_set=["gaussian"], selection_criterion="loglik"))
        self.assertEqual(sel.pair_copula.family, BicopFamily.gaussian)
        self.assertAlmostEqual(sel.criterion_value, -2.0 * sel.loglik)

    def test_threshold_short_circuits_to_indep(self):
        u = PairCopula("gaussian", 0, torch.tensor([0.3])).simulate(400, seeds=[2])
        sel = select_pair(u, FitControlsBicop(family_set=["gaussian"]), threshold=0.9)
        self.assertEqual(sel.pair_copula.family, BicopFamily.indep)
        self.assertEqual(sel.loglik, 0.0)
        self.assertEqual(sel.diagnostics, [])

    def test_too_few_rows(self):
        u = torch.rand(5, 2, dtype=torch.float64)
        sel = select_pair(u)
        self.assertEqual(sel.pair_copula.family, BicopFamily.indep)
        self.assertEqual(len(sel.diagnostics), 1)
        self.assertIs(sel.diagnostics[0].category, FitDegeneracy)

    def test_constant_column(self):
        u = torch.rand(100, 2, dtype=torch.float64)
        u[:, 1] = 0.5
        sel = select_pair(u)
        self.assertEqual(sel.pair_copula.family, BicopFamily.indep)
        self.assertIs(sel.diagnostics[0].category, FitDegeneracy)

    def test_missing_rows_are_dropped(self):
        u = PairCopula("clayton", 0, torch.tensor([3.0])).simulate(500, seeds=[4])
        u[:20, 0] = float("nan")
        sel = select_pair(u, FitControlsBicop(family_set=["clayton"]))
        self.assertEqual(sel.pair_copula.family, BicopFamily.clayton)
        self.assertEqual(sel.pair_copula.nobs, 480)
        self.assertTrue(math.isfinite(sel.loglik))

    def test_bad_shape(self):
        with self.assertRaises(ValueError):
            select_pair(torch.rand(10, 3))


if __name__ == "__main__":
    unittest.main()
