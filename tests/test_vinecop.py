"""Tests for vine copula selection, evaluation, simulation and criteria."""
import math
import unittest
import warnings

import torch

import torchrvine as tr
from torchrvine import (
    BicopFamily, FitControlsVinecop, PairCopula, SelectionNonconvergence, StructureError,
    StructureModel, VineCopula,
)


def _pc(family, rotation=0, params=()):
    p = torch.tensor(list(params), dtype=torch.float64) if params else None
    return PairCopula(family, rotation=rotation, parameters=p)


def _random_gaussian_data(n, d, seed):
    g = torch.Generator().manual_seed(seed)
    a = torch.randn(d, d, generator=g, dtype=torch.float64)
    z = torch.randn(n, d, generator=g, dtype=torch.float64)
    return tr.to_pseudo_obs(z @ a)


def _ar1_data(n, d, rho, seed):
    g = torch.Generator().manual_seed(seed)
    z = torch.randn(n, d, generator=g, dtype=torch.float64)
    x = torch.empty_like(z)
    x[:, 0] = z[:, 0]
    for k in range(1, d):
        x[:, k] = rho * x[:, k - 1] + math.sqrt(1.0 - rho * rho) * z[:, k]
    return tr.to_pseudo_obs(x)


def _mixed_cvine():
    """4-dimensional C-vine with a different family on every edge."""
    structure = StructureModel.cvine([4, 3, 2, 1])
    pcs = [
        [_pc("gaussian", 0, [0.6]), _pc("clayton", 0, [2.0]), _pc("gumbel", 180, [1.8])],
        [_pc("frank", 0, [3.0]), _pc("joe", 90, [1.5])],
        [_pc("student", 0, [0.3, 6.0])],
    ]
    return VineCopula.from_pair_copulas(pcs, structure)


def _mild_dvine():
    structure = StructureModel.dvine([2, 4, 1, 3])
    pcs = [
        [_pc("gaussian", 0, [0.4]), _pc("frank", 0, [2.0]), _pc("clayton", 270, [0.5])],
        [_pc("frank", 0, [-1.5]), _pc("gaussian", 0, [0.2])],
        [_pc("gumbel", 0, [1.2])],
    ]
    return VineCopula.from_pair_copulas(pcs, structure)


class TestVineConstruction(unittest.TestCase):

    def test_independence_density_is_one(self):
        vine = VineCopula.independence(3)
        u = torch.rand(50, 3, dtype=torch.float64)
        self.assertTrue(torch.equal(vine.pdf(u), torch.ones(50, dtype=torch.float64)))
        self.assertEqual(vine.npars, 0.0)
        self.assertEqual(vine.dim(), (3, 0))

    def test_all_indep_pair_copulas(self):
        pcs = [[_pc("indep"), _pc("indep")], [_pc("indep")]]
        vine = VineCopula.from_pair_copulas(pcs, StructureModel.dvine([2, 3, 1]))
        u = torch.rand(40, 3, dtype=torch.float64)
        self.assertTrue(torch.allclose(vine.pdf(u), torch.ones(40, dtype=torch.float64)))
        # Every edge is an independence copula: q_1 = 2, q_2 = 1.
        expected = -2.0 * (2 * math.log(0.9) + math.log(0.81))
        self.assertAlmostEqual(tr.mbicv(vine, 0.9, u), expected, places=8)

    def test_from_pair_copulas_copies_and_truncates(self):
        pc = _pc("clayton", 0, [2.0])
        vine = VineCopula.from_pair_copulas([[pc, _pc("indep")]], StructureModel.dvine([1, 2, 3]))
        self.assertEqual(vine.dim(), (3, 1))
        self.assertIsNot(vine.pair_copulas[0][0], pc)
        pc.rotation = 90
        self.assertEqual(vine.pair_copulas[0][0].rotation, 0)

    def test_from_pair_copulas_errors(self):
        structure = StructureModel.dvine([1, 2, 3])
        with self.assertRaises(StructureError):
            VineCopula.from_pair_copulas([[_pc("indep")] * 2, [_pc("indep")], [_pc("indep")]], structure)
        with self.assertRaises(StructureError):
            VineCopula.from_pair_copulas([[_pc("indep")]], structure)
        with self.assertRaises(StructureError):
            VineCopula.from_pair_copulas([[_pc("indep")] * 2, [_pc("indep")]], structure.truncate(1))
        with self.assertRaises(StructureError):
            VineCopula.from_pair_copulas([["gaussian", "gaussian"]], structure)

    def test_summary_and_str(self):
        vine = _mixed_cvine()
        rows = vine.summary()
        self.assertEqual(len(rows), 6)
        self.assertEqual(rows[0]["conditioned"], [4, 1])
        self.assertEqual(rows[0]["family"], "gaussian")
        self.assertEqual(rows[-1]["conditioning"], [1, 2])
        self.assertIn("student", vine.str())
        self.assertEqual(str(vine), vine.str())

    def test_summary_with_joe_at_two(self):
        vine = VineCopula.from_pair_copulas([[_pc("joe", 0, [2.0]), _pc("indep")]], StructureModel.dvine([1, 2, 3]))
        rows = vine.summary()
        self.assertAlmostEqual(rows[0]["tau"], 2.0 - math.pi ** 2 / 6.0, places=12)
        self.assertIn("joe", vine.str())


class TestVineEvaluation(unittest.TestCase):

    def test_two_dimensional_vine_matches_pair_copula(self):
        pc = _pc("gumbel", 90, [2.5])
        vine = VineCopula.from_pair_copulas([[pc]], StructureModel.dvine([2, 1]))
        u = torch.rand(100, 2, dtype=torch.float64)
        # Column 0 of the pair copula is the first variable of the order.
        self.assertTrue(torch.allclose(vine.pdf(u), pc.pdf(u.flip(1))))

    def test_density_integrates_to_one(self):
        vine = _mild_dvine()
        pts = tr.simulate_uniform(20000, 4, qrng=True, seeds=[3])
        self.assertAlmostEqual(float(vine.pdf(pts).mean()), 1.0, delta=0.03)

    def test_rosenblatt_round_trip(self):
        vine = _mixed_cvine()
        u = vine.simulate(300, seeds=[8])
        w = vine.rosenblatt(u)
        back = vine.inverse_rosenblatt(w)
        self.assertLess(float((back - u).abs().max()), 1e-4)

    def test_rosenblatt_whitens(self):
        vine = _mixed_cvine()
        u = vine.simulate(3000, qrng=True, seeds=[4])
        w = vine.rosenblatt(u)
        corr = torch.corrcoef(w.t())
        off = corr - torch.eye(4, dtype=torch.float64)
        self.assertLess(float(off.abs().max()), 0.08)

    def test_simulation_keeps_variable_order(self):
        vine = _mixed_cvine()
        u = vine.simulate(3000, seeds=[1])
        self.assertEqual(u.shape, (3000, 4))
        # Edge (0, 0) couples variables 4 and 1 with a Gaussian, rho = 0.6.
        tau = tr.kendall_tau(u[:, 3], u[:, 0])
        self.assertAlmostEqual(tau, 2.0 / math.pi * math.asin(0.6), delta=0.05)

    def test_truncated_simulation_and_density(self):
        vine = _mixed_cvine()
        vine.truncate(1)
        self.assertEqual(vine.dim(), (4, 1))
        u = vine.simulate(500, seeds=[2])
        self.assertTrue(torch.isfinite(vine.pdf(u)).all())
        self.assertLess(float((vine.inverse_rosenblatt(vine.rosenblatt(u)) - u).abs().max()), 1e-4)

    def test_cdf_of_independence(self):
        vine = VineCopula.independence(3)
        u = torch.tensor([[0.5, 0.5, 0.5], [0.2, 0.9, 0.7], [0.99, 0.99, 0.99]], dtype=torch.float64)
        values = tr.cdf(u, vine, n_mc=10000, seeds=[5])
        expected = u.prod(dim=1)
        self.assertLess(float((values - expected).abs().max()), 0.02)

    def test_cdf_is_deterministic(self):
        vine = _mixed_cvine()
        u = torch.rand(10, 4, dtype=torch.float64)
        a = vine.cdf(u, n_mc=2000, seeds=[1, 2])
        b = vine.cdf(u, n_mc=2000, seeds=[1, 2], cores=2)
        self.assertTrue(torch.allclose(a, b, atol=1e-12, rtol=0))

    def test_bad_input_shape(self):
        vine = _mixed_cvine()
        with self.assertRaises(ValueError):
            vine.pdf(torch.rand(10, 3))


class TestCriteria(unittest.TestCase):

    def test_mbicv_closed_form(self):
        pcs = [[_pc("clayton", 0, [2.0]), _pc("gumbel", 0, [2.0])], [_pc("indep")]]
        vine = VineCopula.from_pair_copulas(pcs, StructureModel.dvine([1, 2, 3]))
        u = vine.simulate(500, seeds=[6])
        ll = vine.loglik(u)
        for psi0 in (0.1, 0.5, 0.9):
            with self.subTest(psi0=psi0):
                # Tree 1 has two dependent edges, tree 2 one independence edge.
                penalty = 2 * math.log(1 - psi0) + math.log(psi0 ** 2)
                expected = -2 * ll + math.log(500) * 2 - 2 * penalty
                self.assertAlmostEqual(vine.mbicv(psi0, u), expected, places=6)

    def test_mbicv_monotone_in_psi0(self):
        # Trees 2 and 3 are truncated and count as independence trees.
        pcs = [[_pc("clayton", 0, [2.0]), _pc("gumbel", 0, [2.0]), _pc("frank", 0, [3.0])]]
        vine = VineCopula.from_pair_copulas(pcs, StructureModel.dvine([1, 2, 3, 4]))
        u = vine.simulate(500, seeds=[6])
        self.assertGreater(tr.mbicv(vine, 0.1, u), tr.mbicv(vine, 0.9, u))

    def test_mbicv_requires_valid_psi0(self):
        vine = VineCopula.independence(3)
        with self.assertRaises(ValueError):
            vine.mbicv(1.5, torch.rand(10, 3))

    def test_unfitted_model_needs_data(self):
        with self.assertRaises(ValueError):
            _mixed_cvine().loglik()

    def test_aic_bic(self):
        vine = _mixed_cvine()
        u = vine.simulate(200, seeds=[9])
        ll = vine.loglik(u)
        self.assertEqual(vine.npars, 7.0)
        self.assertAlmostEqual(vine.aic(u), -2 * ll + 14.0, places=8)
        self.assertAlmostEqual(vine.bic(u), -2 * ll + math.log(200) * 7.0, places=8)


class TestSelectStructure(unittest.TestCase):

    def test_selected_structures_are_valid(self):
        controls = FitControlsVinecop(family_set=["gaussian"], parametric_method="itau")
        for d in range(3, 11):
            with self.subTest(d=d):
                u = _random_gaussian_data(150, d, seed=d)
                vine = tr.select_structure(u, controls=controls)
                s = vine.structure
                self.assertEqual(s.dim(), (d, d - 1))
                StructureModel.from_order_and_struct_array(s.order, s.struct_array)
                self.assertEqual(tr.from_matrix(tr.to_matrix(s)), s)
                self.assertEqual([len(tree) for tree in vine.pair_copulas], list(range(d - 1, 0, -1)))
                self.assertAlmostEqual(vine.loglik(u), vine.loglik_, delta=1e-6 * max(1.0, abs(vine.loglik_)))

    def test_simulate_refit_recovers_parameters(self):
        pcs = [[_pc("clayton", 0, [3.0]), _pc("gumbel", 0, [2.5])]]
        truth = VineCopula.from_pair_copulas(pcs, StructureModel.dvine([1, 2, 3]))
        u = truth.simulate(5000, seeds=[2024])
        fit = tr.select_structure(u, family_set=["clayton", "gumbel"])
        tree0 = {frozenset(fit.structure.conditioned_set(0, e)): fit.pair_copulas[0][e] for e in range(2)}
        self.assertEqual(set(tree0), {frozenset({1, 2}), frozenset({2, 3})})
        clayton, gumbel = tree0[frozenset({1, 2})], tree0[frozenset({2, 3})]
        self.assertEqual((clayton.family, clayton.rotation), (BicopFamily.clayton, 0))
        self.assertEqual((gumbel.family, gumbel.rotation), (BicopFamily.gumbel, 0))
        self.assertAlmostEqual(float(clayton.parameters[0]), 3.0, delta=0.3)
        self.assertAlmostEqual(float(gumbel.parameters[0]), 2.5, delta=0.2)
        self.assertEqual(fit.nobs, 5000)

    def test_fixed_structure(self):
        pcs = [[_pc("clayton", 0, [3.0]), _pc("gumbel", 0, [2.5])], [_pc("frank", 0, [4.0])]]
        structure = StructureModel.dvine([3, 1, 2])
        truth = VineCopula.from_pair_copulas(pcs, structure)
        u = truth.simulate(2000, seeds=[7])
        fit = tr.select_structure(u, family_set=["clayton", "gumbel", "frank"], structure=structure.to_matrix())
        self.assertEqual(fit.structure, structure)
        self.assertEqual(fit.families, [[BicopFamily.clayton, BicopFamily.gumbel], [BicopFamily.frank]])
        self.assertAlmostEqual(fit.pair_copulas[1][0].tau, truth.pair_copulas[1][0].tau, delta=0.05)

    def test_fixed_structure_dimension_mismatch(self):
        with self.assertRaises(StructureError):
            tr.select_structure(torch.rand(50, 3, dtype=torch.float64), structure=StructureModel.dvine([1, 2, 3, 4]))

    def test_threshold_forces_independence(self):
        u = _random_gaussian_data(200, 4, seed=1)
        vine = tr.select_structure(u, controls=FitControlsVinecop(threshold=0.999))
        self.assertTrue(all(pc.family == BicopFamily.indep for tree in vine.pair_copulas for pc in tree))
        self.assertEqual(vine.npars, 0.0)
        self.assertEqual(vine.loglik_, 0.0)

    def test_automatic_truncation(self):
        u = _ar1_data(500, 5, 0.7, seed=3)
        controls = FitControlsVinecop(family_set=["gaussian"], trunc_lvl="auto", selection_criterion="mbicv")
        vine = tr.select_structure(u, controls=controls)
        self.assertEqual(vine.trunc_lvl, 1)
        self.assertEqual(len(vine.pair_copulas), 1)

    def test_fixed_truncation(self):
        u = _random_gaussian_data(200, 5, seed=4)
        vine = tr.select_structure(u, controls=FitControlsVinecop(family_set=["gaussian"], trunc_lvl=2))
        self.assertEqual(vine.dim(), (5, 2))

    def test_automatic_threshold(self):
        u = _ar1_data(300, 4, 0.6, seed=5)
        controls = FitControlsVinecop(family_set=["gaussian"], threshold="auto", selection_criterion="mbicv")
        vine = tr.select_structure(u, controls=controls)
        self.assertTrue(0.0 <= vine.threshold <= 1.0)
        self.assertEqual(vine.pair_copulas[0][0].family, BicopFamily.gaussian)

    def test_threshold_search_budget(self):
        u = _ar1_data(300, 4, 0.6, seed=5)
        controls = FitControlsVinecop(family_set=["gaussian"], threshold="auto", max_rounds=1)
        with self.assertWarns(SelectionNonconvergence):
            vine = tr.select_structure(u, controls=controls)
        self.assertTrue(any(d.category is SelectionNonconvergence for d in vine.diagnostics))

    def test_degenerate_column_is_diagnosed(self):
        u = _random_gaussian_data(100, 3, seed=6)
        u[:, 2] = 0.5
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            vine = tr.select_structure(u, family_set=["gaussian"])
        self.assertTrue(any(issubclass(w.category, tr.FitDegeneracy) for w in caught))
        self.assertTrue(all(d.tree is not None for d in vine.diagnostics))

    def test_cores_are_deterministic(self):
        u = _random_gaussian_data(200, 4, seed=11)
        fits, sims, pseudo = [], [], []
        for cores in (1, 2, 4):
            controls = FitControlsVinecop(family_set=["gaussian", "clayton", "gumbel", "frank"], cores=cores)
            vine = tr.select_structure(u, controls=controls)
            fits.append(vine)
            sims.append(tr.simulate(400, vine, qrng=True, cores=cores, seeds=[1, 2]))
            pseudo.append(tr.simulate(400, vine, cores=cores, seeds=[3]))
        for vine, sim, sim_pseudo in zip(fits[1:], sims[1:], pseudo[1:]):
            self.assertEqual(vine.structure, fits[0].structure)
            self.assertEqual(vine.families, fits[0].families)
            for t, tree in enumerate(vine.pair_copulas):
                for e, pc in enumerate(tree):
                    self.assertTrue(torch.equal(pc.parameters, fits[0].pair_copulas[t][e].parameters))
            self.assertEqual(vine.loglik_, fits[0].loglik_)
            self.assertTrue(torch.equal(sim, sims[0]))
            self.assertTrue(torch.equal(sim_pseudo, pseudo[0]))

    def test_keep_data_and_fitted(self):
        u = _random_gaussian_data(120, 3, seed=12)
        vine = tr.select_structure(u, family_set=["gaussian"])
        with self.assertRaises(ValueError):
            vine.fitted()
        kept = tr.select_structure(u, controls=FitControlsVinecop(family_set=["gaussian"], keep_data=True))
        self.assertTrue(torch.allclose(kept.fitted(), kept.pdf(u)))
        self.assertTrue(torch.allclose(kept.predict(u, "pdf"), tr.density(u, kept)))
        with self.assertRaises(ValueError):
            kept.predict(u, "quantile")
        ll_full = kept.loglik_
        kept.truncate(1)
        self.assertAlmostEqual(kept.loglik_, kept.loglik(u), places=8)
        self.assertLessEqual(len(kept.pair_copulas), 1)
        self.assertIsNotNone(ll_full)

    def test_family_error_before_fitting(self):
        with self.assertRaises(tr.FamilyError):
            tr.select_structure(torch.rand(50, 3, dtype=torch.float64), family_set=["gaussian", "tawn"])

    def test_show_trace_logs_each_tree(self):
        u = _random_gaussian_data(100, 3, seed=13)
        controls = FitControlsVinecop(family_set=["gaussian"], show_trace=True)
        with self.assertLogs("torchrvine.vine_select", level="INFO") as logs:
            tr.select_structure(u, controls=controls)
        self.assertEqual(sum("Tree" in line for line in logs.output), 2)


if __name__ == "__main__":
    unittest.main()
