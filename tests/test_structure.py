"""Unit tests for R-vine structures and the matrix encoding."""
import unittest

import torch

import torchrvine as tr
from torchrvine import StructureError, StructureModel


# C-vine on 4 variables with variable 1 at the root of every tree.
_CVINE_MATRIX = [
    [1, 1, 1, 1],
    [2, 2, 2, 0],
    [3, 3, 0, 0],
    [4, 0, 0, 0],
]


class TestMatrixEncoding(unittest.TestCase):

    def test_from_matrix_natural_order(self):
        s = tr.from_matrix(_CVINE_MATRIX)
        self.assertEqual(s.order, (4, 3, 2, 1))
        self.assertEqual(s.struct_array, ((4, 4, 4), (3, 3), (2,)))
        self.assertEqual(s.dim(), (4, 3))

    def test_round_trip(self):
        s = tr.from_matrix(_CVINE_MATRIX)
        self.assertEqual(tr.to_matrix(s).tolist(), _CVINE_MATRIX)
        self.assertEqual(tr.from_matrix(s.to_matrix()), s)

    def test_truncated_matrix(self):
        # Rows past the truncation level are zero; the anti-diagonal still holds the order.
        m = [[1, 1, 1, 1], [2, 2, 2, 0], [0, 3, 0, 0], [4, 0, 0, 0]]
        s = tr.from_matrix(m)
        self.assertEqual(s.trunc_lvl, 2)
        self.assertEqual(s.order, (4, 3, 2, 1))
        self.assertEqual(s.to_matrix().tolist(), m)

    def test_dvine_and_cvine_round_trip(self):
        for d in range(2, 8):
            order = list(range(d, 0, -1))
            for s in (StructureModel.dvine(order), StructureModel.cvine(order)):
                with self.subTest(d=d, struct=s.struct_array):
                    self.assertEqual(s.order, tuple(order))
                    self.assertEqual(StructureModel.from_matrix(s.to_matrix()), s)

    def test_cvine_builder_matches_matrix(self):
        self.assertEqual(StructureModel.cvine([4, 3, 2, 1]), tr.from_matrix(_CVINE_MATRIX))

    def test_as_structure_accepts_all_forms(self):
        s = StructureModel.dvine([2, 1, 3])
        self.assertIs(tr.as_structure(s), s)
        self.assertEqual(tr.as_structure((s.order, s.struct_array)), s)
        self.assertEqual(tr.as_structure(s.to_matrix()), s)
        self.assertEqual(tr.as_structure(s.to_matrix().tolist()), s)
        empty = tr.as_structure(([1, 2, 3], []))
        self.assertEqual(empty.trunc_lvl, 0)


class TestStructureErrors(unittest.TestCase):

    def test_invalid_order(self):
        with self.assertRaises(StructureError):
            StructureModel.from_order_and_struct_array([1, 1, 3], [[3, 3], [3]])
        with self.assertRaises(StructureError):
            StructureModel.from_order_and_struct_array([1, 2, 4], [])

    def test_entry_out_of_range(self):
        with self.assertRaises(StructureError):
            StructureModel.from_order_and_struct_array([1, 2, 3], [[1, 3]])
        with self.assertRaises(StructureError):
            StructureModel.from_order_and_struct_array([1, 2, 3], [[4, 3]])

    def test_wrong_shape(self):
        with self.assertRaises(StructureError):
            StructureModel.from_order_and_struct_array([1, 2, 3], [[3]])
        with self.assertRaises(StructureError):
            StructureModel.from_order_and_struct_array([1, 2, 3], [[3, 3], [3], [3]])

    def test_proximity_violation(self):
        # Tree 0 is the path 1-2-3-4; tree 1 cannot join 1 and 4 given 2.
        with self.assertRaisesRegex(StructureError, "proximity"):
            StructureModel.from_order_and_struct_array([1, 2, 3, 4], [[2, 3, 4], [4, 4]])
        StructureModel.from_order_and_struct_array([1, 2, 3, 4], [[2, 3, 4], [3, 4]])

    def test_matrix_errors(self):
        with self.assertRaises(StructureError):
            tr.from_matrix([[1, 1], [2, 0], [0, 0]])
        with self.assertRaises(StructureError):
            tr.from_matrix([[1, 1, 1], [2, 2, 0], [3, 0, 5]])
        with self.assertRaises(StructureError):
            tr.from_matrix([[1, 1, 1], [1, 2, 0], [3, 0, 0]])
        with self.assertRaises(StructureError):
            tr.from_matrix([[1, 0, 1], [2, 2, 0], [3, 0, 0]])
        with self.assertRaises(StructureError):
            tr.from_matrix(torch.tensor([[1.5, 1.0], [2.0, 0.0]]))

    def test_structure_error_is_value_error(self):
        self.assertTrue(issubclass(StructureError, ValueError))


class TestStructureQueries(unittest.TestCase):

    def test_conditioned_and_conditioning_sets(self):
        s = tr.from_matrix(_CVINE_MATRIX)
        self.assertEqual(s.conditioned_set(0, 0), [4, 1])
        self.assertEqual(s.conditioning_set(0, 0), [])
        self.assertEqual(s.conditioned_set(1, 0), [4, 2])
        self.assertEqual(s.conditioning_set(1, 0), [1])
        self.assertEqual(s.conditioned_set(2, 0), [4, 3])
        self.assertEqual(sorted(s.conditioning_set(2, 0)), [1, 2])
        with self.assertRaises(IndexError):
            s.conditioned_set(3, 0)

    def test_min_array(self):
        s = StructureModel.dvine([1, 2, 3, 4])
        self.assertEqual(s.min_at(0, 0), 2)
        self.assertEqual(s.min_at(1, 0), 2)
        self.assertEqual(s.min_at(2, 0), 2)

    def test_truncate(self):
        s = StructureModel.dvine([3, 1, 4, 2, 5])
        t2 = s.truncate(2)
        self.assertEqual(t2.dim(), (5, 2))
        self.assertEqual(t2.struct_array, s.struct_array[:2])
        self.assertEqual(s.trunc_lvl, 4)
        self.assertEqual(t2.truncate(2), t2)
        self.assertIs(t2.truncate(3), t2)
        self.assertEqual(s.truncate(0).to_matrix()[0].tolist(), [0, 0, 0, 0, 5])
        with self.assertRaises(ValueError):
            s.truncate(-1)

    def test_str(self):
        text = StructureModel.dvine([1, 2, 3]).str()
        self.assertIn("trunc_lvl=2", text)


if __name__ == "__main__":
    unittest.main()
