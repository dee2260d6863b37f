import unittest

import numpy as np

from keyoptim.domain._errors import ShapeMismatchError
from keyoptim.infrastructure._row_sparse import RowSparseArray
from keyoptim.infrastructure.ops.sgd_cpu import NumpySgdKernel, sgd_update_cpu


def _hp(**overrides):
    hp = dict(
        learning_rate=0.1,
        weight_decay=0.0,
        rescale_grad=1.0,
        clip_grad=0.0,
        momentum=0.0,
        lazy_update=True,
    )
    hp.update(overrides)
    return hp


class TestSgdUpdateCpuDense(unittest.TestCase):
    def test_plain_sgd_reference(self):
        w = np.array([1.0, 2.0])
        g = np.array([0.1, 0.2])
        sgd_update_cpu([w, g], [w], **_hp())
        np.testing.assert_allclose(w, [0.99, 1.98], rtol=1e-12)

    def test_weight_decay_is_coupled(self):
        w0 = np.array([1.0, -2.0])
        g0 = np.array([0.5, 0.25])
        w = w0.copy()
        sgd_update_cpu([w, g0], [w], **_hp(weight_decay=0.01))
        np.testing.assert_allclose(w, w0 - 0.1 * (g0 + 0.01 * w0), rtol=1e-12)

    def test_momentum_two_steps(self):
        w = np.array([1.0, 2.0])
        mom = np.zeros_like(w)
        g = np.array([0.1, 0.2])

        sgd_update_cpu([w, g, mom], [w, mom], **_hp(momentum=0.9))
        np.testing.assert_allclose(mom, [-0.01, -0.02], rtol=1e-12)
        np.testing.assert_allclose(w, [0.99, 1.98], rtol=1e-12)

        sgd_update_cpu([w, g, mom], [w, mom], **_hp(momentum=0.9))
        np.testing.assert_allclose(mom, [-0.019, -0.038], rtol=1e-12)
        np.testing.assert_allclose(w, [0.971, 1.942], rtol=1e-12)

    def test_clip_applies_after_rescale(self):
        w = np.array([1.0, 1.0])
        g = np.array([0.1, -0.1])
        sgd_update_cpu([w, g], [w], **_hp(clip_grad=0.05))
        np.testing.assert_allclose(w, [1.0 - 0.1 * 0.05, 1.0 + 0.1 * 0.05], rtol=1e-12)

        w = np.array([1.0])
        sgd_update_cpu([w, np.array([0.1])], [w], **_hp(rescale_grad=0.25, clip_grad=0.05))
        np.testing.assert_allclose(w, [1.0 - 0.1 * 0.025], rtol=1e-12)

    def test_grad_is_not_modified(self):
        w = np.array([1.0, 2.0])
        g = np.array([0.3, -0.3])
        before = g.copy()
        sgd_update_cpu([w, g], [w], **_hp(rescale_grad=2.0, clip_grad=0.1))
        np.testing.assert_array_equal(g, before)

    def test_float32_dtype_preserved(self):
        w = np.array([1.0, 2.0], dtype=np.float32)
        mom = np.zeros_like(w)
        g = np.array([0.1, 0.2], dtype=np.float64)
        sgd_update_cpu([w, g, mom], [w, mom], **_hp(momentum=0.5))
        self.assertEqual(w.dtype, np.float32)
        self.assertEqual(mom.dtype, np.float32)
        np.testing.assert_allclose(w, [0.99, 1.98], rtol=1e-6)

    def test_dense_grad_updates_all_rows_even_when_lazy(self):
        w = np.ones((3, 2))
        g = np.zeros((3, 2))
        g[1] = 1.0
        sgd_update_cpu([w, g], [w], **_hp(weight_decay=0.1, lazy_update=True))
        np.testing.assert_allclose(w[0], [0.99, 0.99], rtol=1e-12)
        np.testing.assert_allclose(w[1], [0.89, 0.89], rtol=1e-12)


class TestSgdUpdateCpuRowSparse(unittest.TestCase):
    def setUp(self):
        self.grad = RowSparseArray(
            indices=np.array([1, 3]), data=np.ones((2, 2)), shape=(4, 2)
        )

    def test_lazy_update_touches_only_present_rows(self):
        w = np.ones((4, 2))
        mom = np.zeros((4, 2))
        sgd_update_cpu(
            [w, self.grad, mom],
            [w, mom],
            **_hp(weight_decay=0.1, momentum=0.9, lazy_update=True),
        )
        np.testing.assert_array_equal(w[[0, 2]], np.ones((2, 2)))
        np.testing.assert_array_equal(mom[[0, 2]], np.zeros((2, 2)))
        np.testing.assert_allclose(w[[1, 3]], np.full((2, 2), 0.89), rtol=1e-12)
        np.testing.assert_allclose(mom[[1, 3]], np.full((2, 2), -0.11), rtol=1e-12)

    def test_non_lazy_update_decays_every_row(self):
        w = np.ones((4, 2))
        mom = np.zeros((4, 2))
        sgd_update_cpu(
            [w, self.grad, mom],
            [w, mom],
            **_hp(weight_decay=0.1, momentum=0.9, lazy_update=False),
        )
        np.testing.assert_allclose(w[[0, 2]], np.full((2, 2), 0.99), rtol=1e-12)
        np.testing.assert_allclose(mom[[0, 2]], np.full((2, 2), -0.01), rtol=1e-12)
        np.testing.assert_allclose(w[[1, 3]], np.full((2, 2), 0.89), rtol=1e-12)

    def test_lazy_update_without_momentum(self):
        w = np.ones((4, 2))
        sgd_update_cpu([w, self.grad], [w], **_hp(clip_grad=0.5))
        np.testing.assert_array_equal(w[0], [1.0, 1.0])
        np.testing.assert_allclose(w[1], [0.95, 0.95], rtol=1e-12)


class TestSgdUpdateCpuValidation(unittest.TestCase):
    def test_grad_shape_mismatch(self):
        w = np.ones(2)
        with self.assertRaises(ShapeMismatchError) as ctx:
            sgd_update_cpu([w, np.ones(3)], [w], **_hp())
        self.assertEqual(ctx.exception.role, "grad")
        np.testing.assert_array_equal(w, np.ones(2))

    def test_momentum_shape_mismatch_leaves_weight_untouched(self):
        w = np.ones(2)
        mom = np.zeros(3)
        with self.assertRaises(ShapeMismatchError) as ctx:
            sgd_update_cpu([w, np.ones(2), mom], [w, mom], **_hp(momentum=0.9))
        self.assertEqual(ctx.exception.role, "momentum")
        np.testing.assert_array_equal(w, np.ones(2))
        np.testing.assert_array_equal(mom, np.zeros(3))

    def test_operand_counts(self):
        w = np.ones(2)
        with self.assertRaises(ValueError):
            sgd_update_cpu([w], [w], **_hp())
        with self.assertRaises(ValueError):
            sgd_update_cpu([w, np.ones(2)], [w, np.zeros(2)], **_hp())

    def test_outputs_must_alias_inputs(self):
        w = np.ones(2)
        with self.assertRaises(ValueError):
            sgd_update_cpu([w, np.ones(2)], [w.copy()], **_hp())

    def test_integer_weight_rejected(self):
        w = np.ones(2, dtype=np.int32)
        with self.assertRaises(TypeError):
            sgd_update_cpu([w, np.ones(2)], [w], **_hp())

    def test_read_only_weight_rejected(self):
        w = np.ones(2)
        w.setflags(write=False)
        with self.assertRaises(ValueError):
            sgd_update_cpu([w, np.ones(2)], [w], **_hp())

    def test_unsupported_grad_type(self):
        w = np.ones(2)
        with self.assertRaises(TypeError):
            sgd_update_cpu([w, [0.1, 0.2]], [w], **_hp())


class TestNumpySgdKernel(unittest.TestCase):
    def test_kernel_delegates_to_cpu_function(self):
        w = np.array([1.0, 2.0])
        NumpySgdKernel().sgd_update([w, np.array([0.1, 0.2])], [w], **_hp())
        np.testing.assert_allclose(w, [0.99, 1.98], rtol=1e-12)


if __name__ == "__main__":
    unittest.main()
