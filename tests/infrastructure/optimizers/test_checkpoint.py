import json
import tempfile
import unittest
from pathlib import Path

import numpy as np

from keyoptim.domain._errors import OptimizerStateError
from keyoptim.infrastructure.learning_rate import FactorTracker, FixedLearningRate
from keyoptim.infrastructure.optimizers._optimizer import (
    CHECKPOINT_FORMAT,
    Optimizer,
    OptimizerConfig,
)
from keyoptim.infrastructure.optimizers._sgd import build_sgd


class _NoStateRule:
    def apply(self, optimizer, parameter_id, weight, grad):
        optimizer.next_update_count(parameter_id)

    def state_dict(self):
        return {}

    def load_state_dict(self, state):
        pass


def _train(opt, weights, steps):
    rng = np.random.default_rng(0)
    for _ in range(steps):
        for pid, w in weights.items():
            opt.update(pid, w, rng.standard_normal(w.shape).astype(w.dtype))


class TestStateDict(unittest.TestCase):
    def test_state_dict_contents(self):
        opt = build_sgd(FixedLearningRate(0.1), momentum=0.9)
        w = np.ones(3, dtype=np.float32)
        opt.update("w", w, np.ones(3, dtype=np.float32))
        opt.update("w", w, np.ones(3, dtype=np.float32))

        state = opt.state_dict()
        self.assertEqual(state["update_counts"], {"w": 2})
        mom = state["rule"]["momentum"]["w"]
        np.testing.assert_array_equal(mom, opt.rule.momentum_state("w"))
        self.assertIsNot(mom, opt.rule.momentum_state("w"))

    def test_load_state_dict_restores_training_trajectory(self):
        tracker = FactorTracker(base_learning_rate=0.1, step=2, factor=0.5)
        weights = {"a": np.ones((3, 2)), "b": np.zeros(4)}
        src = build_sgd(tracker, momentum=0.9, weight_decay=0.01)
        _train(src, weights, steps=3)

        restored_weights = {k: v.copy() for k, v in weights.items()}
        dst = build_sgd(tracker, momentum=0.9, weight_decay=0.01)
        dst.load_state_dict(src.state_dict())
        self.assertEqual(dst.update_count("a"), 3)

        _train(src, weights, steps=2)
        _train(dst, restored_weights, steps=2)
        for k in weights:
            np.testing.assert_allclose(restored_weights[k], weights[k], rtol=1e-12)
        self.assertEqual(dst.update_count("b"), 5)

    def test_load_into_used_optimizer_rejected(self):
        src = build_sgd(FixedLearningRate(0.1), momentum=0.9)
        src.update("w", np.ones(2), np.ones(2))
        dst = build_sgd(FixedLearningRate(0.1), momentum=0.9)
        dst.update("other", np.ones(2), np.ones(2))
        with self.assertRaises(OptimizerStateError):
            dst.load_state_dict(src.state_dict())

    def test_momentum_buffers_rejected_when_momentum_disabled(self):
        src = build_sgd(FixedLearningRate(0.1), momentum=0.9)
        src.update("w", np.ones(2), np.ones(2))
        dst = build_sgd(FixedLearningRate(0.1))
        with self.assertRaises(OptimizerStateError):
            dst.load_state_dict(src.state_dict())
        self.assertEqual(dst.parameter_ids(), [])

    def test_unknown_rule_group_rejected(self):
        dst = build_sgd(FixedLearningRate(0.1), momentum=0.9)
        with self.assertRaises(OptimizerStateError):
            dst.load_state_dict({"update_counts": {}, "rule": {"velocity": {}}})

    def test_negative_count_rejected(self):
        dst = build_sgd(FixedLearningRate(0.1))
        with self.assertRaises(ValueError):
            dst.load_state_dict({"update_counts": {"w": -1}, "rule": {}})


class TestJsonCheckpoint(unittest.TestCase):
    def test_save_and_load_json(self):
        src = build_sgd(FixedLearningRate(0.1), momentum=0.9)
        w = np.array([[1.0, 2.0], [3.0, 4.0]], dtype=np.float32)
        src.update("fc.weight", w, np.full((2, 2), 0.5, dtype=np.float32))

        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / "nested" / "opt.json"
            src.save_json(path)

            payload = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(payload["format"], CHECKPOINT_FORMAT)
            self.assertEqual(payload["rule"], "Sgd")
            self.assertEqual(payload["update_counts"], {"fc.weight": 1})
            self.assertEqual(payload["state"]["momentum"]["fc.weight"]["shape"], [2, 2])

            dst = build_sgd(FixedLearningRate(0.1), momentum=0.9)
            dst.load_json(path)

        self.assertEqual(dst.update_count("fc.weight"), 1)
        mom = dst.rule.momentum_state("fc.weight")
        self.assertEqual(mom.dtype, np.float32)
        self.assertTrue(mom.flags.writeable)
        np.testing.assert_array_equal(mom, src.rule.momentum_state("fc.weight"))

    def test_unsupported_format_rejected(self):
        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / "opt.json"
            path.write_text(json.dumps({"format": "other.v0"}), encoding="utf-8")
            with self.assertRaises(ValueError):
                build_sgd(FixedLearningRate(0.1)).load_json(path)

    def test_rule_mismatch_rejected(self):
        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / "opt.json"
            Optimizer(OptimizerConfig(), _NoStateRule()).save_json(path)
            with self.assertRaises(OptimizerStateError):
                build_sgd(FixedLearningRate(0.1)).load_json(path)


if __name__ == "__main__":
    unittest.main()
