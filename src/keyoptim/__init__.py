"""
KeyOptim: the parameter-update core of a gradient-descent optimizer.

Typical usage::

    import numpy as np
    from keyoptim import FixedLearningRate, build_sgd

    opt = build_sgd(FixedLearningRate(0.1), momentum=0.9)
    w = np.ones((4, 3), dtype=np.float32)
    g = np.full_like(w, 0.5)
    opt.update("fc1.weight", w, g)   # w is updated in place
"""

from .domain._errors import OptimizerConfigError, OptimizerStateError, ShapeMismatchError
from .domain._optimizers import ILearningRateTracker, IOptimizer, ISgdKernel, IUpdateRule
from .infrastructure._row_sparse import RowSparseArray
from .infrastructure._state_map import ConcurrentStateMap
from .infrastructure.learning_rate import (
    FactorTracker,
    FixedLearningRate,
    MultiFactorTracker,
    WarmUpTracker,
)
from .infrastructure.ops.sgd_cpu import NumpySgdKernel, sgd_update_cpu
from .infrastructure.optimizers._optimizer import Optimizer, OptimizerConfig
from .infrastructure.optimizers._sgd import Sgd, SgdConfig, build_sgd

__version__ = "0.1.0a0"

__all__ = [
    "ConcurrentStateMap",
    "FactorTracker",
    "FixedLearningRate",
    "ILearningRateTracker",
    "IOptimizer",
    "ISgdKernel",
    "IUpdateRule",
    "MultiFactorTracker",
    "NumpySgdKernel",
    "Optimizer",
    "OptimizerConfig",
    "OptimizerConfigError",
    "OptimizerStateError",
    "RowSparseArray",
    "Sgd",
    "SgdConfig",
    "ShapeMismatchError",
    "WarmUpTracker",
    "build_sgd",
    "sgd_update_cpu",
]
