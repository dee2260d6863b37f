"""
Stochastic Gradient Descent (SGD) update rule.

This module provides `SgdConfig`, the `Sgd` update rule, and the `build_sgd`
factory that wires an `Sgd` rule into an `Optimizer`.

Update orchestration
--------------------
For each ``update(parameter_id, weight, grad)`` call the rule:

1. reads the effective weight decay of the parameter from the optimizer;
2. advances the parameter's update counter and asks the learning-rate
   tracker for the rate at the new count;
3. if momentum is enabled, fetches (or creates, exactly once) the
   parameter's zero-initialized momentum buffer;
4. hands ``inputs=(weight, grad[, mom])`` and ``outputs=(weight[, mom])`` to
   the compute kernel together with every hyperparameter.

The kernel performs all arithmetic in place. Shape validation is delegated
to the kernel; its errors propagate to the caller unmodified.

Design notes
------------
- Momentum buffers are stored in a `ConcurrentStateMap`, so concurrent first
  updates of the same parameter allocate exactly one buffer.
- With ``momentum == 0`` no momentum buffer is ever created or referenced.
- ``lazy_update`` only matters for row-sparse gradients; see
  `keyoptim.infrastructure.ops.sgd_cpu`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import numpy as np

from ...domain._errors import OptimizerConfigError, OptimizerStateError
from ...domain._optimizers import IOptimizer, ISgdKernel, WeightDecayOverride
from .._state_map import ConcurrentStateMap
from ..ops.sgd_cpu import NumpySgdKernel
from ._optimizer import Optimizer, OptimizerConfig


@dataclass(frozen=True)
class SgdConfig:
    """
    Hyperparameters of the SGD update rule.

    Parameters
    ----------
    learning_rate_tracker : Callable[[int], float]
        Learning-rate schedule, called with the post-increment update count.
        Required.
    momentum : float, optional
        Momentum coefficient in ``[0, 1]``; 0 disables momentum entirely.
        Defaults to 0.0.
    lazy_update : bool, optional
        Restrict row-sparse updates to rows present in the gradient.
        Defaults to True.

    Raises
    ------
    OptimizerConfigError
        If no learning-rate tracker is set, or it is not callable.
    ValueError
        If ``momentum`` lies outside ``[0, 1]``.
    """

    learning_rate_tracker: Optional[Callable[[int], float]] = None
    momentum: float = 0.0
    lazy_update: bool = True

    def __post_init__(self) -> None:
        if self.learning_rate_tracker is None:
            raise OptimizerConfigError(
                "learning_rate_tracker", "No learning rate tracker set"
            )
        if not callable(self.learning_rate_tracker):
            raise OptimizerConfigError(
                "learning_rate_tracker",
                f"learning_rate_tracker must be callable, got "
                f"{type(self.learning_rate_tracker)!r}",
            )

        m = float(self.momentum)
        if not math.isfinite(m) or m < 0.0 or m > 1.0:
            raise ValueError(f"momentum must be in [0, 1], got {self.momentum}")

        object.__setattr__(self, "momentum", m)
        object.__setattr__(self, "lazy_update", bool(self.lazy_update))


class Sgd:
    """
    SGD update rule with optional momentum and lazy sparse updates.

    Parameters
    ----------
    config : SgdConfig
        Rule hyperparameters.
    kernel : Optional[ISgdKernel], optional
        Compute kernel performing the arithmetic. Defaults to
        `NumpySgdKernel`.
    num_shards : Optional[int], optional
        Lock partitions for the momentum-buffer map.
    """

    def __init__(
        self,
        config: SgdConfig,
        *,
        kernel: Optional[ISgdKernel] = None,
        num_shards: Optional[int] = None,
    ) -> None:
        if not isinstance(config, SgdConfig):
            raise TypeError(f"config must be SgdConfig, got {type(config)!r}")
        if kernel is not None and not isinstance(kernel, ISgdKernel):
            raise TypeError(f"kernel must implement ISgdKernel, got {type(kernel)!r}")

        self._config = config
        self._kernel: ISgdKernel = kernel if kernel is not None else NumpySgdKernel()
        self._momentum_states = ConcurrentStateMap(num_shards)

    @property
    def config(self) -> SgdConfig:
        return self._config

    @property
    def momentum(self) -> float:
        return self._config.momentum

    @property
    def lazy_update(self) -> bool:
        return self._config.lazy_update

    @property
    def learning_rate_tracker(self) -> Callable[[int], float]:
        return self._config.learning_rate_tracker  # type: ignore[return-value]

    @property
    def kernel(self) -> ISgdKernel:
        return self._kernel

    def apply(
        self, optimizer: IOptimizer, parameter_id: str, weight: Any, grad: Any
    ) -> None:
        """
        Update ``weight`` (and its momentum buffer) in place.

        Parameters
        ----------
        optimizer : IOptimizer
            Optimizer providing weight decay, update counters, and the
            clipping/rescaling hyperparameters.
        parameter_id : str
            Stable identity of the parameter.
        weight : np.ndarray
            Parameter tensor, overwritten in place.
        grad : np.ndarray or RowSparseArray
            Gradient with the same shape as ``weight``.
        """
        weight_decay = optimizer.effective_weight_decay(parameter_id)
        count = optimizer.next_update_count(parameter_id)
        learning_rate = float(self.learning_rate_tracker(count))

        momentum = self._config.momentum
        if momentum != 0.0:
            mom = self._momentum_states.get_or_create(
                parameter_id, lambda: np.zeros_like(weight)
            )
            inputs = [weight, grad, mom]
            outputs = [weight, mom]
        else:
            inputs = [weight, grad]
            outputs = [weight]

        self._kernel.sgd_update(
            inputs,
            outputs,
            learning_rate=learning_rate,
            weight_decay=weight_decay,
            rescale_grad=optimizer.rescale_grad,
            clip_grad=optimizer.clip_grad,
            momentum=momentum,
            lazy_update=self._config.lazy_update,
        )

    def momentum_state(self, parameter_id: str) -> Optional[np.ndarray]:
        """
        Return the momentum buffer of ``parameter_id``, or None if absent.
        """
        return self._momentum_states.get(parameter_id)

    def has_momentum_state(self, parameter_id: str) -> bool:
        return parameter_id in self._momentum_states

    def momentum_parameter_ids(self) -> List[str]:
        return sorted(str(k) for k in self._momentum_states.keys())

    def state_dict(self) -> Dict[str, Any]:
        """
        Snapshot the momentum buffers.

        Returns
        -------
        dict
            ``{"momentum": {parameter_id: np.ndarray}}``; arrays are copies.
        """
        return {
            "momentum": {
                str(k): np.array(v, copy=True) for k, v in self._momentum_states.items()
            }
        }

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        """
        Restore momentum buffers produced by `state_dict`.

        Raises
        ------
        OptimizerStateError
            If the state contains unknown buffer groups, momentum buffers
            while momentum is disabled, or a buffer for an identity that
            already has one.
        TypeError
            If a buffer is not a floating-point array.
        """
        unknown = set(state) - {"momentum"}
        if unknown:
            raise OptimizerStateError(
                f"Unknown Sgd state groups: {sorted(unknown)}"
            )

        buffers = dict(state.get("momentum", {}))
        if buffers and self._config.momentum == 0.0:
            raise OptimizerStateError(
                "Checkpoint contains momentum buffers but momentum is disabled."
            )

        restored = {}
        for pid, arr in buffers.items():
            a = np.asarray(arr)
            if not np.issubdtype(a.dtype, np.floating):
                raise TypeError(
                    f"momentum buffer for {pid!r} must be floating point, got {a.dtype}"
                )
            if str(pid) in self._momentum_states:
                raise OptimizerStateError(
                    f"Momentum buffer for {pid!r} already exists."
                )
            restored[str(pid)] = np.array(a, copy=True)

        for pid, a in restored.items():
            self._momentum_states.set(pid, a)

    def __repr__(self) -> str:
        c = self._config
        return (
            f"{type(self).__name__}(momentum={c.momentum}, lazy_update={c.lazy_update}, "
            f"learning_rate_tracker={c.learning_rate_tracker!r}, kernel={self._kernel!r})"
        )


def build_sgd(
    learning_rate_tracker: Optional[Callable[[int], float]],
    *,
    momentum: float = 0.0,
    lazy_update: bool = True,
    weight_decay: float = 0.0,
    clip_grad: float = 0.0,
    rescale_grad: float = 1.0,
    weight_decay_override: Optional[WeightDecayOverride] = None,
    kernel: Optional[ISgdKernel] = None,
    num_shards: Optional[int] = None,
) -> Optimizer:
    """
    Build an `Optimizer` driving an `Sgd` rule.

    Parameters
    ----------
    learning_rate_tracker : Callable[[int], float]
        Required learning-rate schedule.
    momentum, lazy_update :
        See `SgdConfig`.
    weight_decay, clip_grad, rescale_grad, weight_decay_override :
        See `OptimizerConfig`.
    kernel : Optional[ISgdKernel]
        Compute kernel; defaults to `NumpySgdKernel`.
    num_shards : Optional[int]
        Lock partitions for both per-parameter state maps.

    Raises
    ------
    OptimizerConfigError
        If ``learning_rate_tracker`` is None.
    """
    rule = Sgd(
        SgdConfig(
            learning_rate_tracker=learning_rate_tracker,
            momentum=momentum,
            lazy_update=lazy_update,
        ),
        kernel=kernel,
        num_shards=num_shards,
    )
    config = OptimizerConfig(
        weight_decay=weight_decay,
        clip_grad=clip_grad,
        rescale_grad=rescale_grad,
        weight_decay_override=weight_decay_override,
    )
    return Optimizer(config, rule, num_shards=num_shards)
