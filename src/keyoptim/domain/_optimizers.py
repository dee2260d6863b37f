"""
Domain-level optimizer contracts for KeyOptim.

This module defines the protocols shared by optimizer implementations and
their collaborators:

- `IOptimizer`: per-parameter bookkeeping plus the `update` entry point.
- `IUpdateRule`: a concrete update rule (e.g., SGD) that owns its own
  auxiliary per-parameter state and is driven by an `IOptimizer`.
- `ISgdKernel`: the numeric compute kernel that performs the actual
  in-place SGD arithmetic.
- `ILearningRateTracker`: a pure mapping from update count to learning rate.

Notes
-----
- Domain contracts are backend-agnostic and must not depend on NumPy or
  infrastructure implementations.
- Tensors are typed as `Any`; infrastructure implementations use
  `np.ndarray` for dense tensors and `RowSparseArray` for row-sparse
  gradients.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence, Union
from typing import runtime_checkable

WeightDecayOverride = Union[Callable[[str], Optional[float]], Mapping[str, float]]
"""Per-parameter weight decay lookup consulted before the global default."""


@runtime_checkable
class ILearningRateTracker(Protocol):
    """
    Learning-rate schedule contract.

    A tracker is a pure function of the post-increment update count: the
    first update of a parameter passes ``1``.
    """

    def __call__(self, num_update: int) -> float: ...


@runtime_checkable
class ISgdKernel(Protocol):
    """
    Compute kernel contract for SGD updates.

    ``inputs`` is ``(weight, grad)`` or ``(weight, grad, momentum)`` and
    ``outputs`` is ``(weight,)`` or ``(weight, momentum)``. Outputs are
    overwritten in place. Implementations validate operand shapes and must
    only write outputs once the whole update has been computed.
    """

    def sgd_update(
        self,
        inputs: Sequence[Any],
        outputs: Sequence[Any],
        *,
        learning_rate: float,
        weight_decay: float,
        rescale_grad: float,
        clip_grad: float,
        momentum: float,
        lazy_update: bool,
    ) -> None: ...


@runtime_checkable
class IOptimizer(Protocol):
    """
    Optimizer interface contract.

    An optimizer owns the bookkeeping shared by every update rule (update
    counters, weight decay policy, gradient clipping and rescaling values)
    and applies in-place updates to parameters identified by a stable
    string key.
    """

    @property
    def weight_decay(self) -> float: ...

    @property
    def clip_grad(self) -> float: ...

    @property
    def rescale_grad(self) -> float: ...

    def effective_weight_decay(self, parameter_id: str) -> float:
        """
        Return the weight decay applied to ``parameter_id``.
        """
        ...

    def next_update_count(self, parameter_id: str) -> int:
        """
        Atomically increment and return the update count of ``parameter_id``.
        """
        ...

    def update(self, parameter_id: str, weight: Any, grad: Any) -> None:
        """
        Update ``weight`` in place using ``grad``.
        """
        ...


@runtime_checkable
class IUpdateRule(Protocol):
    """
    Update rule contract.

    A rule receives the optimizer that drives it so it can read shared
    hyperparameters and advance update counters, while keeping its own
    auxiliary state (momentum buffers, moment estimates, ...) private.
    """

    def apply(
        self, optimizer: IOptimizer, parameter_id: str, weight: Any, grad: Any
    ) -> None: ...

    def state_dict(self) -> Dict[str, Any]: ...

    def load_state_dict(self, state: Mapping[str, Any]) -> None: ...
