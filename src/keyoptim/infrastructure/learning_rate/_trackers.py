"""
Learning-rate trackers.

A learning-rate tracker maps the post-increment update count of a parameter
to a scalar learning rate. Trackers are pure: the same ``num_update`` always
yields the same rate, so concurrent training threads can share one instance
without synchronization.

Provided trackers
-----------------
- `FixedLearningRate`: constant rate.
- `FactorTracker`: multiply by ``factor`` every ``step`` updates.
- `MultiFactorTracker`: multiply by ``factor`` after each listed step.
- `WarmUpTracker`: ramp up toward another tracker for the first updates.

Any plain ``Callable[[int], float]`` satisfies the same contract and can be
passed to an optimizer directly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Sequence, Tuple


def _check_num_update(num_update: int) -> int:
    n = int(num_update)
    if n < 1:
        raise ValueError(f"num_update must be >= 1, got {num_update}")
    return n


def _check_positive(name: str, value: float) -> float:
    v = float(value)
    if not math.isfinite(v) or v <= 0.0:
        raise ValueError(f"{name} must be a finite value > 0, got {value}")
    return v


@dataclass(frozen=True)
class FixedLearningRate:
    """
    Constant learning rate.

    Parameters
    ----------
    base_learning_rate : float
        Rate returned for every update. Must be > 0.
    """

    base_learning_rate: float

    def __post_init__(self) -> None:
        _check_positive("base_learning_rate", self.base_learning_rate)

    def __call__(self, num_update: int) -> float:
        _check_num_update(num_update)
        return float(self.base_learning_rate)


@dataclass(frozen=True)
class FactorTracker:
    """
    Step-decay learning rate.

    The rate is multiplied by ``factor`` once every ``step`` updates and is
    never allowed to drop below ``stop_factor_lr``::

        lr(n) = max(base * factor ** ((n - 1) // step), stop_factor_lr)

    Parameters
    ----------
    base_learning_rate : float
        Rate used for updates ``1..step``.
    step : int
        Number of updates between two decays. Must be >= 1.
    factor : float
        Multiplicative decay, in ``(0, 1]``.
    stop_factor_lr : float, optional
        Lower bound on the returned rate. Defaults to 1e-8.
    """

    base_learning_rate: float
    step: int
    factor: float
    stop_factor_lr: float = 1e-8

    def __post_init__(self) -> None:
        _check_positive("base_learning_rate", self.base_learning_rate)
        if int(self.step) < 1:
            raise ValueError(f"step must be >= 1, got {self.step}")
        if not (0.0 < float(self.factor) <= 1.0):
            raise ValueError(f"factor must be in (0, 1], got {self.factor}")
        if float(self.stop_factor_lr) < 0.0:
            raise ValueError(
                f"stop_factor_lr must be >= 0, got {self.stop_factor_lr}"
            )

    def __call__(self, num_update: int) -> float:
        n = _check_num_update(num_update)
        decays = (n - 1) // int(self.step)
        lr = float(self.base_learning_rate) * float(self.factor) ** decays
        return max(lr, float(self.stop_factor_lr))


@dataclass(frozen=True)
class MultiFactorTracker:
    """
    Piecewise-constant learning rate with explicit decay points.

    After every step ``s`` in ``steps`` (i.e., once ``num_update > s``) the
    rate is multiplied by ``factor``.

    Parameters
    ----------
    base_learning_rate : float
        Initial rate.
    steps : Sequence[int]
        Strictly increasing, positive decay points.
    factor : float
        Multiplicative decay, in ``(0, 1]``.
    """

    base_learning_rate: float
    steps: Tuple[int, ...]
    factor: float

    def __init__(
        self, base_learning_rate: float, steps: Sequence[int], factor: float
    ) -> None:
        object.__setattr__(self, "base_learning_rate", float(base_learning_rate))
        object.__setattr__(self, "steps", tuple(int(s) for s in steps))
        object.__setattr__(self, "factor", float(factor))

        _check_positive("base_learning_rate", self.base_learning_rate)
        if not self.steps:
            raise ValueError("steps must not be empty")
        if self.steps[0] < 1:
            raise ValueError(f"steps must be >= 1, got {self.steps[0]}")
        for prev, cur in zip(self.steps, self.steps[1:]):
            if cur <= prev:
                raise ValueError(f"steps must be strictly increasing: {self.steps}")
        if not (0.0 < self.factor <= 1.0):
            raise ValueError(f"factor must be in (0, 1], got {self.factor}")

    def __call__(self, num_update: int) -> float:
        n = _check_num_update(num_update)
        decays = sum(1 for s in self.steps if n > s)
        return self.base_learning_rate * self.factor**decays


@dataclass(frozen=True)
class WarmUpTracker:
    """
    Warm-up wrapper around another tracker.

    For ``num_update <= warm_up_steps`` the rate is either held at
    ``warm_up_begin_lr`` (``mode="constant"``) or linearly interpolated from
    ``warm_up_begin_lr`` toward ``main_tracker(num_update)``
    (``mode="linear"``). Afterwards ``main_tracker`` is used unchanged.

    Parameters
    ----------
    main_tracker : Callable[[int], float]
        Tracker used after warm-up, and as the linear ramp target.
    warm_up_steps : int
        Length of the warm-up phase. Must be >= 1.
    warm_up_begin_lr : float, optional
        Starting rate. Defaults to 0.0.
    mode : str, optional
        ``"linear"`` (default) or ``"constant"``.
    """

    main_tracker: Callable[[int], float]
    warm_up_steps: int
    warm_up_begin_lr: float = 0.0
    mode: str = "linear"

    def __post_init__(self) -> None:
        if not callable(self.main_tracker):
            raise ValueError("main_tracker must be callable")
        if int(self.warm_up_steps) < 1:
            raise ValueError(f"warm_up_steps must be >= 1, got {self.warm_up_steps}")
        if float(self.warm_up_begin_lr) < 0.0:
            raise ValueError(
                f"warm_up_begin_lr must be >= 0, got {self.warm_up_begin_lr}"
            )
        if self.mode not in ("linear", "constant"):
            raise ValueError(f"mode must be 'linear' or 'constant', got {self.mode!r}")

    def __call__(self, num_update: int) -> float:
        n = _check_num_update(num_update)
        steps = int(self.warm_up_steps)
        if n > steps:
            return float(self.main_tracker(n))

        begin = float(self.warm_up_begin_lr)
        if self.mode == "constant":
            return begin
        target = float(self.main_tracker(n))
        return begin + (target - begin) * n / steps
