"""
Learning-rate tracker public API.

Exports
-------
- FixedLearningRate
- FactorTracker
- MultiFactorTracker
- WarmUpTracker

Every tracker is a pure ``Callable[[int], float]`` and may be shared across
training threads.
"""

from ._trackers import (
    FactorTracker,
    FixedLearningRate,
    MultiFactorTracker,
    WarmUpTracker,
)

__all__ = [
    FixedLearningRate.__name__,
    FactorTracker.__name__,
    MultiFactorTracker.__name__,
    WarmUpTracker.__name__,
]
