"""
Optimizer-related exceptions for KeyOptim.

This module defines the custom errors raised while configuring optimizers,
executing update kernels, and restoring optimizer state. These exceptions let
the framework fail fast and clearly at the layer where a problem is detected,
instead of surfacing as opaque NumPy broadcasting errors deep inside a kernel.

Error taxonomy
--------------
- `OptimizerConfigError`: fatal, raised at construction time.
- `ShapeMismatchError`: fatal, raised by the compute kernel and propagated to
  the caller of `update` unmodified.
- `OptimizerStateError`: raised when per-parameter state is manipulated in a
  way that would break its lifecycle guarantees (e.g., resetting counters).
"""

from typing import Tuple


class OptimizerConfigError(ValueError):
    """
    Raised when an optimizer is constructed with an invalid or incomplete
    hyperparameter set.

    The canonical case is an update rule that requires a learning-rate
    tracker being built without one.

    Attributes
    ----------
    field : str
        Name of the offending configuration field.
    """

    def __init__(self, field: str, message: str) -> None:
        """
        Initialize the OptimizerConfigError.

        Parameters
        ----------
        field : str
            Name of the configuration field that failed validation.
        message : str
            Human-readable description of the problem.
        """
        super().__init__(message)
        self.field = field


class ShapeMismatchError(ValueError):
    """
    Raised by a compute kernel when weight, gradient, and momentum buffer
    shapes disagree.

    Attributes
    ----------
    role : str
        Which operand disagreed with the weight (e.g., "grad", "momentum").
    expected : tuple[int, ...]
        Shape of the weight tensor.
    actual : tuple[int, ...]
        Shape of the offending operand.
    """

    def __init__(
        self, role: str, expected: Tuple[int, ...], actual: Tuple[int, ...]
    ) -> None:
        """
        Initialize the ShapeMismatchError.

        Parameters
        ----------
        role : str
            Name of the operand whose shape does not match.
        expected : tuple[int, ...]
            Expected shape (the weight's shape).
        actual : tuple[int, ...]
            Observed shape of the operand.
        """
        super().__init__(
            f"Shape mismatch for {role}: expected {tuple(expected)}, got {tuple(actual)}."
        )
        self.role = role
        self.expected = tuple(expected)
        self.actual = tuple(actual)


class OptimizerStateError(RuntimeError):
    """
    Raised when optimizer state cannot be restored or mutated safely.

    Examples include loading a checkpoint into an optimizer that already holds
    per-parameter state (update counters are never reset while an optimizer
    is alive), or a checkpointed momentum buffer whose shape disagrees with
    the parameter it is later applied to.
    """
