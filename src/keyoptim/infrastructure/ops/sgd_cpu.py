"""
CPU-based SGD update kernels for KeyOptim.

This module provides the NumPy reference implementation of the SGD compute
kernel: given the weight, its gradient, and (optionally) a momentum buffer,
it writes the updated weight (and momentum) back into the output arrays.

Update rule
-----------
For each element, with ``g`` the incoming gradient::

    g'  = rescale_grad * g
    g'  = clip(g', -clip_grad, clip_grad)          if clip_grad > 0

    momentum enabled:
        mom'    = momentum * mom - lr * (g' + wd * w)
        w'      = w + mom'
    momentum disabled:
        w'      = w - lr * (g' + wd * w)

Sparse gradients
----------------
If ``grad`` is a `RowSparseArray` and ``lazy_update`` is set, only the rows
present in the gradient are updated; the remaining rows of the weight and the
momentum buffer are left untouched. Without ``lazy_update`` the sparse
gradient is densified, so every row decays every step. Dense gradients always
update every row regardless of the flag.

Failure atomicity
-----------------
Operands are validated and all new values are computed into temporaries
before anything is written, so a failing call leaves every output unchanged.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple

import numpy as np

from ...domain._errors import ShapeMismatchError
from .._row_sparse import RowSparseArray


def _check_operands(
    inputs: Sequence[Any], outputs: Sequence[Any]
) -> Tuple[np.ndarray, Any, Optional[np.ndarray]]:
    """
    Validate operand counts, types, and shapes.

    Returns
    -------
    tuple
        ``(weight, grad, mom)`` with ``mom`` None when momentum is disabled.
    """
    if len(inputs) not in (2, 3):
        raise ValueError(f"sgd_update expects 2 or 3 inputs, got {len(inputs)}")
    if len(outputs) != len(inputs) - 1:
        raise ValueError(
            f"sgd_update expects {len(inputs) - 1} outputs for {len(inputs)} inputs, "
            f"got {len(outputs)}"
        )

    weight = inputs[0]
    grad = inputs[1]
    mom = inputs[2] if len(inputs) == 3 else None

    if not isinstance(weight, np.ndarray):
        raise TypeError(f"weight must be np.ndarray, got {type(weight)!r}")
    if not np.issubdtype(weight.dtype, np.floating):
        raise TypeError(f"weight must be floating point, got dtype={weight.dtype}")
    if outputs[0] is not weight:
        raise ValueError("outputs[0] must be the weight array (in-place update)")
    if not weight.flags.writeable:
        raise ValueError("weight array is not writeable")

    if not isinstance(grad, (np.ndarray, RowSparseArray)):
        raise TypeError(
            f"grad must be np.ndarray or RowSparseArray, got {type(grad)!r}"
        )
    if tuple(grad.shape) != weight.shape:
        raise ShapeMismatchError("grad", weight.shape, grad.shape)

    if mom is not None:
        if not isinstance(mom, np.ndarray):
            raise TypeError(f"momentum must be np.ndarray, got {type(mom)!r}")
        if mom.shape != weight.shape:
            raise ShapeMismatchError("momentum", weight.shape, mom.shape)
        if outputs[1] is not mom:
            raise ValueError("outputs[1] must be the momentum array (in-place update)")
        if not mom.flags.writeable:
            raise ValueError("momentum array is not writeable")

    return weight, grad, mom


def _prepare_grad(
    g: np.ndarray, *, rescale_grad: float, clip_grad: float, dtype: np.dtype
) -> np.ndarray:
    out = np.asarray(g, dtype=dtype) * dtype.type(rescale_grad)
    if clip_grad > 0.0:
        np.clip(out, -clip_grad, clip_grad, out=out)
    return out


def _step(
    w: np.ndarray,
    g: np.ndarray,
    mom: Optional[np.ndarray],
    *,
    learning_rate: float,
    weight_decay: float,
    momentum: float,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Compute new ``(weight, momentum)`` values without touching the inputs.
    """
    t = w.dtype.type
    delta = t(learning_rate) * (g + t(weight_decay) * w)
    if mom is None:
        return w - delta, None
    new_mom = t(momentum) * mom - delta
    return w + new_mom, new_mom


def sgd_update_cpu(
    inputs: Sequence[Any],
    outputs: Sequence[Any],
    *,
    learning_rate: float,
    weight_decay: float,
    rescale_grad: float,
    clip_grad: float,
    momentum: float,
    lazy_update: bool,
) -> None:
    """
    Apply one SGD (optionally momentum) update in place (CPU, NumPy).

    Parameters
    ----------
    inputs : Sequence
        ``(weight, grad)`` or ``(weight, grad, mom)``. ``weight`` and ``mom``
        are floating-point ``np.ndarray``; ``grad`` is an ``np.ndarray`` or a
        `RowSparseArray` with the weight's shape.
    outputs : Sequence[np.ndarray]
        ``(weight,)`` or ``(weight, mom)``; the same objects as in ``inputs``.
    learning_rate : float
        Step size for this update.
    weight_decay : float
        Coupled L2 regularization coefficient.
    rescale_grad : float
        Gradient scale applied before clipping.
    clip_grad : float
        Element-wise clipping threshold; ``<= 0`` disables clipping.
    momentum : float
        Momentum coefficient, used only when a momentum buffer is passed.
    lazy_update : bool
        Restrict row-sparse updates to the rows present in ``grad``.

    Raises
    ------
    ShapeMismatchError
        If ``grad`` or ``mom`` do not match the weight's shape.
    TypeError
        If an operand has an unsupported type or the weight is not floating.
    ValueError
        If operand counts are wrong, outputs do not alias the inputs, or an
        output is read-only.
    """
    weight, grad, mom = _check_operands(inputs, outputs)
    dtype = weight.dtype
    clip = float(clip_grad)

    if isinstance(grad, RowSparseArray) and lazy_update:
        rows = grad.indices
        g = _prepare_grad(grad.data, rescale_grad=rescale_grad, clip_grad=clip, dtype=dtype)
        new_w, new_mom = _step(
            weight[rows],
            g,
            None if mom is None else mom[rows],
            learning_rate=learning_rate,
            weight_decay=weight_decay,
            momentum=momentum,
        )
        weight[rows] = new_w
        if mom is not None:
            mom[rows] = new_mom
        return

    dense = grad.to_dense() if isinstance(grad, RowSparseArray) else grad
    g = _prepare_grad(dense, rescale_grad=rescale_grad, clip_grad=clip, dtype=dtype)
    new_w, new_mom = _step(
        weight,
        g,
        mom,
        learning_rate=learning_rate,
        weight_decay=weight_decay,
        momentum=momentum,
    )
    np.copyto(weight, new_w)
    if mom is not None:
        np.copyto(mom, new_mom)


class NumpySgdKernel:
    """
    `ISgdKernel` implementation backed by `sgd_update_cpu`.

    This is the default kernel used by `Sgd` when no kernel is supplied.
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
    ) -> None:
        sgd_update_cpu(
            inputs,
            outputs,
            learning_rate=learning_rate,
            weight_decay=weight_decay,
            rescale_grad=rescale_grad,
            clip_grad=clip_grad,
            momentum=momentum,
            lazy_update=lazy_update,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
