"""
Row-sparse gradient representation.

Embedding-style parameters typically receive gradients that are non-zero for
only a handful of rows. `RowSparseArray` stores just those rows together with
their row indices, which lets the SGD kernel apply *lazy* updates: rows that
are absent from the gradient keep their weight and momentum untouched instead
of decaying with a zero gradient.

Layout
------
For a logical dense tensor of shape ``(R, *tail)``:

- ``indices`` has shape ``(nnz_rows,)`` and holds unique row ids in
  ``[0, R)``.
- ``data`` has shape ``(nnz_rows, *tail)``; ``data[i]`` is dense row
  ``indices[i]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np


@dataclass(frozen=True, eq=False)
class RowSparseArray:
    """
    Immutable row-sparse tensor.

    Parameters
    ----------
    indices : np.ndarray
        1-D integer array of unique row ids.
    data : np.ndarray
        Row values, shape ``(len(indices),) + shape[1:]``.
    shape : tuple[int, ...]
        Shape of the logical dense tensor. Must have at least one dimension.

    Raises
    ------
    ValueError
        If the indices are not 1-D integers, are out of range or duplicated,
        or if ``data`` does not match ``shape``.
    """

    indices: np.ndarray
    data: np.ndarray
    shape: Tuple[int, ...]

    def __post_init__(self) -> None:
        indices = np.asarray(self.indices)
        data = np.asarray(self.data)
        shape = tuple(int(d) for d in self.shape)

        if len(shape) == 0:
            raise ValueError("RowSparseArray requires a shape with at least 1 dim")
        if indices.ndim != 1:
            raise ValueError(f"indices must be 1-D, got ndim={indices.ndim}")
        if indices.size and not np.issubdtype(indices.dtype, np.integer):
            raise ValueError(f"indices must be integers, got dtype={indices.dtype}")
        indices = indices.astype(np.int64, copy=False)

        expected = (indices.shape[0],) + shape[1:]
        if data.shape != expected:
            raise ValueError(
                f"data shape mismatch: expected {expected}, got {data.shape}"
            )
        if indices.size:
            if indices.min() < 0 or indices.max() >= shape[0]:
                raise ValueError(
                    f"row indices out of range [0, {shape[0]}): "
                    f"min={indices.min()}, max={indices.max()}"
                )
            if np.unique(indices).size != indices.size:
                raise ValueError("row indices must be unique")

        # Frozen dataclass: normalized fields are written through object.__setattr__.
        object.__setattr__(self, "indices", indices)
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "shape", shape)

    @classmethod
    def from_dense(cls, arr: np.ndarray) -> "RowSparseArray":
        """
        Build a row-sparse array keeping only rows with a non-zero entry.
        """
        a = np.asarray(arr)
        if a.ndim == 0:
            raise ValueError("from_dense requires an array with at least 1 dim")
        flat = a.reshape(a.shape[0], -1)
        rows = np.flatnonzero(np.any(flat != 0, axis=1))
        return cls(indices=rows, data=a[rows].copy(), shape=a.shape)

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def nnz_rows(self) -> int:
        return int(self.indices.shape[0])

    def to_dense(self) -> np.ndarray:
        out = np.zeros(self.shape, dtype=self.data.dtype)
        out[self.indices] = self.data
        return out
