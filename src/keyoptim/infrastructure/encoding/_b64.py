from __future__ import annotations

import base64
from typing import Any, Dict

import numpy as np


def bytes_to_b64_str(b: bytes) -> str:
    """
    Encode raw bytes into a base64 ASCII string (JSON-safe).
    """
    return base64.b64encode(b).decode("ascii")


def b64_str_to_bytes(s: str) -> bytes:
    """
    Decode a base64 ASCII string back into raw bytes.
    """
    return base64.b64decode(s.encode("ascii"))


def ndarray_to_payload(arr: np.ndarray) -> Dict[str, Any]:
    """
    Serialize a NumPy ndarray (e.g., a momentum buffer) into a JSON-safe payload.

    Returns
    -------
    dict
        {
          "b64": "<base64>",
          "dtype": "<numpy dtype str>",
          "shape": [...],
          "order": "C"
        }
    """
    a = np.asarray(arr)
    return {
        "b64": bytes_to_b64_str(a.tobytes(order="C")),
        "dtype": a.dtype.str,
        "shape": list(a.shape),
        "order": "C",
    }


def payload_to_ndarray(payload: Dict[str, Any]) -> np.ndarray:
    """
    Deserialize a JSON payload back into an owning, writeable NumPy ndarray.

    Raises
    ------
    ValueError
        If the decoded byte count does not match ``dtype`` and ``shape``.
    """
    b = b64_str_to_bytes(str(payload["b64"]))
    dtype = np.dtype(str(payload["dtype"]))
    shape = tuple(int(x) for x in payload["shape"])

    arr = np.frombuffer(b, dtype=dtype)
    if arr.size != int(np.prod(shape, dtype=np.int64)):
        raise ValueError(
            f"payload size mismatch: {arr.size} elements for shape {shape}"
        )

    # frombuffer views are read-only; momentum buffers are updated in place.
    return np.array(arr.reshape(shape), copy=True, order="C")
