"""
Optimizer base: shared per-parameter bookkeeping.

This module provides `OptimizerConfig` and `Optimizer`. The optimizer owns the
bookkeeping that every update rule needs and delegates the actual update to
an `IUpdateRule` (e.g., `Sgd`) by composition rather than inheritance.

Responsibilities
----------------
- Weight decay policy: a global coefficient optionally overridden per
  parameter.
- Update counters: one monotonically increasing integer per parameter
  identity, incremented atomically on every update.
- Gradient clipping threshold and rescale factor: carried as immutable
  configuration and forwarded to the compute kernel by the update rule.
- Checkpointing of counters and rule state to a single JSON file.

Threading
---------
Update counters live in a `ConcurrentStateMap`, so concurrent `update` calls
from several training threads never lose increments, even for the same
parameter identity. Numeric updates of the *same* parameter from several
threads are not serialized here; callers must synchronize those themselves.
"""

from __future__ import annotations

import json
import math
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from ...domain._errors import OptimizerStateError
from ...domain._optimizers import IUpdateRule, WeightDecayOverride
from .._state_map import ConcurrentStateMap
from ..encoding._b64 import ndarray_to_payload, payload_to_ndarray

CHECKPOINT_FORMAT: str = "keyoptim.json.optstate.v1"


@dataclass(frozen=True)
class OptimizerConfig:
    """
    Hyperparameters shared by all update rules.

    Parameters
    ----------
    weight_decay : float, optional
        Global coupled L2 coefficient. Must be >= 0. Defaults to 0.0.
    clip_grad : float, optional
        Element-wise gradient clipping threshold; 0 disables clipping.
        Defaults to 0.0. Negative values are accepted as the legacy
        "disabled" sentinel and normalized to 0.0 with a `RuntimeWarning`.
    rescale_grad : float, optional
        Factor applied to every gradient before clipping. Must be finite and
        non-zero. Defaults to 1.0.
    weight_decay_override : callable or mapping, optional
        Per-parameter weight decay lookup. A callable returning None, or a
        mapping without the key, falls back to ``weight_decay``.
    """

    weight_decay: float = 0.0
    clip_grad: float = 0.0
    rescale_grad: float = 1.0
    weight_decay_override: Optional[WeightDecayOverride] = None

    def __post_init__(self) -> None:
        wd = float(self.weight_decay)
        clip = float(self.clip_grad)
        rescale = float(self.rescale_grad)

        if not math.isfinite(wd) or wd < 0.0:
            raise ValueError(f"weight_decay must be a finite value >= 0, got {wd}")
        if math.isnan(clip):
            raise ValueError("clip_grad must not be NaN")
        if clip < 0.0:
            warnings.warn(
                f"clip_grad={clip} is negative; treating it as disabled (0.0).",
                RuntimeWarning,
                stacklevel=3,
            )
            clip = 0.0
        if not math.isfinite(rescale) or rescale == 0.0:
            raise ValueError(
                f"rescale_grad must be finite and non-zero, got {rescale}"
            )

        override = self.weight_decay_override
        if override is not None and not (
            callable(override) or isinstance(override, Mapping)
        ):
            raise ValueError(
                "weight_decay_override must be a callable or a mapping, "
                f"got {type(override)!r}"
            )

        object.__setattr__(self, "weight_decay", wd)
        object.__setattr__(self, "clip_grad", clip)
        object.__setattr__(self, "rescale_grad", rescale)


class Optimizer:
    """
    Optimizer driving a single update rule.

    Parameters
    ----------
    config : OptimizerConfig
        Shared hyperparameters.
    rule : IUpdateRule
        Update rule that performs the per-parameter update and owns its
        auxiliary state.
    num_shards : Optional[int], optional
        Lock partitions for the update-counter map. See `ConcurrentStateMap`.

    Notes
    -----
    - Per-parameter state is created lazily on the first `update` of each
      identity and lives as long as the optimizer.
    - Update counters are never reset. `load_state_dict` is therefore only
      permitted before the first update.
    """

    def __init__(
        self,
        config: OptimizerConfig,
        rule: IUpdateRule,
        *,
        num_shards: Optional[int] = None,
    ) -> None:
        if not isinstance(config, OptimizerConfig):
            raise TypeError(f"config must be OptimizerConfig, got {type(config)!r}")
        if not isinstance(rule, IUpdateRule):
            raise TypeError(f"rule must implement IUpdateRule, got {type(rule)!r}")

        self._config = config
        self._rule = rule
        self._update_counts = ConcurrentStateMap(num_shards)

    @property
    def config(self) -> OptimizerConfig:
        return self._config

    @property
    def rule(self) -> IUpdateRule:
        return self._rule

    @property
    def weight_decay(self) -> float:
        return self._config.weight_decay

    @property
    def clip_grad(self) -> float:
        return self._config.clip_grad

    @property
    def rescale_grad(self) -> float:
        return self._config.rescale_grad

    def effective_weight_decay(self, parameter_id: str) -> float:
        """
        Return the weight decay for ``parameter_id``.

        The per-parameter override takes precedence when it yields a value;
        otherwise the global ``weight_decay`` is returned. This method has no
        side effects.
        """
        override = self._config.weight_decay_override
        if override is not None:
            if isinstance(override, Mapping):
                value = override.get(parameter_id)
            else:
                value = override(parameter_id)
            if value is not None:
                return float(value)
        return self._config.weight_decay

    def next_update_count(self, parameter_id: str) -> int:
        """
        Atomically increment the update counter of ``parameter_id``.

        Returns
        -------
        int
            The post-increment count; the first call for an identity
            returns 1. Concurrent callers observe distinct, consecutive
            values.
        """
        return self._update_counts.increment(parameter_id)

    def update_count(self, parameter_id: str) -> int:
        """
        Return the current update count without incrementing it.
        """
        return int(self._update_counts.get(parameter_id, 0))

    def parameter_ids(self) -> List[str]:
        """
        Return the identities that have been updated at least once, sorted.
        """
        return sorted(str(k) for k in self._update_counts.keys())

    def update(self, parameter_id: str, weight: Any, grad: Any) -> None:
        """
        Update ``weight`` in place from ``grad`` using the configured rule.

        Errors raised by the rule or its compute kernel (e.g.,
        `ShapeMismatchError`) propagate unmodified.
        """
        self._rule.apply(self, parameter_id, weight, grad)

    def step(self, updates: Iterable[Tuple[str, Any, Optional[Any]]]) -> None:
        """
        Apply `update` to a batch of ``(parameter_id, weight, grad)`` triples.

        Entries whose ``grad`` is None are skipped to support frozen weights
        and partial graphs.
        """
        for parameter_id, weight, grad in updates:
            if grad is None:
                continue
            self.update(parameter_id, weight, grad)

    def state_dict(self) -> Dict[str, Any]:
        """
        Snapshot counters and rule state.

        Returns
        -------
        dict
            ``{"update_counts": {id: int}, "rule": rule.state_dict()}``.
        """
        return {
            "update_counts": {str(k): int(v) for k, v in self._update_counts.items()},
            "rule": self._rule.state_dict(),
        }

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        """
        Restore counters and rule state into a fresh optimizer.

        Raises
        ------
        OptimizerStateError
            If this optimizer already holds update counters.
        ValueError
            If a stored counter is negative.
        """
        if len(self._update_counts):
            raise OptimizerStateError(
                "Cannot load optimizer state: update counters already exist "
                f"for {len(self._update_counts)} parameter(s)."
            )

        counts = {str(k): int(v) for k, v in state.get("update_counts", {}).items()}
        for k, v in counts.items():
            if v < 0:
                raise ValueError(f"update count for {k!r} must be >= 0, got {v}")

        self._rule.load_state_dict(state.get("rule", {}))
        for k, v in counts.items():
            self._update_counts.set(k, v)

    def save_json(self, path: str | Path) -> None:
        """
        Save optimizer state into a single JSON file.

        Format
        ------
        {
          "format": "keyoptim.json.optstate.v1",
          "rule": "Sgd",
          "update_counts": {"fc1.weight": 12, ...},
          "state": {
            "momentum": {
              "fc1.weight": {"b64": "...", "dtype": "<f4", "shape": [...], "order": "C"}
            }
          }
        }

        Notes
        -----
        Hyperparameters (including the learning-rate tracker) are not stored;
        they belong to the code that builds the optimizer.
        """
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)

        state = self.state_dict()
        payload = {
            "format": CHECKPOINT_FORMAT,
            "rule": type(self._rule).__name__,
            "update_counts": state["update_counts"],
            "state": {
                group: {
                    str(pid): ndarray_to_payload(np.asarray(arr))
                    for pid, arr in buffers.items()
                }
                for group, buffers in state["rule"].items()
            },
        }

        p.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

    def load_json(self, path: str | Path) -> None:
        """
        Load state written by `save_json` into this (fresh) optimizer.

        Raises
        ------
        ValueError
            If the file uses an unsupported format tag.
        OptimizerStateError
            If the checkpoint was written for a different update rule, or if
            this optimizer already holds state.
        """
        p = Path(path)
        payload = json.loads(p.read_text(encoding="utf-8"))

        fmt = payload.get("format")
        if fmt != CHECKPOINT_FORMAT:
            raise ValueError(f"Unsupported checkpoint format: {fmt!r}")

        rule_name = payload.get("rule")
        if rule_name != type(self._rule).__name__:
            raise OptimizerStateError(
                f"Checkpoint was written for rule {rule_name!r}, "
                f"expected {type(self._rule).__name__!r}."
            )

        rule_state = {
            group: {pid: payload_to_ndarray(buf) for pid, buf in buffers.items()}
            for group, buffers in payload.get("state", {}).items()
        }
        self.load_state_dict(
            {"update_counts": payload.get("update_counts", {}), "rule": rule_state}
        )

    def __repr__(self) -> str:
        c = self._config
        return (
            f"{type(self).__name__}(rule={self._rule!r}, weight_decay={c.weight_decay}, "
            f"clip_grad={c.clip_grad}, rescale_grad={c.rescale_grad})"
        )
