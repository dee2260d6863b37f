# scripts/bench_sgd_update_threads.py
"""
Microbench: SGD update throughput under concurrent training threads.

What it measures
----------------
- Per-update latency of `Optimizer.update` for a set of parameters, with
  1..N worker threads.
- Two access patterns:
    * disjoint: every thread owns its own parameter identities
      (pipeline / model-parallel style)
    * shared:   every thread updates the same identities
      (data-parallel style; numeric results race, state maps must not)
- Uses warmup iterations (not recorded), then repeats with median/p95.

Example
-------
python -O scripts/bench_sgd_update_threads.py --threads 1 2 4 8 \
    --params 64 --shape 256 64 --momentum 0.9 --repeats 50
"""

from __future__ import annotations

import argparse
import statistics
import threading
import time
from typing import List, Sequence

import numpy as np

import os
import sys

THIS_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT_DIR = os.path.abspath(os.path.join(THIS_DIR, ".."))
SRC_DIR = os.path.join(ROOT_DIR, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _import_keyoptim():
    from keyoptim import FixedLearningRate, build_sgd  # type: ignore

    return FixedLearningRate, build_sgd


def _percentile(xs: Sequence[float], p: float) -> float:
    s = sorted(xs)
    k = max(0, min(len(s) - 1, int(round(p / 100.0 * (len(s) - 1)))))
    return s[k]


def _run_once(
    opt, weights: List[np.ndarray], grads: List[np.ndarray], n_threads: int, shared: bool
) -> float:
    barrier = threading.Barrier(n_threads + 1)

    def worker(tid: int) -> None:
        barrier.wait()
        for i, (w, g) in enumerate(zip(weights, grads)):
            pid = f"p{i}" if shared else f"t{tid}.p{i}"
            opt.update(pid, w, g)

    threads = [threading.Thread(target=worker, args=(t,)) for t in range(n_threads)]
    for t in threads:
        t.start()
    barrier.wait()
    t0 = time.perf_counter()
    for t in threads:
        t.join()
    dt = time.perf_counter() - t0
    return dt / (n_threads * len(weights))


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--threads", type=int, nargs="+", default=[1, 2, 4, 8])
    ap.add_argument("--params", type=int, default=32)
    ap.add_argument("--shape", type=int, nargs="+", default=[128, 64])
    ap.add_argument("--dtype", choices=["float32", "float64"], default="float32")
    ap.add_argument("--momentum", type=float, default=0.9)
    ap.add_argument("--warmup", type=int, default=5)
    ap.add_argument("--repeats", type=int, default=30)
    args = ap.parse_args()

    FixedLearningRate, build_sgd = _import_keyoptim()
    dtype = np.dtype(args.dtype)
    rng = np.random.default_rng(0)
    shape = tuple(args.shape)

    weights = [rng.standard_normal(shape).astype(dtype) for _ in range(args.params)]
    grads = [rng.standard_normal(shape).astype(dtype) for _ in range(args.params)]

    print(
        f"params={args.params} shape={shape} dtype={dtype} momentum={args.momentum}"
    )
    print(f"{'pattern':<9} {'threads':>7} {'median_us':>10} {'p95_us':>10}")

    for shared in (False, True):
        for n in args.threads:
            opt = build_sgd(FixedLearningRate(0.01), momentum=args.momentum)
            for _ in range(args.warmup):
                _run_once(opt, weights, grads, n, shared)
            samples = [
                _run_once(opt, weights, grads, n, shared) for _ in range(args.repeats)
            ]
            print(
                f"{'shared' if shared else 'disjoint':<9} {n:>7} "
                f"{statistics.median(samples) * 1e6:>10.2f} "
                f"{_percentile(samples, 95) * 1e6:>10.2f}"
            )


if __name__ == "__main__":
    main()
