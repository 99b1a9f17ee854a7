from __future__ import annotations

from typing import Sequence

import numpy as np


def l2_norm(v: np.ndarray) -> float:
    v = np.asarray(v, dtype=np.float32)
    return float(np.sqrt(np.dot(v, v)))


def l2_normalize(v: np.ndarray) -> np.ndarray:
    """
    v / ||v||_2 as float32. A zero vector is returned unchanged.
    """
    v = np.asarray(v, dtype=np.float32).reshape(-1)
    n = l2_norm(v)
    if n == 0.0:
        return v.copy()
    return (v * np.float32(1.0 / n)).astype(np.float32, copy=False)


def aggregate(vectors: Sequence[np.ndarray]) -> np.ndarray:
    """
    Fuse per-frame embeddings: component-wise mean, then L2 normalization.
    Callers must drop failed frames first; an empty input raises ValueError.
    """
    if len(vectors) == 0:
        raise ValueError("aggregate() needs at least one vector")
    dims = {int(np.asarray(v).size) for v in vectors}
    if len(dims) != 1:
        raise ValueError(f"embedding lengths differ: {sorted(dims)}")
    stack = np.stack([np.asarray(v, dtype=np.float32).reshape(-1) for v in vectors])
    return l2_normalize(stack.mean(axis=0, dtype=np.float32))
