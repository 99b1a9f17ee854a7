from __future__ import annotations

import json
import mmap
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

from common.logging_setup import get_logger
from common.types import DatabaseInfo, DbRow
from localization.errors import AssetMalformed, DimensionMismatch


log = get_logger("localization.database")

_DTYPES = {"float32": np.dtype("<f4"), "float16": np.dtype("<f2")}


def resolve_dim(descriptor_dim: int, store_len: int, row_count: int) -> int:
    """Explicit descriptor_dim when positive, else store_len // max(1, row_count)."""
    if descriptor_dim > 0:
        return int(descriptor_dim)
    return int(store_len) // max(1, int(row_count))


def top1_cosine(query: np.ndarray, store: np.ndarray, dim: int) -> Tuple[int, float]:
    """
    Exact top-1 search over a flat row-major store of `dim`-length rows.

    Score is the plain dot product (both sides are L2-normalised upstream).
    Ties go to the lowest row index. Rows scoring NaN never win; an empty store,
    or one with no finite score, returns (-1, -1.0).
    """
    if dim <= 0:
        raise ValueError("dim must be positive")
    rows = store.size // dim
    if rows == 0:
        return -1, -1.0
    q = np.asarray(query, dtype=np.float32).reshape(-1)
    if q.size != dim:
        raise ValueError(f"query length {q.size} != dim {dim}")
    mat = store[: rows * dim].reshape(rows, dim)
    scores = mat @ q
    scores[~np.isfinite(scores)] = -np.inf
    best = int(np.argmax(scores))  # first occurrence of the maximum
    if not np.isfinite(scores[best]):
        return -1, -1.0
    return best, float(scores[best])


def _check_layout(count: int, dim: int, row_count: int) -> None:
    if count == 0 and row_count == 0:
        return
    if dim <= 0:
        raise DimensionMismatch("descriptor dim resolved to 0 for a non-empty database")
    if count % dim != 0:
        raise DimensionMismatch(f"store length {count} is not a multiple of dim {dim}")
    if count // dim != row_count:
        raise DimensionMismatch(f"store has {count // dim} rows, index has {row_count}")


def _read_index(path: Path) -> List[DbRow]:
    try:
        raw = json.loads(path.read_text())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise AssetMalformed(f"{path.name}: invalid JSON ({e})") from e
    if not isinstance(raw, list):
        raise AssetMalformed(f"{path.name}: index must be a JSON array")
    for i, r in enumerate(raw):
        if not isinstance(r, dict):
            raise AssetMalformed(f"{path.name}: entry {i} is not an object")
    try:
        rows = [DbRow.from_dict(r) for r in raw]
    except (KeyError, TypeError, ValueError) as e:
        raise AssetMalformed(f"{path.name}: bad row ({e})") from e
    for i, r in enumerate(rows):
        if r.row != i:
            raise AssetMalformed(f"{path.name}: entry {i} has row={r.row}")
    return rows


class DescriptorDatabase:
    """
    Flat reference-embedding store plus parallel geotags for one zone.

    The float32 store is a read-only memory map of the file; float16 stores are
    widened into an owned buffer. close() releases the mapping immediately.
    """

    def __init__(self, store: np.ndarray, rows: List[DbRow], dim: int, *, _mm: Optional[mmap.mmap] = None):
        _check_layout(store.size, dim, len(rows))
        self._store: Optional[np.ndarray] = store
        self._mm = _mm
        self.rows = rows
        self.dim = int(dim)

    # -------- construction --------

    @classmethod
    def open(cls, db_path: Path, index_path: Path, info: DatabaseInfo, descriptor_dim: int = 0) -> "DescriptorDatabase":
        if info.metric != "cosine":
            raise AssetMalformed(f"unsupported metric: {info.metric!r}")
        dtype = _DTYPES.get(info.dtype)
        if dtype is None:
            raise AssetMalformed(f"unsupported dtype: {info.dtype!r}")

        rows = _read_index(Path(index_path))

        size = Path(db_path).stat().st_size
        if size % dtype.itemsize != 0:
            raise DimensionMismatch(f"{Path(db_path).name}: {size} bytes is not a whole number of {info.dtype}")
        count = size // dtype.itemsize
        dim = resolve_dim(descriptor_dim, count, len(rows))
        # validate before mapping so a rejected file is never left mapped
        _check_layout(count, dim, len(rows))

        mm: Optional[mmap.mmap] = None
        if count == 0:
            store = np.zeros(0, dtype=np.float32)
        elif dtype == np.float32:
            with open(db_path, "rb") as f:
                mm = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)
            store = np.frombuffer(mm, dtype=dtype)
        else:
            store = np.fromfile(db_path, dtype=dtype).astype(np.float32)

        if not bool(np.all(np.isfinite(store))):
            del store
            if mm is not None:
                mm.close()
            raise AssetMalformed(f"{Path(db_path).name}: store contains non-finite values")

        db = cls(store, rows, dim, _mm=mm)
        log.info(
            "Descriptor database loaded",
            extra={"extra": {"file": str(db_path), "rows": len(rows), "dim": dim, "dtype": info.dtype, "mmap": mm is not None}},
        )
        return db

    # -------- queries --------

    @property
    def store(self) -> np.ndarray:
        if self._store is None:
            raise ValueError("descriptor database is closed")
        return self._store

    @property
    def closed(self) -> bool:
        return self._store is None

    def __len__(self) -> int:
        return len(self.rows)

    def row(self, i: int) -> Optional[DbRow]:
        if 0 <= i < len(self.rows):
            return self.rows[i]
        return None

    def search(self, query: np.ndarray) -> Tuple[int, float]:
        return top1_cosine(query, self.store, self.dim)

    # -------- lifecycle --------

    def close(self) -> None:
        """
        Drop the array view and unmap the file. Raises BufferError if a caller
        still holds a view obtained from `store`.
        """
        self._store = None
        if self._mm is not None:
            self._mm.close()
            self._mm = None

    def __enter__(self) -> "DescriptorDatabase":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
