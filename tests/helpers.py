"""
Shared builders for zone packages on disk and stand-in encoders.
"""

import json
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from common.types import Zone, ZoneBounds, ZoneCenter


def make_zone(
    zone_id: str = "vilnius",
    bounds: Tuple[float, float, float, float] = (53.5, 55.5, 22.5, 24.5),
    center: Tuple[float, float] = (54.5, 23.5),
) -> Zone:
    return Zone(
        id=zone_id,
        name=zone_id.title(),
        bounds=ZoneBounds(*bounds),
        center=ZoneCenter(*center),
        min_zoom=12,
        max_zoom=17,
        tile_format="png",
        tile_structure="{z}/{x}/{y}",
        size_mb=42,
    )


def metadata(
    *,
    engine: str = "onnx",
    arch: str = "resnet50",
    input_size: int = 8,
    descriptor_dim: int = 0,
    layout: str = "nchw",
    database: Optional[Dict] = None,
) -> Dict:
    return {
        "id": "vpr-test",
        "version": "1.0",
        "arch": arch,
        "engine": engine,
        "input_size": input_size,
        "mean": [0.485, 0.456, 0.406],
        "std": [0.229, 0.224, 0.225],
        "center_crop": True,
        "descriptor_dim": descriptor_dim,
        "input_layout": layout,
        "database": database,
    }


DB_BLOCK = {"file": "db.bin", "index": "db_index.json", "dtype": "float32", "metric": "cosine"}


def write_zone(
    root: Path,
    zone: Zone,
    *,
    meta: Optional[Dict] = None,
    meta_name: str = "metadata.json",
    raw_meta: Optional[str] = None,
    vectors: Optional[np.ndarray] = None,
    coords: Optional[Sequence[Tuple[float, float]]] = None,
    raw_index: Optional[str] = None,
    weights: Optional[Tuple[str, bytes]] = None,
) -> Path:
    """Create <root>/<zone.id>/{zone.json, model/...}; returns the model dir."""
    zdir = root / zone.id
    mdir = zdir / "model"
    mdir.mkdir(parents=True, exist_ok=True)
    (zdir / "zone.json").write_text(json.dumps(zone.to_dict()))
    if raw_meta is not None:
        (mdir / meta_name).write_text(raw_meta)
    elif meta is not None:
        (mdir / meta_name).write_text(json.dumps(meta))
    if vectors is not None:
        np.asarray(vectors, dtype="<f4").reshape(-1).tofile(mdir / "db.bin")
    if raw_index is not None:
        (mdir / "db_index.json").write_text(raw_index)
    elif coords is not None:
        rows = [{"row": i, "file": f"ref_{i:03d}.jpg", "lat": la, "lon": lo} for i, (la, lo) in enumerate(coords)]
        (mdir / "db_index.json").write_text(json.dumps(rows))
    if weights is not None:
        name, data = weights
        (mdir / name).write_bytes(data)
    return mdir


def solid_frame(bgr: Tuple[int, int, int] = (40, 90, 200), h: int = 24, w: int = 32) -> np.ndarray:
    img = np.zeros((h, w, 3), dtype=np.uint8)
    img[:, :] = bgr
    return img


class FakeEncoder:
    """
    Stand-in for a runtime session. Returns `output` (or output_fn(tensor)) and
    records every call; raises `error` when set.
    """

    def __init__(
        self,
        output=None,
        *,
        output_fn: Optional[Callable[[np.ndarray], object]] = None,
        error: Optional[Exception] = None,
        on_infer: Optional[Callable[[], None]] = None,
    ):
        self.output = output
        self.output_fn = output_fn
        self.error = error
        self.on_infer = on_infer
        self.calls: List[Tuple[int, Tuple[int, ...]]] = []

    def infer(self, tensor, shape):
        self.calls.append((int(np.asarray(tensor).size), tuple(shape)))
        if self.on_infer is not None:
            self.on_infer()
        if self.error is not None:
            raise self.error
        if self.output_fn is not None:
            return self.output_fn(tensor)
        return self.output
