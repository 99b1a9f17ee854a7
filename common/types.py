from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Optional, Tuple, Any, Dict, List
import numpy as np

from common.geo import bbox_center, in_range


ENGINES = ("onnx", "tflite", "torch")
LAYOUTS = ("nhwc", "nchw")


@dataclass(slots=True)
class ImageFrame:
    """
    A single camera image handed over by the capture layer.

    Attributes:
        ts: ISO-8601 (UTC) timestamp string.
        width, height: image dimensions in pixels.
        frame: np.ndarray of shape (H,W), (H,W,3) BGR or (H,W,4) BGRA, dtype uint8.
        camera_id: logical ID for source camera.
    """
    ts: str
    width: int
    height: int
    frame: np.ndarray
    camera_id: str = "cam0"

    def __post_init__(self) -> None:
        if not isinstance(self.frame, np.ndarray):
            raise TypeError("frame must be a numpy ndarray")
        if self.frame.ndim not in (2, 3):
            raise ValueError("frame must be 2D (gray) or 3D (BGR/BGRA)")
        if self.frame.ndim == 3 and self.frame.shape[2] not in (3, 4):
            raise ValueError("frame must have 3 or 4 channels")
        if self.frame.shape[0] != self.height or self.frame.shape[1] != self.width:
            raise ValueError("width/height do not match frame shape")
        if self.frame.dtype != np.uint8:
            self.frame = self.frame.astype(np.uint8, copy=False)

    @classmethod
    def from_array(cls, img: np.ndarray, ts: str = "", camera_id: str = "cam0") -> "ImageFrame":
        return cls(ts=ts, width=int(img.shape[1]), height=int(img.shape[0]), frame=img, camera_id=camera_id)

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without image bytes (safe to log/serialize)."""
        return {
            "ts": self.ts,
            "width": self.width,
            "height": self.height,
            "channels": None if self.frame.ndim == 2 else self.frame.shape[2],
            "camera_id": self.camera_id,
        }


# -------------------------
# Zones
# -------------------------

@dataclass(frozen=True, slots=True)
class ZoneBounds:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def __post_init__(self) -> None:
        if self.min_lat > self.max_lat:
            raise ValueError("min_lat must be <= max_lat")
        if self.min_lon > self.max_lon:
            raise ValueError("min_lon must be <= max_lon")

    def contains(self, lat: float, lon: float) -> bool:
        return in_range(lat, self.min_lat, self.max_lat) and in_range(lon, self.min_lon, self.max_lon)


@dataclass(frozen=True, slots=True)
class ZoneCenter:
    lat: float
    lon: float


@dataclass(frozen=True, slots=True)
class Zone:
    """
    A geographically bounded area with its own map tiles, encoder and descriptor database.
    Field names in catalog JSON: zone_id, name, min_zoom, max_zoom, tile_format,
    tile_structure, bounds{min_lat,max_lat,min_lon,max_lon}, center{lat,lon}, size_mb.
    """
    id: str
    name: str
    bounds: ZoneBounds
    center: ZoneCenter
    min_zoom: int = 0
    max_zoom: int = 0
    tile_format: str = "png"
    tile_structure: str = "{z}/{x}/{y}"
    size_mb: int = 0

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("zone id must be non-empty")
        if self.min_zoom > self.max_zoom:
            raise ValueError("min_zoom must be <= max_zoom")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Zone":
        b = d["bounds"]
        bounds = ZoneBounds(
            min_lat=float(b["min_lat"]),
            max_lat=float(b["max_lat"]),
            min_lon=float(b["min_lon"]),
            max_lon=float(b["max_lon"]),
        )
        c = d.get("center")
        if c is None:
            lat, lon = bbox_center(bounds.min_lat, bounds.max_lat, bounds.min_lon, bounds.max_lon)
            center = ZoneCenter(lat, lon)
        else:
            center = ZoneCenter(float(c["lat"]), float(c["lon"]))
        return cls(
            id=str(d.get("zone_id") or d["id"]),
            name=str(d.get("name", "")),
            bounds=bounds,
            center=center,
            min_zoom=int(d.get("min_zoom", 0)),
            max_zoom=int(d.get("max_zoom", 0)),
            tile_format=str(d.get("tile_format", "png")),
            tile_structure=str(d.get("tile_structure", "{z}/{x}/{y}")),
            size_mb=int(d.get("size_mb", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zone_id": self.id,
            "name": self.name,
            "min_zoom": self.min_zoom,
            "max_zoom": self.max_zoom,
            "tile_format": self.tile_format,
            "tile_structure": self.tile_structure,
            "bounds": asdict(self.bounds),
            "center": asdict(self.center),
            "size_mb": self.size_mb,
        }


# -------------------------
# Model package
# -------------------------

@dataclass(frozen=True, slots=True)
class DatabaseInfo:
    file: str
    index: str
    dtype: str = "float32"
    metric: str = "cosine"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DatabaseInfo":
        return cls(
            file=str(d["file"]),
            index=str(d["index"]),
            dtype=str(d.get("dtype") or "float32").lower(),
            metric=str(d.get("metric") or "cosine").lower(),
        )


@dataclass(frozen=True, slots=True)
class ModelInfo:
    """
    Encoder metadata shipped next to the weights (metadata*.json).

    Raises ValueError/KeyError/TypeError from from_dict() on invalid content;
    the zone loader turns those into AssetMalformed.
    """
    id: str
    version: str
    arch: str
    engine: str
    input_size: int
    mean: Tuple[float, float, float]
    std: Tuple[float, float, float]
    center_crop: bool = True
    descriptor_dim: int = 0
    input_layout: str = "nhwc"
    database: Optional[DatabaseInfo] = None

    def __post_init__(self) -> None:
        if self.engine not in ENGINES:
            raise ValueError(f"unsupported engine: {self.engine!r}")
        if self.input_size <= 0:
            raise ValueError("input_size must be positive")
        if len(self.mean) != 3 or len(self.std) != 3:
            raise ValueError("mean/std must have 3 entries")
        if any(s <= 0 for s in self.std):
            raise ValueError("std entries must be > 0")
        if self.descriptor_dim < 0:
            raise ValueError("descriptor_dim must be >= 0")
        if self.input_layout not in LAYOUTS:
            raise ValueError(f"unsupported input_layout: {self.input_layout!r}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ModelInfo":
        if not isinstance(d, dict):
            raise TypeError("metadata must be a JSON object")
        db = d.get("database")
        layout = str(d.get("input_layout") or "").strip().lower() or "nhwc"
        return cls(
            id=str(d["id"]),
            version=str(d["version"]),
            arch=str(d["arch"]),
            engine=str(d["engine"]).strip().lower(),
            input_size=int(d["input_size"]),
            mean=tuple(float(x) for x in d["mean"]),  # type: ignore[arg-type]
            std=tuple(float(x) for x in d["std"]),  # type: ignore[arg-type]
            center_crop=bool(d.get("center_crop", True)),
            descriptor_dim=int(d.get("descriptor_dim") or 0),
            input_layout=layout,
            database=DatabaseInfo.from_dict(db) if db else None,
        )


@dataclass(frozen=True, slots=True)
class DbRow:
    """Geotag of one reference embedding; `row` is its position in the vector store."""
    row: int
    lat: float
    lon: float
    file: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DbRow":
        f = d.get("file")
        return cls(row=int(d["row"]), lat=float(d["lat"]), lon=float(d["lon"]), file=None if f is None else str(f))

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row, "file": self.file, "lat": self.lat, "lon": self.lon}


# -------------------------
# Results
# -------------------------

@dataclass(frozen=True, slots=True)
class PredictionResult:
    """
    Location estimate for a burst of frames.

    Attributes:
        latitude, longitude: WGS84 degrees.
        confidence: cosine similarity of the best match in [-1, 1]; 0.0 for a fallback.
        is_fallback: True when no retrieval evidence exists (zone centre answer).
        reason: short code describing why a fallback was produced.
        row, file: provenance of the matched reference (None on fallback).
    """
    latitude: float
    longitude: float
    confidence: float
    is_fallback: bool = False
    reason: Optional[str] = None
    row: Optional[int] = None
    file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
