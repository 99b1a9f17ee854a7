from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from common.logging_setup import get_logger
from common.types import ModelInfo
from localization.database import DescriptorDatabase
from localization.encoder import Encoder, InferenceRuntime, build_encoder, weights_extension
from localization.errors import AssetMalformed
from zone_store.storage import ZoneStore


log = get_logger("localization.zone_package")

METADATA_CANDIDATES = (
    "metadata.json",
    "metadata_resnet50.json",
    "metadata_mobilenetv3.json",
    "metadata_mobilenetv3small.json",
)

KNOWN_ARCHS = ("resnet50", "mobilenetv3", "mobilenetv3small")


@dataclass
class LoadedModel:
    """
    Everything needed to localize within one zone. Held while the zone is selected.

    Invariant: when `database` is set, its store holds exactly len(database.rows) rows
    of database.dim floats.
    """
    info: ModelInfo
    model_dir: Path
    encoder: Optional[Encoder] = None
    database: Optional[DescriptorDatabase] = None
    metadata_path: Optional[Path] = None
    weights_path: Optional[Path] = None
    _closed: bool = field(default=False, repr=False)

    @property
    def dim(self) -> int:
        return self.database.dim if self.database is not None else int(self.info.descriptor_dim)

    def close(self) -> None:
        if self._closed:
            return
        if self.database is not None:
            self.database.close()
        self._closed = True
        self.encoder = None

    def __enter__(self) -> "LoadedModel":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# -----------------------------
# Candidate lookup
# -----------------------------

def find_first(candidates: Iterable[Path]) -> Optional[Path]:
    """First existing regular file, in order."""
    for p in candidates:
        if p.is_file():
            return p
    return None


def metadata_candidates(model_dir: Path) -> List[Path]:
    return [model_dir / name for name in METADATA_CANDIDATES]


def weights_candidates(model_dir: Path, engine: str, arch: str = "") -> List[Path]:
    """weights<ext>, weights_<arch><ext>, then the known per-architecture names."""
    ext = weights_extension(engine)
    stems: List[str] = ["weights"]
    for a in (arch.strip().lower(), *KNOWN_ARCHS):
        if a and f"weights_{a}" not in stems:
            stems.append(f"weights_{a}")
    return [model_dir / f"{s}{ext}" for s in stems]


def read_model_info(path: Path) -> ModelInfo:
    try:
        raw = json.loads(path.read_text())
        return ModelInfo.from_dict(raw)
    except json.JSONDecodeError as e:
        raise AssetMalformed(f"{path.name}: invalid JSON ({e})") from e
    except (KeyError, TypeError, ValueError) as e:
        raise AssetMalformed(f"{path.name}: invalid metadata ({e!r})") from e


def _load_database(model_dir: Path, info: ModelInfo, zone_id: str) -> Optional[DescriptorDatabase]:
    db_info = info.database
    if db_info is None:
        log.info("Model has no descriptor database", extra={"extra": {"zone_id": zone_id}})
        return None
    db_path = model_dir / db_info.file
    idx_path = model_dir / db_info.index
    missing = [p.name for p in (db_path, idx_path) if not p.is_file()]
    if missing:
        log.warning("Descriptor database assets missing", extra={"extra": {"zone_id": zone_id, "missing": missing}})
        return None
    return DescriptorDatabase.open(db_path, idx_path, db_info, info.descriptor_dim)


# -----------------------------
# Public API
# -----------------------------

def load_zone_model(
    zone_id: str,
    store: ZoneStore,
    runtime: InferenceRuntime,
    *,
    metadata_names: Sequence[str] = METADATA_CANDIDATES,
) -> Optional[LoadedModel]:
    """
    Load the model package of one zone.

    Returns None when the zone has no metadata (expected, logged as warning) or when
    metadata/database content is malformed (logged as error). Missing weights or an
    unsupported engine yield a model without encoder; missing database files yield a
    model without database. OSError on files that exist propagates.
    """
    model_dir = store.model_dir(zone_id)
    meta_path = find_first(model_dir / n for n in metadata_names)
    if meta_path is None:
        log.warning("No model metadata for zone", extra={"extra": {"zone_id": zone_id, "dir": str(model_dir)}})
        return None

    try:
        info = read_model_info(meta_path)
        database = _load_database(model_dir, info, zone_id)
    except AssetMalformed as e:
        log.error("Zone model package malformed", extra={"extra": {"zone_id": zone_id, "error": str(e)}})
        return None

    weights_path = find_first(weights_candidates(model_dir, info.engine, info.arch))
    encoder = build_encoder(info.engine, weights_path, runtime)

    log.info(
        "Zone model loaded",
        extra={
            "extra": {
                "zone_id": zone_id,
                "model": info.id,
                "arch": info.arch,
                "engine": info.engine,
                "metadata": meta_path.name,
                "weights": weights_path.name if weights_path else None,
                "encoder": encoder is not None,
                "db_rows": len(database) if database is not None else 0,
            }
        },
    )
    return LoadedModel(
        info=info,
        model_dir=model_dir,
        encoder=encoder,
        database=database,
        metadata_path=meta_path,
        weights_path=weights_path,
    )
