#!/usr/bin/env python3
"""
Build a zone's descriptor database from geotagged reference images.

Reads <zones_root>/<zone>/model/metadata*.json for the encoder settings and the
database file names, encodes every image listed in the geotag CSV (columns:
file,lat,lon) and writes:
  - <database.file>   little-endian float32, one L2-normalised row per image
  - <database.index>  JSON array of {row, file, lat, lon}

The database is always rebuilt from scratch.

Examples:
  python scripts/build_descriptor_db.py --zone vilnius_old_town --images refs/ --geotags refs/geotags.csv
  python scripts/build_descriptor_db.py --config config/params.yaml --zone z1 --images refs/ --geotags tags.csv
"""
from __future__ import annotations

import argparse
import csv
import json
import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np

# Allow running as a plain script from the repository root
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.config import load_params
from common.logging_setup import get_logger, setup_logging
from common.types import DbRow, ImageFrame
from localization.encoder import build_encoder, init_runtime
from localization.engine import LocalizationEngine
from localization.zone_package import (
    LoadedModel,
    find_first,
    metadata_candidates,
    read_model_info,
    weights_candidates,
)
from zone_store.storage import ZoneStore


log = get_logger("build_descriptor_db")


def read_geotags(path: Path) -> List[Tuple[str, float, float]]:
    out: List[Tuple[str, float, float]] = []
    with path.open(newline="") as f:
        for rec in csv.DictReader(f):
            out.append((rec["file"].strip(), float(rec["lat"]), float(rec["lon"])))
    return out


def write_database(db_path: Path, idx_path: Path, vectors: List[np.ndarray], rows: List[DbRow]) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    if vectors:
        np.stack(vectors).astype("<f4").tofile(db_path)
    else:
        db_path.write_bytes(b"")
    idx_path.write_text(json.dumps([r.to_dict() for r in rows], indent=1))


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Build a zone descriptor database")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--zone", required=True)
    ap.add_argument("--images", required=True, help="Directory holding the reference images")
    ap.add_argument("--geotags", required=True, help="CSV with columns file,lat,lon")
    args = ap.parse_args(argv)

    P = load_params(args.config)
    setup_logging(P["logging"].get("level", "INFO"))
    store = ZoneStore(P["zones"]["root"])
    model_dir = store.model_dir(args.zone)

    meta_path = find_first(metadata_candidates(model_dir))
    if meta_path is None:
        log.error("No model metadata", extra={"extra": {"dir": str(model_dir)}})
        return 1
    info = read_model_info(meta_path)
    if info.database is None:
        log.error("Metadata has no database block", extra={"extra": {"metadata": str(meta_path)}})
        return 1

    rt = P["runtime"]
    runtime = init_runtime(rt.get("providers"), int(rt.get("intra_op_threads") or 0))
    weights = find_first(weights_candidates(model_dir, info.engine, info.arch))
    encoder = build_encoder(info.engine, weights, runtime)
    if encoder is None:
        return 1
    engine = LocalizationEngine(LoadedModel(info=info, model_dir=model_dir, encoder=encoder))

    images_dir = Path(args.images)
    vectors: List[np.ndarray] = []
    rows: List[DbRow] = []
    for name, lat, lon in read_geotags(Path(args.geotags)):
        img = cv2.imread(str(images_dir / name), cv2.IMREAD_COLOR)
        if img is None:
            log.warning("Unreadable reference image", extra={"extra": {"file": name}})
            continue
        vec = engine.encode_frame(ImageFrame.from_array(img, camera_id=name))
        if vec is None:
            continue
        if vectors and vec.size != vectors[0].size:
            log.error("Encoder output size changed", extra={"extra": {"file": name, "size": int(vec.size)}})
            return 1
        rows.append(DbRow(row=len(rows), lat=lat, lon=lon, file=name))
        vectors.append(vec)

    dim = int(vectors[0].size) if vectors else 0
    if info.descriptor_dim > 0 and vectors and dim != info.descriptor_dim:
        log.error("Descriptor size differs from metadata", extra={"extra": {"dim": dim, "descriptor_dim": info.descriptor_dim}})
        return 1

    write_database(model_dir / info.database.file, model_dir / info.database.index, vectors, rows)
    log.info("Descriptor database written", extra={"extra": {"zone": args.zone, "rows": len(rows), "dim": dim}})
    return 0


if __name__ == "__main__":
    sys.exit(main())
