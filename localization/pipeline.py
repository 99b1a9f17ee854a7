from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

import cv2

from common.config import load_params
from common.geo import haversine_m
from common.logging_setup import get_logger, setup_logging
from common.types import ImageFrame
from common.utils import Stopwatch, iso_now_ms
from localization.encoder import init_runtime
from localization.engine import LocalizationEngine
from localization.gate import ZoneGate
from localization.zone_package import load_zone_model
from zone_store.storage import ZoneStore


log = get_logger("localization")

_IMAGE_EXTS = (".jpg", ".jpeg", ".png", ".bmp", ".webp")


def _read_frames(paths: List[Path]) -> List[ImageFrame]:
    frames: List[ImageFrame] = []
    for p in paths:
        img = cv2.imread(str(p), cv2.IMREAD_COLOR)
        if img is None:
            log.warning("Unreadable frame skipped", extra={"extra": {"path": str(p)}})
            continue
        frames.append(ImageFrame.from_array(img, ts=iso_now_ms(), camera_id=p.name))
    return frames


def _frame_paths(files: Optional[List[str]], frames_dir: Optional[str]) -> List[Path]:
    paths = [Path(f) for f in (files or [])]
    if frames_dir:
        paths.extend(sorted(p for p in Path(frames_dir).iterdir() if p.suffix.lower() in _IMAGE_EXTS))
    return paths


def _write_metrics_row(path: Path, row: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", buffering=1) as f:
        f.write(json.dumps(row) + "\n")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Zone localization: single request")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--zone", required=True, help="Zone id under zones.root")
    ap.add_argument("--frames", nargs="*", default=None, help="Frame image files (in burst order)")
    ap.add_argument("--frames-dir", default=None, help="Directory of frame images (sorted by name)")
    ap.add_argument("--max-frames", type=int, default=None, help="Override localization.max_frames")
    ap.add_argument("--truth-lat", type=float, default=None)
    ap.add_argument("--truth-lon", type=float, default=None)
    ap.add_argument("--accept-fallback", action="store_true", help="Do not reject zone-centre answers")
    args = ap.parse_args(argv)

    P = load_params(args.config)
    setup_logging(P["logging"].get("level", "INFO"))

    store = ZoneStore(P["zones"]["root"])
    zone = store.get_zone(args.zone)
    if zone is None:
        log.error("Unknown zone", extra={"extra": {"zone_id": args.zone, "root": str(store.root)}})
        return 1

    frames = _read_frames(_frame_paths(args.frames, args.frames_dir))
    if not frames:
        log.warning("No frames supplied", extra={"extra": {"zone_id": zone.id}})

    rt_cfg = P["runtime"]
    runtime = init_runtime(rt_cfg.get("providers"), int(rt_cfg.get("intra_op_threads") or 0))
    loc = P["localization"]
    max_frames = int(args.max_frames or loc.get("max_frames", 4))

    model = load_zone_model(zone.id, store, runtime)
    try:
        engine = LocalizationEngine(model, max_frames=max_frames, workers=int(loc.get("workers", 1)))
        with Stopwatch() as sw:
            result = engine.predict(frames, zone)
    finally:
        if model is not None:
            model.close()

    verdict = ZoneGate(accept_fallback=args.accept_fallback).check(zone, result)
    row = {
        "ts": iso_now_ms(),
        "zone_id": zone.id,
        "frames": len(frames),
        "latency_ms": int(sw.ms),
        **result.to_dict(),
        "accepted": verdict.accepted,
        "reject_reason": verdict.reason,
        "dist_to_center_m": round(verdict.distance_to_center_m, 1),
    }
    if args.truth_lat is not None and args.truth_lon is not None:
        row["error_m"] = round(haversine_m(args.truth_lat, args.truth_lon, result.latitude, result.longitude), 1)

    _write_metrics_row(Path(P["logging"]["metrics_file"]), row)
    sys.stdout.write(json.dumps(row) + "\n")
    return 0 if verdict.accepted else 2


if __name__ == "__main__":
    sys.exit(main())
