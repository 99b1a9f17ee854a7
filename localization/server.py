from __future__ import annotations

import argparse
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import cv2
import numpy as np
import uvicorn
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from common.config import load_params
from common.logging_setup import get_logger, setup_logging
from common.types import ImageFrame
from common.utils import iso_now_ms
from localization.encoder import init_runtime
from localization.engine import ZoneSession
from localization.gate import ZoneGate
from localization.zone_package import find_first, metadata_candidates
from zone_store.storage import ZoneStore


log = get_logger("localization.server")


def _decode_upload(data: bytes, name: str) -> Optional[ImageFrame]:
    arr = np.frombuffer(data, dtype=np.uint8)
    if arr.size == 0:
        return None
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if img is None:
        return None
    return ImageFrame.from_array(img, ts=iso_now_ms(), camera_id=name or "upload")


def create_app(P: Dict[str, Any]) -> FastAPI:
    """
    Build the localization API around one ZoneSession.

    Endpoints:
      GET    /health
      GET    /zones
      POST   /zones/{zone_id}/select
      DELETE /zones/selected
      POST   /locate           (multipart field `frames`, one or more images)
    """
    store = ZoneStore(P["zones"]["root"])
    rt_cfg = P["runtime"]
    runtime = init_runtime(rt_cfg.get("providers"), int(rt_cfg.get("intra_op_threads") or 0))
    loc = P["localization"]
    session = ZoneSession(
        store,
        runtime,
        max_frames=int(loc.get("max_frames", 4)),
        workers=int(loc.get("workers", 1)),
    )
    gate = ZoneGate()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        session.close()

    app = FastAPI(title="Zone Localization API", version="1.0.0", lifespan=lifespan)
    app.state.session = session
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        zone = session.zone
        return {
            "status": "ok",
            "zones_root": str(store.root),
            "selected_zone": zone.id if zone else None,
            "model_loaded": session.model is not None,
            "providers": runtime.providers,
        }

    @app.get("/zones")
    def zones():
        out = []
        for zid, z in store.zones().items():
            has_model = find_first(metadata_candidates(store.model_dir(zid))) is not None
            out.append({"zone_id": zid, "name": z.name, "has_model": has_model, "bounds": z.to_dict()["bounds"]})
        return out

    @app.post("/zones/{zone_id}/select")
    def select(zone_id: str):
        try:
            zone = store.get_zone(zone_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid_zone_id") from None
        if zone is None:
            raise HTTPException(status_code=404, detail="zone_not_found")
        model = session.select(zone)
        return {
            "zone_id": zone.id,
            "model_loaded": model is not None,
            "encoder": bool(model and model.encoder is not None),
            "db_rows": len(model.database) if model and model.database is not None else 0,
        }

    @app.delete("/zones/selected")
    def deselect():
        session.deselect()
        return {"status": "ok"}

    @app.post("/locate")
    async def locate(frames: List[UploadFile] = File(...)):
        zone = session.zone
        if zone is None:
            raise HTTPException(status_code=409, detail="no_zone_selected")
        decoded: List[ImageFrame] = []
        for up in frames:
            fr = _decode_upload(await up.read(), up.filename or "")
            if fr is None:
                log.warning("Undecodable upload skipped", extra={"extra": {"name": up.filename}})
                continue
            decoded.append(fr)
        if not decoded:
            raise HTTPException(status_code=400, detail="no_decodable_frames")

        result = await run_in_threadpool(session.predict, decoded)
        if result is None or session.zone is not zone:
            raise HTTPException(status_code=409, detail="zone_changed")

        verdict = gate.check(zone, result)
        if verdict.accepted:
            status = "ok"
        elif verdict.reason == "fallback":
            status = "fallback"
        else:
            status = "outside_zone"
        return {
            "status": status,
            "latitude": result.latitude,
            "longitude": result.longitude,
            "confidence": result.confidence,
            "zone_id": zone.id,
            "reason": result.reason,
        }

    return app


def main() -> None:
    ap = argparse.ArgumentParser(description="Zone localization API")
    ap.add_argument("--config", default="config/params.yaml")
    args = ap.parse_args()
    P = load_params(args.config)
    setup_logging(P["logging"].get("level", "INFO"))
    srv = P["server"]
    uvicorn.run(create_app(P), host=str(srv.get("host", "0.0.0.0")), port=int(srv.get("port", 8000)))


# -------- local dev entrypoint --------
if __name__ == "__main__":
    main()
