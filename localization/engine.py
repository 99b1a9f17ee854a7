from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from common.logging_setup import get_logger
from common.types import PredictionResult, Zone
from common.utils import Stopwatch
from localization import errors
from localization.aggregate import aggregate, l2_norm, l2_normalize
from localization.encoder import InferenceRuntime, decode_output
from localization.errors import InferenceFailure, ShapeError
from localization.preprocess import FrameLike, input_shape, preprocess
from localization.zone_package import LoadedModel, load_zone_model
from zone_store.storage import ZoneStore


log = get_logger("localization.engine")

DEFAULT_MAX_FRAMES = 4


def fallback(zone: Zone, reason: str) -> PredictionResult:
    """Zone centre, confidence 0: a structurally valid answer with no evidence behind it."""
    return PredictionResult(
        latitude=float(zone.center.lat),
        longitude=float(zone.center.lon),
        confidence=0.0,
        is_fallback=True,
        reason=reason,
    )


class LocalizationEngine:
    """
    Turns a burst of frames into a PredictionResult for the zone a model was loaded for.

    Never raises for data-quality reasons: every failure path ends in fallback().
    """

    def __init__(self, model: Optional[LoadedModel], *, max_frames: int = DEFAULT_MAX_FRAMES, workers: int = 1):
        self.model = model
        self.max_frames = max(1, int(max_frames))
        self.workers = max(1, int(workers))

    # -------- per-frame --------

    def encode_frame(self, frame: FrameLike) -> Optional[np.ndarray]:
        """Preprocess + infer + decode + L2-normalise one frame; None if it fails."""
        model = self.model
        if model is None or model.encoder is None:
            return None
        info = model.info
        try:
            tensor = preprocess(
                frame,
                info.input_size,
                info.mean,
                info.std,
                center_crop=info.center_crop,
                layout=info.input_layout,
            )
            raw = model.encoder.infer(tensor, input_shape(info.input_size, info.input_layout))
            vec = decode_output(raw)
        except (InferenceFailure, ShapeError, TypeError, ValueError) as e:
            log.warning("Frame skipped", extra={"extra": {"error": str(e), "kind": type(e).__name__}})
            return None
        except Exception as e:  # opaque encoder backends may raise anything
            log.warning("Encoder failed", extra={"extra": {"error": str(e), "kind": type(e).__name__}})
            return None
        log.debug("Frame encoded", extra={"extra": {"size": int(vec.size), "norm": l2_norm(vec)}})
        return l2_normalize(vec)

    def encode_frames(self, frames: Sequence[FrameLike]) -> List[np.ndarray]:
        subset = list(frames[: self.max_frames])
        if self.workers > 1 and len(subset) > 1:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(subset))) as pool:
                encoded = list(pool.map(self.encode_frame, subset))
        else:
            encoded = [self.encode_frame(f) for f in subset]
        return [v for v in encoded if v is not None]

    # -------- request --------

    def predict(self, frames: Sequence[FrameLike], zone: Zone) -> PredictionResult:
        model = self.model
        if model is None or model.encoder is None:
            log.warning("Fallback: no encoder", extra={"extra": {"zone_id": zone.id}})
            return fallback(zone, errors.NO_ENCODER)

        with Stopwatch() as sw:
            descriptors = self.encode_frames(frames)
        log.debug(
            "Descriptors produced",
            extra={"extra": {"zone_id": zone.id, "frames": len(frames), "ok": len(descriptors), "ms": round(sw.ms, 1)}},
        )
        if not descriptors:
            log.warning("Fallback: no descriptors from frames", extra={"extra": {"zone_id": zone.id}})
            return fallback(zone, errors.NO_DESCRIPTORS)

        try:
            query = aggregate(descriptors)
        except ValueError as e:
            log.warning("Fallback: descriptors disagree", extra={"extra": {"zone_id": zone.id, "error": str(e)}})
            return fallback(zone, errors.NO_DESCRIPTORS)

        db = model.database
        if db is None or db.closed or len(db) == 0 or db.dim == 0:
            log.warning(
                "Fallback: db missing/empty or dim invalid",
                extra={"extra": {"zone_id": zone.id, "dim": 0 if db is None else db.dim, "rows": 0 if db is None else len(db)}},
            )
            return fallback(zone, errors.NO_DATABASE)
        if query.size != db.dim:
            log.warning(
                "Fallback: query dim differs from database",
                extra={"extra": {"zone_id": zone.id, "query_dim": int(query.size), "dim": db.dim}},
            )
            return fallback(zone, errors.QUERY_DIM_MISMATCH)

        with Stopwatch() as sw:
            best_idx, best_score = db.search(query)
        row = db.row(best_idx)
        if row is None:
            log.warning("Fallback: no row for best index", extra={"extra": {"zone_id": zone.id, "best_idx": best_idx}})
            return fallback(zone, errors.ROW_OUT_OF_RANGE)

        log.info(
            "Match",
            extra={"extra": {"zone_id": zone.id, "row": best_idx, "score": best_score, "rows": len(db), "ms": round(sw.ms, 2)}},
        )
        return PredictionResult(
            latitude=float(row.lat),
            longitude=float(row.lon),
            confidence=float(best_score),
            is_fallback=False,
            row=int(row.row),
            file=row.file,
        )


def predict(
    frames: Sequence[FrameLike],
    zone: Zone,
    model: Optional[LoadedModel],
    *,
    max_frames: int = DEFAULT_MAX_FRAMES,
    workers: int = 1,
) -> PredictionResult:
    """Functional entry point: one request against an already loaded zone model."""
    return LocalizationEngine(model, max_frames=max_frames, workers=workers).predict(frames, zone)


# -----------------------------
# Zone selection lifecycle
# -----------------------------

@dataclass
class _Selection:
    zone: Zone
    model: Optional[LoadedModel]
    generation: int
    inflight: int = 0
    retired: bool = False


class ZoneSession:
    """
    Holds the currently selected zone and its model.

    A request captures the selection when it starts; if the zone is switched or
    deselected before it finishes, its result is discarded (predict returns None).
    Retired models are closed as soon as no request is still using them.
    """

    def __init__(
        self,
        store: ZoneStore,
        runtime: InferenceRuntime,
        *,
        max_frames: int = DEFAULT_MAX_FRAMES,
        workers: int = 1,
    ):
        self.store = store
        self.runtime = runtime
        self.max_frames = max_frames
        self.workers = workers
        self._lock = threading.Lock()
        self._current: Optional[_Selection] = None
        self._generation = 0

    @property
    def zone(self) -> Optional[Zone]:
        with self._lock:
            return self._current.zone if self._current else None

    @property
    def model(self) -> Optional[LoadedModel]:
        with self._lock:
            return self._current.model if self._current else None

    def select(self, zone: Zone) -> Optional[LoadedModel]:
        """Load `zone`'s model (may be None) and make it current; retires the previous zone."""
        model = load_zone_model(zone.id, self.store, self.runtime)
        with self._lock:
            self._generation += 1
            old = self._current
            self._current = _Selection(zone=zone, model=model, generation=self._generation)
            self._retire(old)
        log.info("Zone selected", extra={"extra": {"zone_id": zone.id, "model": model is not None}})
        return model

    def deselect(self) -> None:
        with self._lock:
            self._generation += 1
            old, self._current = self._current, None
            self._retire(old)

    def close(self) -> None:
        self.deselect()

    def predict(self, frames: Sequence[FrameLike]) -> Optional[PredictionResult]:
        """
        Run one request against the current zone. Returns None if no zone is
        selected or the selection changed while the request was running.
        """
        with self._lock:
            sel = self._current
            if sel is None:
                return None
            sel.inflight += 1
        try:
            result = LocalizationEngine(sel.model, max_frames=self.max_frames, workers=self.workers).predict(frames, sel.zone)
        finally:
            with self._lock:
                sel.inflight -= 1
                stale = self._current is not sel
                if sel.retired and sel.inflight == 0:
                    self._close(sel)
        if stale:
            log.info(
                "Discarding result for a deselected zone",
                extra={"extra": {"zone_id": sel.zone.id, "generation": sel.generation}},
            )
            return None
        return result

    # -------- internals --------

    def _retire(self, sel: Optional[_Selection]) -> None:
        if sel is None:
            return
        sel.retired = True
        if sel.inflight == 0:
            self._close(sel)

    @staticmethod
    def _close(sel: _Selection) -> None:
        if sel.model is not None:
            sel.model.close()
            log.info("Zone model released", extra={"extra": {"zone_id": sel.zone.id}})
