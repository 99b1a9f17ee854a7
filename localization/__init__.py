"""
Localization — zone-scoped visual place recognition

This package provides:
- Zone model package loading (metadata, encoder weights, descriptor database)
- Frame preprocessing to the encoder's size/layout/normalization
- Encoder runtime (ONNX Runtime) and output-shape decoding
- Embedding normalization/aggregation and exact top-1 cosine search
- LocalizationEngine with zone-centre fallback, ZoneSession, and ZoneGate

Entry points:
    python -m localization.pipeline --config config/params.yaml --zone <id> --frames a.jpg b.jpg
    python -m localization.server --config config/params.yaml
"""
from .engine import LocalizationEngine, ZoneSession, predict
from .gate import ZoneGate, contains
from .zone_package import LoadedModel, load_zone_model

__all__ = [
    "LocalizationEngine",
    "ZoneSession",
    "predict",
    "ZoneGate",
    "contains",
    "LoadedModel",
    "load_zone_model",
]
