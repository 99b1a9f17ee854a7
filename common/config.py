from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_PARAMS: Dict[str, Any] = {
    "zones": {"root": "data/zones"},
    "localization": {"max_frames": 4, "workers": 1},
    "runtime": {"providers": None, "intra_op_threads": 0},
    "logging": {"level": "INFO", "metrics_file": "logs/metrics.jsonl"},
    "server": {"host": "0.0.0.0", "port": 8000},
}


def _merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (over or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_params(path: Optional[str] = "config/params.yaml") -> Dict[str, Any]:
    """
    Load YAML parameters and overlay them on DEFAULT_PARAMS.
    A missing file yields the defaults; a malformed file raises yaml.YAMLError.
    """
    if not path or not Path(path).exists():
        return copy.deepcopy(DEFAULT_PARAMS)
    with open(path, "r") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")
    return _merge(DEFAULT_PARAMS, loaded)
