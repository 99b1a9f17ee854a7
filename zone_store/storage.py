from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from common.logging_setup import get_logger
from common.types import Zone


log = get_logger("zone_store")

ZONE_JSON = "zone.json"
MODEL_DIR = "model"


@dataclass(frozen=True)
class ZoneEntry:
    """Index entry for a zone directory found on local storage."""
    zone_id: str
    path: Path

    @property
    def model_dir(self) -> Path:
        return self.path / MODEL_DIR

    @property
    def has_model_dir(self) -> bool:
        return self.model_dir.is_dir()


class ZoneStore:
    """
    Read-only view of zones already unpacked on local storage.

        root/
          └─ {zone_id}/
              ├─ zone.json     (catalog entry)
              └─ model/
                  ├─ metadata*.json
                  ├─ weights*.{onnx,tflite,pt}
                  ├─ <database.file>
                  └─ <database.index>

    Download, unzip and deletion belong to the catalog client and are not done here.
    """
    def __init__(self, root: str = "data/zones"):
        self.root = Path(root)

    # -------- public API --------

    def zone_dir(self, zone_id: str) -> Path:
        if not zone_id or "/" in zone_id or "\\" in zone_id or zone_id in (".", ".."):
            raise ValueError(f"invalid zone id: {zone_id!r}")
        return self.root / zone_id

    def model_dir(self, zone_id: str) -> Path:
        return self.zone_dir(zone_id) / MODEL_DIR

    def is_present(self, zone_id: str) -> bool:
        return self.zone_dir(zone_id).is_dir()

    def list_zones(self) -> List[ZoneEntry]:
        if not self.root.is_dir():
            return []
        return sorted(
            (ZoneEntry(zone_id=p.name, path=p) for p in self.root.iterdir() if p.is_dir()),
            key=lambda e: e.zone_id,
        )

    def get_zone(self, zone_id: str) -> Optional[Zone]:
        """
        Parse {zone_id}/zone.json. Missing file → None; malformed file is logged → None.
        """
        path = self.zone_dir(zone_id) / ZONE_JSON
        if not path.is_file():
            return None
        try:
            return Zone.from_dict(json.loads(path.read_text()))
        except (ValueError, KeyError, TypeError) as e:
            log.error(
                "Malformed zone.json",
                extra={"extra": {"zone_id": zone_id, "path": str(path), "error": str(e)}},
            )
            return None

    def zones(self) -> Dict[str, Zone]:
        out: Dict[str, Zone] = {}
        for entry in self.list_zones():
            z = self.get_zone(entry.zone_id)
            if z is not None:
                out[entry.zone_id] = z
        return out
