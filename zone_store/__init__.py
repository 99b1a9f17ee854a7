"""
Zone Store — zones unpacked on local storage

- Resolves `<root>/<zone_id>/` and its `model/` directory
- Parses `zone.json` catalog entries into `common.types.Zone`
- Lists zones present on disk (download/unzip/delete live in the catalog client)
"""
from .storage import ZoneStore, ZoneEntry

__all__ = ["ZoneStore", "ZoneEntry"]
