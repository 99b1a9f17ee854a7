#!/usr/bin/env python3
"""
Send a burst of frames to a running localization API and print the answer.

Examples:
  python scripts/locate_remote.py --zone vilnius_old_town frame_000.jpg frame_001.jpg
  python scripts/locate_remote.py --base-url http://10.0.2.2:8000 f*.jpg
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

import requests


def select_zone(base_url: str, zone_id: str, timeout: float = 30.0) -> Dict:
    r = requests.post(f"{base_url.rstrip('/')}/zones/{zone_id}/select", timeout=timeout)
    if r.status_code != 200:
        raise RuntimeError(f"select failed {r.status_code}: {r.text[:200]}")
    return r.json()


def locate(base_url: str, frames: List[Path], timeout: float = 60.0) -> Optional[Dict]:
    """
    POST frames to /locate. Returns the JSON body, or None on a non-200 answer
    (no zone selected, zone switched mid-request, undecodable frames).
    """
    files = [("frames", (p.name, p.read_bytes(), "image/jpeg")) for p in frames]
    r = requests.post(f"{base_url.rstrip('/')}/locate", files=files, timeout=timeout)
    if r.status_code != 200:
        sys.stderr.write(f"locate failed {r.status_code}: {r.text[:200]}\n")
        return None
    return r.json()


def main() -> int:
    ap = argparse.ArgumentParser(description="Remote zone localization client")
    ap.add_argument("frames", nargs="+")
    ap.add_argument("--base-url", default="http://127.0.0.1:8000")
    ap.add_argument("--zone", default=None, help="Select this zone before locating")
    ap.add_argument("--timeout", type=float, default=60.0)
    args = ap.parse_args()

    if args.zone:
        select_zone(args.base_url, args.zone, timeout=args.timeout)
    res = locate(args.base_url, [Path(f) for f in args.frames], timeout=args.timeout)
    if res is None:
        return 1
    print(json.dumps(res))
    return 0 if res.get("status") == "ok" else 2


if __name__ == "__main__":
    sys.exit(main())
