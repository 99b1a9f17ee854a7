"""
Unit tests for the single-request localization CLI
"""

import json
import pytest
import numpy as np
import cv2
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import DatabaseInfo, ModelInfo
from localization import pipeline
from localization.database import DescriptorDatabase
from localization.zone_package import LoadedModel
from tests.helpers import DB_BLOCK, FakeEncoder, make_zone, metadata, solid_frame, write_zone


@pytest.fixture
def workspace(tmp_path):
    zones = tmp_path / "zones"
    zones.mkdir()
    metrics = tmp_path / "logs" / "metrics.jsonl"
    cfg = tmp_path / "params.yaml"
    cfg.write_text(f"zones:\n  root: {zones}\nlogging:\n  level: WARNING\n  metrics_file: {metrics}\n")
    frames = []
    for i in range(3):
        p = tmp_path / f"frame_{i}.png"
        cv2.imwrite(str(p), solid_frame((20 * i, 80, 160)))
        frames.append(str(p))
    return {"zones": zones, "metrics": metrics, "cfg": str(cfg), "frames": frames}


def _rows(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestPipelineMain:
    """Test cases for pipeline.main exit codes and metrics rows"""

    def test_unknown_zone(self, workspace):
        assert pipeline.main(["--config", workspace["cfg"], "--zone", "nowhere"]) == 1
        assert not workspace["metrics"].exists()

    def test_zone_without_model_is_rejected(self, workspace, capsys):
        """Fallback answers are logged but rejected"""
        write_zone(workspace["zones"], make_zone("vilnius"))
        code = pipeline.main(["--config", workspace["cfg"], "--zone", "vilnius", "--frames", *workspace["frames"]])
        assert code == 2
        row = _rows(workspace["metrics"])[0]
        assert row["zone_id"] == "vilnius"
        assert row["frames"] == 3
        assert row["is_fallback"] is True
        assert row["reject_reason"] == "fallback"
        assert (row["latitude"], row["longitude"], row["confidence"]) == (54.5, 23.5, 0.0)
        assert json.loads(capsys.readouterr().out.strip().splitlines()[-1]) == row

    def test_accept_fallback_flag(self, workspace):
        write_zone(workspace["zones"], make_zone("vilnius"))
        code = pipeline.main(["--config", workspace["cfg"], "--zone", "vilnius", "--accept-fallback"])
        assert code == 0

    def test_frames_dir_and_truth(self, workspace, tmp_path):
        """Frames are read from a directory; error_m is reported against truth"""
        write_zone(workspace["zones"], make_zone("vilnius"))
        (tmp_path / "notes.txt").write_text("skip me")
        pipeline.main(
            ["--config", workspace["cfg"], "--zone", "vilnius", "--frames-dir", str(tmp_path), "--truth-lat", "54.5", "--truth-lon", "23.5"]
        )
        row = _rows(workspace["metrics"])[0]
        assert row["frames"] == 3
        assert row["error_m"] == 0.0

    def test_unreadable_frame_skipped(self, workspace, tmp_path):
        write_zone(workspace["zones"], make_zone("vilnius"))
        bad = tmp_path / "broken.jpg"
        bad.write_bytes(b"not an image")
        pipeline.main(["--config", workspace["cfg"], "--zone", "vilnius", "--frames", str(bad), workspace["frames"][0]])
        assert _rows(workspace["metrics"])[0]["frames"] == 1

    def test_match_accepted(self, workspace, monkeypatch):
        """A retrieval match inside the zone exits 0 and closes the model"""
        mdir = write_zone(
            workspace["zones"],
            make_zone("vilnius"),
            meta=metadata(database=DB_BLOCK),
            vectors=np.array([[1.0, 0.0], [0.0, 1.0]]),
            coords=[(54.0, 23.0), (55.0, 24.0)],
        )
        db = DescriptorDatabase.open(mdir / "db.bin", mdir / "db_index.json", DatabaseInfo.from_dict(DB_BLOCK))
        model = LoadedModel(
            info=ModelInfo.from_dict(metadata()),
            model_dir=mdir,
            encoder=FakeEncoder(np.array([0.0, 1.0])),
            database=db,
        )
        monkeypatch.setattr(pipeline, "load_zone_model", lambda zid, store, runtime: model)
        code = pipeline.main(["--config", workspace["cfg"], "--zone", "vilnius", "--frames", *workspace["frames"]])
        assert code == 0
        row = _rows(workspace["metrics"])[0]
        assert (row["latitude"], row["longitude"]) == (55.0, 24.0)
        assert row["accepted"] is True
        assert row["file"] == "ref_001.jpg"
        assert db.closed
