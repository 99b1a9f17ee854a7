"""
Unit tests for the remote localization client
"""

import pytest
import os
import sys
from unittest.mock import Mock, patch

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from scripts.locate_remote import locate, select_zone


def _response(status, body=None, text=""):
    r = Mock()
    r.status_code = status
    r.json.return_value = body
    r.text = text
    return r


class TestLocateRemote:
    """Test cases for select_zone and locate"""

    @patch("requests.post")
    def test_select_zone(self, mock_post):
        mock_post.return_value = _response(200, {"zone_id": "vilnius", "model_loaded": True})
        assert select_zone("http://host:8000/", "vilnius")["model_loaded"]
        assert mock_post.call_args[0][0] == "http://host:8000/zones/vilnius/select"

    @patch("requests.post")
    def test_select_unknown_zone_raises(self, mock_post):
        mock_post.return_value = _response(404, text="zone_not_found")
        with pytest.raises(RuntimeError, match="404"):
            select_zone("http://host:8000", "nowhere")

    @patch("requests.post")
    def test_locate_uploads_frames(self, mock_post, tmp_path):
        """Every frame goes out under the `frames` field"""
        paths = []
        for i in range(2):
            p = tmp_path / f"f{i}.jpg"
            p.write_bytes(b"\xff\xd8" + bytes([i]))
            paths.append(p)
        mock_post.return_value = _response(200, {"status": "ok", "latitude": 54.0, "longitude": 23.0})
        res = locate("http://host:8000", paths)
        assert res["status"] == "ok"
        files = mock_post.call_args[1]["files"]
        assert [f[0] for f in files] == ["frames", "frames"]
        assert files[1][1][0] == "f1.jpg"
        assert files[1][1][1] == b"\xff\xd8\x01"

    @patch("requests.post")
    def test_locate_conflict_returns_none(self, mock_post, tmp_path):
        p = tmp_path / "f.jpg"
        p.write_bytes(b"x")
        mock_post.return_value = _response(409, text="zone_changed")
        assert locate("http://host:8000", [p]) is None
