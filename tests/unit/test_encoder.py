"""
Unit tests for encoder output decoding, engine selection and the ONNX wrapper
"""

import pytest
import numpy as np
import os
import sys
from types import SimpleNamespace
from unittest.mock import Mock

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from localization.encoder import (
    OnnxEncoder,
    build_encoder,
    decode_output,
    init_runtime,
    shutdown_runtime,
    weights_extension,
)
from localization.errors import AssetMissing, InferenceFailure, ShapeError


class TestDecodeOutput:
    """Test cases for decode_output"""

    def test_rank1(self):
        out = decode_output(np.array([1.0, 2.0, 3.0]))
        assert out.dtype == np.float32
        assert out.tolist() == [1.0, 2.0, 3.0]

    def test_rank2_batch_of_one(self):
        assert decode_output(np.ones((1, 5))).shape == (5,)

    def test_rank3_nested_batch_of_one(self):
        assert decode_output(np.ones((1, 1, 7))).shape == (7,)

    def test_nested_python_lists(self):
        """Plain nested lists decode like arrays"""
        assert decode_output([[0.5, 0.25]]).tolist() == [0.5, 0.25]

    @pytest.mark.parametrize("shape", [(2, 5), (1, 2, 5), (1, 8, 1, 1), ()])
    def test_unrecognised_shapes(self, shape):
        """Anything outside the closed set is a ShapeError"""
        with pytest.raises(ShapeError):
            decode_output(np.ones(shape))

    def test_empty_vector(self):
        with pytest.raises(ShapeError):
            decode_output(np.zeros((1, 0)))

    def test_non_numeric(self):
        with pytest.raises(ShapeError):
            decode_output("not a tensor")

    def test_ragged(self):
        with pytest.raises(ShapeError):
            decode_output([[1.0, 2.0], [3.0]])

    def test_non_finite(self):
        with pytest.raises(ShapeError):
            decode_output(np.array([1.0, np.nan]))


class TestRuntime:
    """Test cases for the process-wide inference runtime"""

    def test_init_once(self):
        """Repeated init returns the same runtime until shutdown"""
        a = init_runtime()
        b = init_runtime(["SomeMissingProvider"])
        assert a is b
        assert "CPUExecutionProvider" in a.providers

    def test_shutdown_then_reinit(self):
        a = init_runtime()
        shutdown_runtime()
        assert a.closed
        b = init_runtime()
        assert b is not a
        assert not b.closed

    def test_unknown_providers_dropped(self):
        shutdown_runtime()
        rt = init_runtime(["NoSuchExecutionProvider"])
        assert rt.providers == ["CPUExecutionProvider"]


class TestBuildEncoder:
    """Test cases for engine selection"""

    def test_weights_extension(self):
        assert weights_extension("onnx") == ".onnx"
        assert weights_extension("tflite") == ".tflite"
        assert weights_extension("torch") == ".pt"

    def test_unsupported_engine(self, tmp_path):
        """Engines without a backend yield no encoder"""
        w = tmp_path / "weights.tflite"
        w.write_bytes(b"\x00")
        assert build_encoder("tflite", w, init_runtime()) is None

    def test_missing_weights(self):
        assert build_encoder("onnx", None, init_runtime()) is None

    def test_corrupt_weights(self, tmp_path):
        """Runtime load failures are logged and give no encoder"""
        w = tmp_path / "weights.onnx"
        w.write_bytes(b"definitely not a protobuf")
        assert build_encoder("onnx", w, init_runtime()) is None


class TestOnnxEncoder:
    """Test cases for OnnxEncoder with a mocked session"""

    def _session(self):
        session = Mock()
        session.get_inputs.return_value = [SimpleNamespace(name="images")]
        session.get_outputs.return_value = [SimpleNamespace(name="descriptor")]
        session.run.return_value = [np.ones((1, 16), dtype=np.float32)]
        return session

    def test_feeds_first_input_and_reads_first_output(self):
        session = self._session()
        enc = OnnxEncoder(session)
        out = enc.infer(np.zeros(3 * 4 * 4, dtype=np.float32), (1, 3, 4, 4))
        assert out.shape == (1, 16)
        (names, feed), _ = session.run.call_args
        assert names == ["descriptor"]
        assert feed["images"].shape == (1, 3, 4, 4)
        assert feed["images"].dtype == np.float32

    def test_load_missing_weights(self, tmp_path):
        with pytest.raises(AssetMissing):
            OnnxEncoder.load(tmp_path / "weights.onnx", init_runtime())

    def test_run_errors_become_inference_failure(self):
        session = self._session()
        session.run.side_effect = RuntimeError("bad input")
        with pytest.raises(InferenceFailure):
            OnnxEncoder(session).infer(np.zeros(12, dtype=np.float32), (1, 2, 2, 3))
