from __future__ import annotations

import atexit
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import onnxruntime as ort

from common.logging_setup import get_logger
from localization.errors import AssetMissing, InferenceFailure, ShapeError


log = get_logger("localization.encoder")


class Encoder(Protocol):
    """Opaque image → embedding capability. Raises on failure."""
    def infer(self, tensor: np.ndarray, shape: Sequence[int]) -> Any:
        ...


# -----------------------------
# Process-wide runtime
# -----------------------------

@dataclass
class InferenceRuntime:
    """
    Inference runtime state shared by every encoder in the process.

    Created once by init_runtime() at startup and torn down by shutdown_runtime()
    (registered with atexit). Encoders receive it explicitly.
    """
    providers: List[str]
    intra_op_threads: int = 0
    _closed: bool = field(default=False, repr=False)

    def session_options(self) -> ort.SessionOptions:
        opts = ort.SessionOptions()
        if self.intra_op_threads > 0:
            opts.intra_op_num_threads = int(self.intra_op_threads)
        return opts

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


_RUNTIME: Optional[InferenceRuntime] = None
_RUNTIME_LOCK = threading.Lock()


def init_runtime(providers: Optional[Sequence[str]] = None, intra_op_threads: int = 0) -> InferenceRuntime:
    """
    Return the process runtime, creating it on first call. Later calls ignore arguments.
    Unknown providers are dropped; CPU is always available.
    """
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is not None and not _RUNTIME.closed:
            return _RUNTIME
        available = list(ort.get_available_providers())
        if providers:
            chosen = [p for p in providers if p in available]
            dropped = [p for p in providers if p not in available]
            if dropped:
                log.warning("Execution providers unavailable", extra={"extra": {"dropped": dropped, "available": available}})
        else:
            chosen = []
        if not chosen:
            chosen = ["CPUExecutionProvider"]
        _RUNTIME = InferenceRuntime(providers=chosen, intra_op_threads=int(intra_op_threads or 0))
        log.info("Inference runtime initialised", extra={"extra": {"providers": chosen}})
        return _RUNTIME


def shutdown_runtime() -> None:
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is not None:
            _RUNTIME.close()
            _RUNTIME = None


atexit.register(shutdown_runtime)


# -----------------------------
# Output decoding
# -----------------------------

def decode_output(value: Any) -> np.ndarray:
    """
    Reduce a raw encoder output to a flat float32 embedding.

    Recognised shapes:
      (D,)        bare vector
      (1, D)      batch of one
      (1, 1, D)   nested batch of one
    Anything else raises ShapeError.
    """
    try:
        arr = np.asarray(value, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ShapeError(f"non-numeric encoder output: {type(value).__name__}") from e
    if arr.ndim == 1:
        vec = arr
    elif arr.ndim == 2 and arr.shape[0] == 1:
        vec = arr[0]
    elif arr.ndim == 3 and arr.shape[0] == 1 and arr.shape[1] == 1:
        vec = arr[0, 0]
    else:
        raise ShapeError(f"unrecognised encoder output shape: {arr.shape}")
    if vec.size == 0:
        raise ShapeError("empty encoder output")
    if not np.all(np.isfinite(vec)):
        raise ShapeError("encoder output contains non-finite values")
    return np.ascontiguousarray(vec, dtype=np.float32)


# -----------------------------
# Engines
# -----------------------------

class OnnxEncoder:
    """ONNX Runtime session keyed by its first input name and first output slot."""

    def __init__(self, session: ort.InferenceSession, weights_path: Optional[Path] = None):
        self.session = session
        self.weights_path = weights_path
        self.input_name = session.get_inputs()[0].name
        self.output_name = session.get_outputs()[0].name

    @classmethod
    def load(cls, weights_path: Path, runtime: InferenceRuntime) -> "OnnxEncoder":
        if runtime.closed:
            raise RuntimeError("inference runtime already shut down")
        if not Path(weights_path).is_file():
            raise AssetMissing(f"weights not found: {weights_path}")
        session = ort.InferenceSession(
            str(weights_path),
            sess_options=runtime.session_options(),
            providers=runtime.providers,
        )
        return cls(session, Path(weights_path))

    def infer(self, tensor: np.ndarray, shape: Sequence[int]) -> Any:
        feed = {self.input_name: np.asarray(tensor, dtype=np.float32).reshape(tuple(int(s) for s in shape))}
        try:
            outputs = self.session.run([self.output_name], feed)
        except Exception as e:  # onnxruntime raises its own Fail/InvalidArgument types
            raise InferenceFailure(f"onnxruntime run failed: {e}") from e
        return outputs[0]


EncoderFactory = Callable[[Path, InferenceRuntime], Encoder]

# engine name → (weights extension, factory)
ENCODER_ENGINES: Dict[str, Tuple[str, Optional[EncoderFactory]]] = {
    "onnx": (".onnx", OnnxEncoder.load),
    "tflite": (".tflite", None),
    "torch": (".pt", None),
}


def weights_extension(engine: str) -> str:
    return ENCODER_ENGINES.get(engine, (".onnx", None))[0]


def build_encoder(engine: str, weights_path: Optional[Path], runtime: InferenceRuntime) -> Optional[Encoder]:
    """
    Select and load the encoder strategy for `engine`.
    Returns None (logged) when the engine has no backend here, weights are missing,
    or the runtime refuses the weights.
    """
    _, factory = ENCODER_ENGINES.get(engine, (None, None))
    if factory is None:
        log.warning("Unsupported encoder engine", extra={"extra": {"engine": engine}})
        return None
    if weights_path is None:
        log.warning("Encoder weights missing", extra={"extra": {"engine": engine}})
        return None
    try:
        return factory(weights_path, runtime)
    except Exception:  # runtime load errors are engine specific
        log.exception("Failed to load encoder", extra={"extra": {"engine": engine, "weights": str(weights_path)}})
        return None
