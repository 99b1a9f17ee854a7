"""
Frame preprocessing for the place-recognition encoder:
- Channel conversion (OpenCV BGR/BGRA/gray → RGB)
- Optional centred square crop
- Bilinear resize to the encoder input size
- Per-channel mean/std normalization in float32
- Flattening to NHWC or NCHW
"""

from __future__ import annotations

from typing import Sequence, Tuple, Union

import cv2
import numpy as np

from common.types import ImageFrame, LAYOUTS
from common.utils import round_half_up


FrameLike = Union[ImageFrame, np.ndarray]


# -----------------------------
# Basic image ops
# -----------------------------

def frame_array(frame: FrameLike) -> np.ndarray:
    img = frame.frame if isinstance(frame, ImageFrame) else frame
    if not isinstance(img, np.ndarray):
        raise TypeError("frame must be an ImageFrame or numpy ndarray")
    if img.ndim not in (2, 3) or img.shape[0] == 0 or img.shape[1] == 0:
        raise ValueError(f"unsupported frame shape: {img.shape}")
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    return img


def to_rgb_u8(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2RGB)
    c = img.shape[2]
    if c == 1:
        return cv2.cvtColor(img[:, :, 0], cv2.COLOR_GRAY2RGB)
    if c == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
    if c == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2RGB)
    raise ValueError(f"unsupported channel count: {c}")


def center_crop_square(img: np.ndarray) -> np.ndarray:
    """Largest centred square; odd margins put the extra pixel on the left/top."""
    h, w = img.shape[:2]
    side = min(h, w)
    x = round_half_up((w - side) / 2.0)
    y = round_half_up((h - side) / 2.0)
    x = min(x, w - side)
    y = min(y, h - side)
    return img[y : y + side, x : x + side]


def resize_square(img: np.ndarray, size: int) -> np.ndarray:
    if img.shape[0] == size and img.shape[1] == size:
        return img
    return cv2.resize(img, (int(size), int(size)), interpolation=cv2.INTER_LINEAR)


def input_shape(input_size: int, layout: str = "nhwc") -> Tuple[int, int, int, int]:
    layout = (layout or "nhwc").lower()
    if layout == "nchw":
        return (1, 3, int(input_size), int(input_size))
    if layout == "nhwc":
        return (1, int(input_size), int(input_size), 3)
    raise ValueError(f"unsupported layout: {layout!r}")


# -----------------------------
# Turn-key preprocessor
# -----------------------------

def preprocess(
    frame: FrameLike,
    input_size: int,
    mean: Sequence[float],
    std: Sequence[float],
    *,
    center_crop: bool = True,
    layout: str = "nhwc",
) -> np.ndarray:
    """
    Prepare one frame for the encoder:
      - crop the largest centred square (if center_crop), else squash to square
      - resize to input_size x input_size
      - RGB / 255, then (x - mean[c]) / std[c]; float32, no clamping
      - flatten as NHWC (interleaved) or NCHW (channel planes of input_size**2)
    Returns a 1-D float32 array of length 3 * input_size**2.
    """
    layout = (layout or "nhwc").lower()
    if layout not in LAYOUTS:
        raise ValueError(f"unsupported layout: {layout!r}")
    if int(input_size) <= 0:
        raise ValueError("input_size must be positive")
    if len(mean) != 3 or len(std) != 3:
        raise ValueError("mean/std must have 3 entries")
    mean_a = np.asarray(mean, dtype=np.float32)
    std_a = np.asarray(std, dtype=np.float32)
    if np.any(std_a <= 0):
        raise ValueError("std entries must be > 0")

    img = frame_array(frame)
    if center_crop:
        img = center_crop_square(img)
    img = resize_square(img, int(input_size))
    rgb = to_rgb_u8(img)

    x = rgb.astype(np.float32) / np.float32(255.0)
    x = (x - mean_a) / std_a

    if layout == "nchw":
        x = np.ascontiguousarray(x.transpose(2, 0, 1))
    return x.reshape(-1)
