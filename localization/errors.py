from __future__ import annotations


class LocalizationError(Exception):
    """Base class for recoverable localization failures."""


class AssetMissing(LocalizationError):
    """A metadata, weights or database file is absent for a zone."""


class AssetMalformed(LocalizationError):
    """A zone asset exists but cannot be parsed or is inconsistent."""


class DimensionMismatch(AssetMalformed):
    """Vector store length does not agree with descriptor_dim and the index."""


class InferenceFailure(LocalizationError):
    """The encoder raised while running a single frame."""


class ShapeError(LocalizationError, ValueError):
    """Encoder output is not one of the recognised embedding shapes."""


# Fallback reason codes carried by PredictionResult.reason
NO_ENCODER = "no_encoder"
NO_DESCRIPTORS = "no_descriptors"
NO_DATABASE = "no_database"
QUERY_DIM_MISMATCH = "dim_mismatch"
ROW_OUT_OF_RANGE = "row_out_of_range"
