"""
Reconstruction error and footprint estimates for the quantizers.
"""

import math
from typing import Any, Dict

import numpy as np

from ..core.config import DEFAULT_NUM_SUBSPACES, QUANTIZATION_TYPES
from ..core.errors import ValidationError
from .scalar import ScalarCodec
from .similarity import as_vector
from .types import scalar_bytes_per_vector


def calculate_quantization_error(original, reconstructed) -> Dict[str, float]:
    """Mean absolute, max absolute and mean squared error between two vectors."""
    a = as_vector(original, name="original").astype(np.float64)
    b = as_vector(reconstructed, a.shape[0], name="reconstructed").astype(np.float64)
    if a.shape[0] == 0:
        return {"mean_error": 0.0, "max_error": 0.0, "mse": 0.0}

    errors = np.abs(a - b)
    return {
        "mean_error": float(errors.mean()),
        "max_error": float(errors.max()),
        "mse": float(np.mean(errors * errors)),
    }


def get_quantization_stats(vector, bits: int = 8) -> Dict[str, Any]:
    """Quantize one vector and report its range, reconstruction error and compression."""
    codec = ScalarCodec()
    v = as_vector(vector)
    quantized = codec.quantize(v, bits)
    reconstructed = codec.dequantize_row(quantized, 0)
    errors = calculate_quantization_error(v, reconstructed)

    dimension = v.shape[0]
    return {
        "min": float(v.min()) if dimension else 0.0,
        "max": float(v.max()) if dimension else 0.0,
        "mean_error": errors["mean_error"],
        "max_error": errors["max_error"],
        "mse": errors["mse"],
        "compression_ratio": calculate_compression_ratio(f"scalar-{bits}bit", dimension),
    }


def calculate_compression_ratio(quantization_type: str, dimension: int, num_subspaces: int = DEFAULT_NUM_SUBSPACES) -> float:
    """Raw float32 bytes per vector over quantized bytes per vector.

    Product rows store one byte per subspace plus a float32 norm.
    """
    if quantization_type not in QUANTIZATION_TYPES:
        raise ValidationError(f"unknown quantization type {quantization_type!r}")
    if dimension <= 0:
        return 1.0

    original_bytes = dimension * 4
    if quantization_type == "product":
        return original_bytes / (num_subspaces + 4)
    bits = 8 if quantization_type == "scalar-8bit" else 4
    return original_bytes / scalar_bytes_per_vector(dimension, bits)


def estimate_memory_savings(quantization_type: str, dimension: int, num_vectors: int,
                            num_subspaces: int = DEFAULT_NUM_SUBSPACES) -> Dict[str, Any]:
    original_bytes = dimension * 4 * num_vectors
    ratio = calculate_compression_ratio(quantization_type, dimension, num_subspaces)
    compressed_bytes = math.ceil(original_bytes / ratio)
    saved_bytes = original_bytes - compressed_bytes
    return {
        "original_bytes": original_bytes,
        "compressed_bytes": compressed_bytes,
        "saved_bytes": saved_bytes,
        "saved_percentage": (saved_bytes / original_bytes) * 100 if original_bytes else 0.0,
    }
