"""
Records passed across the quantized vector layer.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np


@dataclass
class VectorRecord:
    """Represents a vector record with metadata."""

    id: str
    """Unique identifier for the vector record"""

    vector: np.ndarray
    """Full-precision float32 embedding"""

    metadata: Optional[Dict[str, Any]] = None
    """Opaque caller metadata stored alongside the quantized payload"""


@dataclass
class QueryResult:
    """Represents a search result from a quantized store."""

    id: str
    """Identifier for the matching record"""

    distance: float
    """Metric distance to the query, lower is closer"""

    similarity: float
    """Metric similarity to the query, higher is closer"""

    metadata: Optional[Dict[str, Any]] = None
    """Metadata associated with the matched record"""


@dataclass
class ScalarQuantized:
    """Scalar-quantized rows sharing per-dimension ranges.

    ``data`` has shape ``(count, bytes_per_vector)``. 8-bit rows hold one code
    per byte; 4-bit rows hold two, even index in the high nibble.
    """

    data: np.ndarray
    mins: np.ndarray
    maxs: np.ndarray
    dimension: int
    bits: int

    @property
    def count(self) -> int:
        return int(self.data.shape[0])

    @property
    def max_value(self) -> int:
        return 255 if self.bits == 8 else 15

    @property
    def bytes_per_vector(self) -> int:
        return scalar_bytes_per_vector(self.dimension, self.bits)


@dataclass
class ProductEncoded:
    """One product-quantized vector: a centroid index per subspace plus the original norm."""

    codes: np.ndarray
    norm: float


@dataclass
class StoreStats:
    """Snapshot of a quantized store's size and footprint."""

    count: int
    dimension: int
    quantization_type: str
    metric: str
    compression_ratio: float
    bytes_per_vector: int
    memory_bytes: int
    overhead_bytes: int
    raw_bytes: int
    trained: bool
    dirty: bool = False
    codec: Dict[str, Any] = field(default_factory=dict)


def scalar_bytes_per_vector(dimension: int, bits: int) -> int:
    """Packed length of one scalar row: ``dimension`` (8-bit) or ``ceil(dimension / 2)`` (4-bit)."""
    return dimension if bits == 8 else (dimension + 1) // 2
