"""
Abstract interfaces of the quantized vector layer.

IVectorStore is what callers program against; IQuantizedIndex is the
per-codec row storage a store composes, so the store never switches on the
quantization type.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np

from ..core.errors import ValidationError
from .types import QueryResult, VectorRecord


class IVectorStore(ABC):
    """Abstract interface for vector storage operations."""

    @abstractmethod
    def insert(self, record_id: str, vector, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Add or replace a single vector."""
        pass

    @abstractmethod
    def insert_batch(self, items: Iterable[VectorRecord]) -> None:
        """Add or replace multiple vectors."""
        pass

    @abstractmethod
    def search(self, query, k: int = 5, threshold: Optional[float] = None) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        pass

    @abstractmethod
    def remove(self, record_id: str) -> bool:
        """Delete a vector by ID. Returns False when the ID is absent."""
        pass

    @abstractmethod
    def get_vector(self, record_id: str) -> Optional[np.ndarray]:
        """Best available reconstruction of a stored vector."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Clear all records from the store."""
        pass


class IQuantizedIndex(ABC):
    """Codec-specific row storage: encode on write, decode and score on read.

    Rows are addressed by position. Positions are dense; ``swap_remove`` moves
    the last row into the vacated slot so removal stays O(1).
    """

    quantization_type: str = ""

    @abstractmethod
    def __len__(self) -> int:
        pass

    @abstractmethod
    def is_ready(self) -> bool:
        """Whether rows can be encoded."""
        pass

    @abstractmethod
    def append(self, vector: np.ndarray) -> None:
        pass

    @abstractmethod
    def append_many(self, vectors: np.ndarray) -> None:
        """Append a batch of rows. Implementations may defer encoding."""
        pass

    @abstractmethod
    def replace(self, position: int, vector: np.ndarray) -> None:
        pass

    @abstractmethod
    def swap_remove(self, position: int) -> None:
        pass

    @abstractmethod
    def decode(self, position: int) -> np.ndarray:
        """Best available reconstruction of one row."""
        pass

    @abstractmethod
    def score(self, query: np.ndarray, metric: str) -> Tuple[np.ndarray, np.ndarray]:
        """(distance, similarity) of ``query`` against every row, by position."""
        pass

    @abstractmethod
    def payload(self, position: int) -> Dict[str, Any]:
        """JSON-ready per-row payload for export."""
        pass

    @abstractmethod
    def export_state(self) -> Dict[str, Any]:
        """JSON-ready codec-level state (ranges, codebooks) for export."""
        pass

    @abstractmethod
    def load(self, state: Dict[str, Any], payloads: List[Any]) -> None:
        """Replace every row from validated export data."""
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    @property
    @abstractmethod
    def bytes_per_vector(self) -> int:
        pass

    @property
    @abstractmethod
    def overhead_bytes(self) -> int:
        """Memory shared by all rows (ranges, codebooks)."""
        pass

    @property
    def raw_bytes(self) -> int:
        """Memory held by retained full-precision rows."""
        return 0

    @property
    def dirty(self) -> bool:
        return False

    def train(self, vectors, workers: int = 1, progress=None) -> None:
        """Fit codec state from sample vectors. Only trainable codecs override this."""
        raise ValidationError(f"{self.quantization_type} quantization does not use training")

    async def train_async(self, vectors, progress=None) -> None:
        raise ValidationError(f"{self.quantization_type} quantization does not use training")

    def rebuild(self) -> None:
        """Bring deferred encodings up to date."""
        pass

    def stats(self) -> Dict[str, Any]:
        return {}
