"""
Scalar quantization: per-dimension linear mapping of float32 values onto 8-bit or 4-bit codes.

Bit layout for 4-bit rows: value ``2i`` sits in the high nibble of byte ``i``,
value ``2i + 1`` in its low nibble. An odd dimension leaves the final low
nibble as 0.
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from ..core.config import SEARCH_CHUNK_ROWS
from ..core.errors import IntegrityError, ValidationError
from ..util.logging import logger
from .buffers import RowBuffer
from .index import IQuantizedIndex
from .similarity import as_matrix, as_vector, score_rows
from .types import ScalarQuantized, scalar_bytes_per_vector


def max_code(bits: int) -> int:
    if bits == 8:
        return 255
    if bits == 4:
        return 15
    raise ValidationError(f"bits must be 4 or 8, got {bits}")


def pack_nibbles(codes: np.ndarray) -> np.ndarray:
    """Pack 4-bit codes along the last axis, two per byte (even index high)."""
    codes = np.asarray(codes, dtype=np.uint8)
    if codes.shape[-1] % 2:
        pad = np.zeros(codes.shape[:-1] + (1,), dtype=np.uint8)
        codes = np.concatenate([codes, pad], axis=-1)
    return ((codes[..., 0::2] & 0x0F) << 4) | (codes[..., 1::2] & 0x0F)


def unpack_nibbles(packed: np.ndarray, dimension: int) -> np.ndarray:
    """Inverse of pack_nibbles, trimmed to ``dimension`` values along the last axis."""
    packed = np.asarray(packed, dtype=np.uint8)
    if packed.shape[-1] != scalar_bytes_per_vector(dimension, 4):
        raise ValidationError(
            f"packed length {packed.shape[-1]} does not hold {dimension} 4-bit values"
        )
    codes = np.empty(packed.shape[:-1] + (packed.shape[-1] * 2,), dtype=np.uint8)
    codes[..., 0::2] = packed >> 4
    codes[..., 1::2] = packed & 0x0F
    return codes[..., :dimension]


class ScalarCodec:
    """Stateless 8-bit / 4-bit linear quantizer.

    ``quantize`` accepts one vector or a batch. A batch gets per-dimension
    ranges over its rows. A single vector has no spread along any dimension,
    so its own min/max is used for every dimension.
    """

    def quantize(self, vectors, bits: int = 8) -> ScalarQuantized:
        max_code(bits)
        try:
            ndim = np.ndim(vectors)
        except ValueError as exc:
            raise ValidationError("vectors must be equal-length sequences of numbers") from exc
        if ndim == 1:
            vector = as_vector(vectors)
            dimension = vector.shape[0]
            if dimension == 0:
                return self._empty(bits)
            mins = np.full(dimension, vector.min(), dtype=np.float32)
            maxs = np.full(dimension, vector.max(), dtype=np.float32)
            matrix = vector.reshape(1, -1)
        else:
            matrix = as_matrix(vectors)
            if matrix.shape[0] == 0:
                raise ValidationError("cannot quantize an empty batch")
            dimension = matrix.shape[1]
            if dimension == 0:
                return self._empty(bits, count=matrix.shape[0])
            mins = matrix.min(axis=0)
            maxs = matrix.max(axis=0)

        data = self.encode_rows(matrix, mins, maxs, bits)
        return ScalarQuantized(data=data, mins=mins, maxs=maxs, dimension=dimension, bits=bits)

    def encode_rows(self, matrix: np.ndarray, mins: np.ndarray, maxs: np.ndarray, bits: int) -> np.ndarray:
        """Quantize rows against fixed ranges. Out-of-range values clamp to the nearest code."""
        top = max_code(bits)
        spread = maxs.astype(np.float64) - mins.astype(np.float64)
        scales = np.zeros_like(spread)
        np.divide(top, spread, out=scales, where=spread > 0)

        scaled = (matrix.astype(np.float64) - mins) * scales
        codes = np.clip(np.floor(scaled + 0.5), 0, top).astype(np.uint8)
        if bits == 4:
            return pack_nibbles(codes)
        return codes

    def codes(self, quantized: ScalarQuantized, rows: slice = slice(None)) -> np.ndarray:
        """Unpacked integer codes for a slice of rows, shape ``(n, dimension)``."""
        self.validate(quantized)
        data = quantized.data[rows]
        if quantized.bits == 4:
            return unpack_nibbles(data, quantized.dimension)
        return data

    def dequantize(self, quantized: ScalarQuantized) -> np.ndarray:
        """Reconstruct every row, shape ``(count, dimension)``."""
        codes = self.codes(quantized)
        step = self._step(quantized)
        return (codes * step + quantized.mins.astype(np.float64)).astype(np.float32)

    def dequantize_row(self, quantized: ScalarQuantized, index: int) -> np.ndarray:
        self._check_index(quantized, index)
        codes = self.codes(quantized, slice(index, index + 1))[0]
        step = self._step(quantized)
        return (codes * step + quantized.mins.astype(np.float64)).astype(np.float32)

    def compute_distance(self, quantized: ScalarQuantized, index: int, query) -> float:
        """Squared L2 between a full-precision query and row ``index``.

        Only the codes of that row are unpacked; the rest of the buffer is not
        touched and no reconstructed batch is built.
        """
        self._check_index(quantized, index)
        q = as_vector(query, quantized.dimension, "query")
        if quantized.dimension == 0:
            return 0.0

        codes = self.codes(quantized, slice(index, index + 1))[0]
        step = self._step(quantized)
        diff = codes * step + (quantized.mins.astype(np.float64) - q)
        return float(np.dot(diff, diff))

    def validate(self, quantized: ScalarQuantized) -> None:
        max_code(quantized.bits)
        dimension = quantized.dimension
        if len(quantized.mins) != dimension or len(quantized.maxs) != dimension:
            raise ValidationError(
                f"mins/maxs length ({len(quantized.mins)}/{len(quantized.maxs)}) "
                f"does not match dimension {dimension}"
            )
        data = quantized.data
        if data.ndim != 2 or data.dtype != np.uint8:
            raise ValidationError("quantized data must be a 2-D uint8 array")
        expected = scalar_bytes_per_vector(dimension, quantized.bits)
        if data.shape[1] != expected:
            raise ValidationError(
                f"quantized row length {data.shape[1]} does not match expected {expected}"
            )

    def _step(self, quantized: ScalarQuantized) -> np.ndarray:
        spread = quantized.maxs.astype(np.float64) - quantized.mins.astype(np.float64)
        return spread / quantized.max_value

    def _check_index(self, quantized: ScalarQuantized, index: int) -> None:
        self.validate(quantized)
        if not 0 <= index < quantized.count:
            raise ValidationError(f"row {index} out of range for {quantized.count} rows")

    @staticmethod
    def _empty(bits: int, count: int = 1) -> ScalarQuantized:
        return ScalarQuantized(
            data=np.zeros((count, 0), dtype=np.uint8),
            mins=np.zeros(0, dtype=np.float32),
            maxs=np.zeros(0, dtype=np.float32),
            dimension=0,
            bits=bits,
        )


def quantize8bit(vector) -> ScalarQuantized:
    return ScalarCodec().quantize(vector, 8)


def quantize4bit(vector) -> ScalarQuantized:
    return ScalarCodec().quantize(vector, 4)


def _dequantize_single(quantized: ScalarQuantized, bits: int) -> np.ndarray:
    if quantized.bits != bits:
        raise ValidationError(f"expected a {bits}-bit payload, got {quantized.bits}-bit")
    if quantized.count != 1:
        raise ValidationError(f"expected a single quantized vector, got {quantized.count}")
    return ScalarCodec().dequantize_row(quantized, 0)


def dequantize8bit(quantized: ScalarQuantized) -> np.ndarray:
    """Reconstruct a vector produced by quantize8bit."""
    return _dequantize_single(quantized, 8)


def dequantize4bit(quantized: ScalarQuantized) -> np.ndarray:
    """Reconstruct a vector produced by quantize4bit."""
    return _dequantize_single(quantized, 4)


class ScalarIndex(IQuantizedIndex):
    """Scalar-quantized rows for a store, with per-dimension ranges over all rows.

    Full-precision rows are kept as the source for range rebuilds. A row that
    falls inside the current ranges is encoded on write; anything else marks
    the index dirty and the next read re-derives ranges and codes for every row.
    """

    def __init__(self, dimension: int, bits: int, chunk_rows: int = SEARCH_CHUNK_ROWS):
        max_code(bits)
        self.dimension = dimension
        self.bits = bits
        self.quantization_type = f"scalar-{bits}bit"
        self.chunk_rows = max(1, chunk_rows)
        self._codec = ScalarCodec()
        self._raw = RowBuffer(dimension, np.float32)
        self._codes = RowBuffer(scalar_bytes_per_vector(dimension, bits), np.uint8)
        self._mins: Optional[np.ndarray] = None
        self._maxs: Optional[np.ndarray] = None
        self._dirty = False

    def __len__(self) -> int:
        return len(self._raw)

    def is_ready(self) -> bool:
        return True

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def bytes_per_vector(self) -> int:
        return scalar_bytes_per_vector(self.dimension, self.bits)

    @property
    def overhead_bytes(self) -> int:
        # one float32 min and max per dimension
        return 2 * self.dimension * 4 if len(self) else 0

    @property
    def raw_bytes(self) -> int:
        return self._raw.nbytes

    def quantized(self) -> ScalarQuantized:
        """Current rows as a ScalarQuantized payload."""
        self.rebuild()
        mins = self._mins if self._mins is not None else np.zeros(self.dimension, dtype=np.float32)
        maxs = self._maxs if self._maxs is not None else np.zeros(self.dimension, dtype=np.float32)
        return ScalarQuantized(
            data=self._codes.rows, mins=mins, maxs=maxs, dimension=self.dimension, bits=self.bits
        )

    def append(self, vector: np.ndarray) -> None:
        self._raw.append(vector)
        if self._fits(vector):
            self._codes.append(self._encode(vector))
        else:
            self._dirty = True

    def append_many(self, vectors: np.ndarray) -> None:
        self._raw.extend(vectors)
        self._dirty = True

    def replace(self, position: int, vector: np.ndarray) -> None:
        self._raw.set(position, vector)
        if self._fits(vector):
            self._codes.set(position, self._encode(vector))
        else:
            self._dirty = True

    def swap_remove(self, position: int) -> None:
        self._raw.swap_remove(position)
        if not self._dirty:
            self._codes.swap_remove(position)

    def rebuild(self) -> None:
        if not self._dirty:
            return
        count = len(self._raw)
        if count == 0:
            self._mins = self._maxs = None
            self._codes.clear()
        else:
            quantized = self._codec.quantize(self._raw.rows, self.bits)
            self._mins, self._maxs = quantized.mins, quantized.maxs
            self._codes.reset(quantized.data)
        self._dirty = False
        logger.debug(f"Rebuilt {self.quantization_type} index over {count} rows")

    def decode(self, position: int) -> np.ndarray:
        return self._raw.row(position).copy()

    def score(self, query: np.ndarray, metric: str) -> Tuple[np.ndarray, np.ndarray]:
        self.rebuild()
        count = len(self)
        if count == 0:
            return np.zeros(0), np.zeros(0)

        # r = c * step + mins, so every term reduces to products on the codes
        q = query.astype(np.float64)
        step = (self._maxs.astype(np.float64) - self._mins.astype(np.float64)) / max_code(self.bits)
        mins = self._mins.astype(np.float64)
        step_q = step * q
        step_sq = step * step
        step_mins = step * mins
        mins_dot_q = float(np.dot(mins, q))
        mins_sq = float(np.dot(mins, mins))

        dots = np.empty(count)
        row_sq_norms = np.empty(count)
        for start in range(0, count, self.chunk_rows):
            stop = min(start + self.chunk_rows, count)
            codes = self._chunk_codes(start, stop).astype(np.float64)
            dots[start:stop] = codes @ step_q + mins_dot_q
            row_sq_norms[start:stop] = (codes * codes) @ step_sq + 2.0 * (codes @ step_mins) + mins_sq

        return score_rows(metric, dots, row_sq_norms, float(np.dot(q, q)))

    def payload(self, position: int) -> Dict[str, Any]:
        self.rebuild()
        return {"codes": self._codes.row(position).tolist()}

    def export_state(self) -> Dict[str, Any]:
        self.rebuild()
        if self._mins is None:
            return {}
        return {
            "ranges": {
                "bits": self.bits,
                "mins": self._mins.tolist(),
                "maxs": self._maxs.tolist(),
            }
        }

    def load(self, state: Dict[str, Any], payloads: List[Any]) -> None:
        if state.get("codebooks") is not None:
            raise IntegrityError("scalar store payload must not carry codebooks")
        ranges = state.get("ranges")
        if not payloads:
            self.clear()
            return
        if ranges is None:
            raise IntegrityError("scalar store payload with entries must carry ranges")
        if ranges.bits != self.bits:
            raise IntegrityError(f"ranges are {ranges.bits}-bit, store is {self.bits}-bit")
        if len(ranges.mins) != self.dimension:
            raise IntegrityError(
                f"ranges cover {len(ranges.mins)} dimensions, store has {self.dimension}"
            )

        width = self.bytes_per_vector
        for position, payload in enumerate(payloads):
            if payload.norm is not None:
                raise IntegrityError(f"entry {position}: scalar payload must not carry a norm")
            if len(payload.codes) != width:
                raise IntegrityError(
                    f"entry {position}: expected {width} code bytes, got {len(payload.codes)}"
                )
            if self.bits == 4 and self.dimension % 2 and payload.codes[-1] & 0x0F:
                raise IntegrityError(f"entry {position}: padding nibble must be 0")

        mins = np.asarray(ranges.mins, dtype=np.float32)
        maxs = np.asarray(ranges.maxs, dtype=np.float32)
        if not (np.all(np.isfinite(mins)) and np.all(np.isfinite(maxs))):
            raise IntegrityError("ranges overflow float32")
        data = np.asarray([payload.codes for payload in payloads], dtype=np.uint8).reshape(len(payloads), width)
        quantized = ScalarQuantized(data=data, mins=mins, maxs=maxs, dimension=self.dimension, bits=self.bits)

        # Reconstructions stand in for the full-precision rows that were not exported
        self._raw.reset(self._codec.dequantize(quantized))
        self._codes.reset(data)
        self._mins, self._maxs = mins, maxs
        self._dirty = False

    def clear(self) -> None:
        self._raw.clear()
        self._codes.clear()
        self._mins = self._maxs = None
        self._dirty = False

    def stats(self) -> Dict[str, Any]:
        return {"bits": self.bits, "ranges_set": self._mins is not None}

    def _chunk_codes(self, start: int, stop: int) -> np.ndarray:
        data = self._codes.rows[start:stop]
        if self.bits == 4:
            return unpack_nibbles(data, self.dimension)
        return data

    def _fits(self, vector: np.ndarray) -> bool:
        if self._dirty or self._mins is None:
            return False
        return bool(np.all(vector >= self._mins) and np.all(vector <= self._maxs))

    def _encode(self, vector: np.ndarray) -> np.ndarray:
        return self._codec.encode_rows(vector.reshape(1, -1), self._mins, self._maxs, self.bits)[0]
