"""
Quantized vector store: ids, metadata and insertion order on top of one codec-specific index.
"""

import json
import logging
import math
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np

from ..core.config import DEFAULT_METRIC, EXPORT_FORMAT_VERSION
from ..core.errors import CapacityError, IntegrityError, NotTrainedError, ValidationError
from ..core.schema import ExportedStore, StoreConfig, parse_payload, resolve_config
from ..util.logging import logger
from .buffers import RowBuffer
from .index import IQuantizedIndex, IVectorStore
from .product import ProductCodec, ProductIndex
from .scalar import ScalarIndex
from .similarity import as_matrix, as_vector
from .types import QueryResult, StoreStats, VectorRecord

BatchItem = Union[VectorRecord, Tuple[Any, ...], Dict[str, Any]]

_INDEX_BUILDERS: Dict[str, Callable[[StoreConfig], IQuantizedIndex]] = {
    "scalar-8bit": lambda cfg: ScalarIndex(cfg.dimension, 8),
    "scalar-4bit": lambda cfg: ScalarIndex(cfg.dimension, 4),
    "product": lambda cfg: ProductIndex(
        ProductCodec(cfg.dimension, cfg.product_config), retain_vectors=cfg.retain_vectors
    ),
}


def build_index(config: StoreConfig) -> IQuantizedIndex:
    return _INDEX_BUILDERS[config.quantization_type](config)


class QuantizedVectorStore(IVectorStore):
    """Vector store that keeps only quantized rows and searches them directly.

    Rows live at dense positions inside the index. Removing a row moves the
    last row into its slot, so every per-position array here is swapped the
    same way. Each id also keeps the sequence number of its first insert,
    which orders results with equal distance.
    """

    def __init__(self, config: Union[StoreConfig, Dict[str, Any], None] = None, **overrides):
        self._apply_config(resolve_config(StoreConfig, config, **overrides))
        self._index = build_index(self.config)
        self._ids: List[str] = []
        self._positions: Dict[str, int] = {}
        self._metadata: List[Optional[Dict[str, Any]]] = []
        self._sequence = RowBuffer(1, np.int64)
        self._next_sequence = 0

    def _apply_config(self, config: StoreConfig) -> None:
        self.config = config
        self.dimension = config.dimension
        self.quantization_type = config.quantization_type
        self.metric = config.metric
        self.max_vectors = config.max_vectors

    # Training

    def train(self, vectors, workers: int = 1, progress=None) -> None:
        """Train the product codec. Existing rows are re-encoded when their vectors were retained."""
        self._index.train(vectors, workers=workers, progress=progress)
        logger.log_store_operation("train", {"quantization_type": self.quantization_type, "rows": len(self)})

    async def train_async(self, vectors, progress=None) -> None:
        await self._index.train_async(vectors, progress=progress)
        logger.log_store_operation("train", {"quantization_type": self.quantization_type, "rows": len(self)})

    def is_ready(self) -> bool:
        return self._index.is_ready()

    # Writes

    def insert(self, record_id: str, vector, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Add a vector, or replace the payload of an existing id in place."""
        self._check_id(record_id)
        v = as_vector(vector, self.dimension)
        metadata = self._check_metadata(metadata)
        self._require_ready()

        position = self._positions.get(record_id)
        if position is None:
            if len(self) >= self.max_vectors:
                raise CapacityError(f"store is full ({self.max_vectors} vectors)")
            self._index.append(v)
            self._register(record_id, metadata)
            operation = "insert"
        else:
            self._index.replace(position, v)
            self._metadata[position] = metadata
            operation = "replace"

        logger.log_vector_operation(operation, record_id, {"size": len(self)})

    def insert_batch(self, items: Iterable[BatchItem]) -> None:
        """Insert many vectors. The whole batch is validated before the store changes.

        Items may be VectorRecords, ``(id, vector[, metadata])`` tuples or
        dicts with ``id``, ``vector`` and optional ``metadata`` keys. An id may
        appear only once per batch.
        """
        records = [self._coerce_item(item) for item in items]
        if not records:
            return

        seen = set()
        for record_id, _, _ in records:
            self._check_id(record_id)
            if record_id in seen:
                raise ValidationError(f"duplicate id {record_id!r} in batch")
            seen.add(record_id)
        matrix = as_matrix([vector for _, vector, _ in records], self.dimension)
        metadata = [self._check_metadata(meta) for _, _, meta in records]
        self._require_ready()

        fresh = [i for i, (record_id, _, _) in enumerate(records) if record_id not in self._positions]
        if len(self) + len(fresh) > self.max_vectors:
            raise CapacityError(
                f"batch of {len(fresh)} new vectors exceeds store capacity "
                f"({len(self)}/{self.max_vectors})"
            )

        fresh_set = set(fresh)
        for i, (record_id, _, _) in enumerate(records):
            if i not in fresh_set:
                position = self._positions[record_id]
                self._index.replace(position, matrix[i])
                self._metadata[position] = metadata[i]

        if fresh:
            self._index.append_many(matrix[fresh])
            for i in fresh:
                self._register(records[i][0], metadata[i])

        logger.log_store_operation("insert_batch", {
            "inserted": len(fresh),
            "replaced": len(records) - len(fresh),
            "size": len(self),
        })

    def remove(self, record_id: str) -> bool:
        position = self._positions.pop(record_id, None)
        if position is None:
            return False

        last = len(self._ids) - 1
        self._index.swap_remove(position)
        self._sequence.swap_remove(position)
        if position != last:
            moved = self._ids[last]
            self._ids[position] = moved
            self._metadata[position] = self._metadata[last]
            self._positions[moved] = position
        self._ids.pop()
        self._metadata.pop()

        logger.log_vector_operation("remove", record_id, {"size": len(self)})
        return True

    def clear(self) -> None:
        self._index.clear()
        self._ids.clear()
        self._positions.clear()
        self._metadata.clear()
        self._sequence.clear()
        self._next_sequence = 0
        logger.log_store_operation("clear", {"quantization_type": self.quantization_type})

    def rebuild(self) -> None:
        """Re-derive deferred scalar ranges and codes now instead of on the next read."""
        if self._index.dirty:
            started = time.time()
            self._index.rebuild()
            logger.log_store_operation("rebuild", {
                "rows": len(self),
                "duration_ms": round((time.time() - started) * 1000, 2),
            })

    # Reads

    def search(self, query, k: int = 5, threshold: Optional[float] = None) -> List[QueryResult]:
        """Rank stored rows by distance to ``query``.

        Results are ordered by ascending distance, then by insertion order.
        Rows with similarity below ``threshold`` are dropped before the top
        ``k`` are taken.
        """
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
            raise ValidationError(f"k must be a positive integer, got {k!r}")
        if threshold is not None and not (isinstance(threshold, (int, float, np.integer, np.floating)) and math.isfinite(threshold)):
            raise ValidationError(f"threshold must be a finite number, got {threshold!r}")
        q = as_vector(query, self.dimension, "query")
        if not len(self):
            return []

        self.rebuild()
        distances, similarities = self._index.score(q, self.metric)

        candidates = np.arange(len(distances))
        if threshold is not None:
            candidates = np.flatnonzero(similarities >= threshold)
        candidate_distances = distances[candidates]

        if len(candidates) > k:
            # keep every row tied with the k-th distance so order falls back to insertion
            cutoff = np.partition(candidate_distances, k - 1)[k - 1]
            keep = candidate_distances <= cutoff
            candidates = candidates[keep]
            candidate_distances = candidate_distances[keep]

        sequence = self._sequence.rows[candidates, 0]
        order = np.lexsort((sequence, candidate_distances))[:k]

        results = []
        for position in candidates[order]:
            results.append(QueryResult(
                id=self._ids[position],
                distance=float(distances[position]),
                similarity=float(similarities[position]),
                metadata=self._metadata[position],
            ))

        logger.log_operation("store.search", "success", {
            "k": k,
            "candidates": int(len(distances)),
            "returned": len(results),
        }, level=logging.DEBUG)
        return results

    def get_vector(self, record_id: str) -> Optional[np.ndarray]:
        """Raw vector when retained, otherwise the codec reconstruction. None for unknown ids."""
        position = self._positions.get(record_id)
        if position is None:
            return None
        return self._index.decode(position)

    def get_metadata(self, record_id: str) -> Optional[Dict[str, Any]]:
        position = self._positions.get(record_id)
        if position is None:
            return None
        return self._metadata[position]

    def get_stats(self) -> StoreStats:
        count = len(self)
        bytes_per_vector = self._index.bytes_per_vector
        overhead = self._index.overhead_bytes
        return StoreStats(
            count=count,
            dimension=self.dimension,
            quantization_type=self.quantization_type,
            metric=self.metric,
            compression_ratio=(self.dimension * 4) / bytes_per_vector,
            bytes_per_vector=bytes_per_vector,
            memory_bytes=count * bytes_per_vector + overhead,
            overhead_bytes=overhead,
            raw_bytes=self._index.raw_bytes,
            trained=self._index.is_ready(),
            dirty=self._index.dirty,
            codec=self._index.stats(),
        )

    @property
    def size(self) -> int:
        return len(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, record_id) -> bool:
        return record_id in self._positions

    def ids(self) -> List[str]:
        """Stored ids in insertion order."""
        return [self._ids[position] for position in self._insertion_order()]

    # Persistence

    def export(self) -> str:
        """Serialize configuration, every row's codes and metadata, and the codec state to JSON."""
        self.rebuild()
        document = {
            "format_version": EXPORT_FORMAT_VERSION,
            "config": self.config.model_dump(),
            "vectors": [],
        }
        for position in self._insertion_order():
            entry = {"id": self._ids[position], "quantized": self._index.payload(position)}
            if self._metadata[position] is not None:
                entry["metadata"] = self._metadata[position]
            document["vectors"].append(entry)
        document.update(self._index.export_state())

        try:
            payload = json.dumps(document)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"store metadata is not JSON-serializable: {exc}") from exc

        logger.log_store_operation("export", {"rows": len(self), "bytes": len(payload)})
        return payload

    def import_json(self, payload: Union[str, bytes, Dict[str, Any]]) -> None:
        """Replace this store's contents with an exported store.

        The payload must describe a store of the same dimension and
        quantization type. Nothing changes unless the whole payload validates.
        """
        parsed = parse_payload(ExportedStore, payload, "store")
        cfg = parsed.config
        if (cfg.dimension, cfg.quantization_type) != (self.dimension, self.quantization_type):
            raise IntegrityError(
                f"payload is a {cfg.dimension}-dim {cfg.quantization_type} store, "
                f"expected {self.dimension}-dim {self.quantization_type}"
            )
        self._load(parsed)

    @classmethod
    def from_json(cls, payload: Union[str, bytes, Dict[str, Any]]) -> "QuantizedVectorStore":
        """Build a new store from an exported one."""
        parsed = parse_payload(ExportedStore, payload, "store")
        store = cls(parsed.config.model_dump())
        store._load(parsed)
        return store

    def _load(self, parsed: ExportedStore) -> None:
        cfg = resolve_config(StoreConfig, parsed.config.model_dump())
        index = build_index(cfg)
        index.load(
            {"ranges": parsed.ranges, "codebooks": parsed.codebooks},
            [entry.quantized for entry in parsed.vectors],
        )

        self._apply_config(cfg)
        self._index = index
        self._ids = [entry.id for entry in parsed.vectors]
        self._positions = {record_id: position for position, record_id in enumerate(self._ids)}
        self._metadata = [entry.metadata for entry in parsed.vectors]
        self._sequence.reset(np.arange(len(self._ids), dtype=np.int64).reshape(-1, 1))
        self._next_sequence = len(self._ids)

        logger.log_store_operation("import", {
            "rows": len(self),
            "quantization_type": self.quantization_type,
            "trained": self._index.is_ready(),
        })

    # Helpers

    def _register(self, record_id: str, metadata: Optional[Dict[str, Any]]) -> None:
        self._positions[record_id] = len(self._ids)
        self._ids.append(record_id)
        self._metadata.append(metadata)
        self._sequence.append(self._next_sequence)
        self._next_sequence += 1

    def _insertion_order(self) -> np.ndarray:
        return np.argsort(self._sequence.rows[:, 0], kind="stable")

    def _require_ready(self) -> None:
        if not self._index.is_ready():
            raise NotTrainedError(f"{self.quantization_type} store must be trained before inserts")

    @staticmethod
    def _check_id(record_id) -> None:
        if not isinstance(record_id, str) or not record_id:
            raise ValidationError(f"record id must be a non-empty string, got {record_id!r}")

    @staticmethod
    def _check_metadata(metadata) -> Optional[Dict[str, Any]]:
        if metadata is None:
            return None
        if not isinstance(metadata, dict):
            raise ValidationError(f"metadata must be a dict, got {type(metadata).__name__}")
        return dict(metadata)

    @staticmethod
    def _coerce_item(item: BatchItem) -> Tuple[Any, Any, Any]:
        if isinstance(item, VectorRecord):
            return item.id, item.vector, item.metadata
        if isinstance(item, dict):
            if "id" not in item or "vector" not in item:
                raise ValidationError("batch dict items need 'id' and 'vector' keys")
            return item["id"], item["vector"], item.get("metadata")
        if isinstance(item, (tuple, list)) and len(item) in (2, 3):
            return item[0], item[1], item[2] if len(item) == 3 else None
        raise ValidationError(f"unsupported batch item of type {type(item).__name__}")


def create_scalar8bit_store(dimension: int, metric: str = DEFAULT_METRIC, **options) -> QuantizedVectorStore:
    """Store with 8-bit scalar quantization (about 4x smaller than float32)."""
    return QuantizedVectorStore(dimension=dimension, quantization_type="scalar-8bit", metric=metric, **options)


def create_scalar4bit_store(dimension: int, metric: str = DEFAULT_METRIC, **options) -> QuantizedVectorStore:
    """Store with 4-bit scalar quantization (about 8x smaller than float32)."""
    return QuantizedVectorStore(dimension=dimension, quantization_type="scalar-4bit", metric=metric, **options)


def create_product_quantized_store(dimension: int, num_subspaces: int = 8, num_centroids: int = 256,
                                   metric: str = DEFAULT_METRIC, **options) -> QuantizedVectorStore:
    """Store with product quantization. Call ``train`` before inserting.

    Keyword options that name ProductConfig fields (``max_iterations``,
    ``convergence_threshold``, ``seed``, ``yield_every``) go to the codec;
    the rest go to StoreConfig.
    """
    product_fields = {"max_iterations", "convergence_threshold", "seed", "yield_every"}
    product_config = {"num_subspaces": num_subspaces, "num_centroids": num_centroids}
    for name in product_fields & set(options):
        product_config[name] = options.pop(name)
    return QuantizedVectorStore(
        dimension=dimension,
        quantization_type="product",
        metric=metric,
        product_config=product_config,
        **options,
    )
