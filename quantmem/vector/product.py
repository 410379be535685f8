"""
Product quantization: split vectors into equal subspaces and encode each
subvector as the index of its nearest trained centroid.

Codebooks are held as one float32 array of shape
``(num_subspaces, num_centroids, subspace_dim)``.
"""

import asyncio
import json
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np

from ..core.config import MAX_TRAINING_VECTORS, MAX_VECTOR_DIMENSION, SEARCH_CHUNK_ROWS
from ..core.errors import IntegrityError, NotTrainedError, ValidationError
from ..core.schema import ExportedCodebook, ProductConfig, parse_payload, resolve_config
from ..util.logging import logger
from .buffers import RowBuffer
from .index import IQuantizedIndex
from .kmeans import KMeansResult, KMeansStep, assign, kmeans_steps, result_from_step
from .similarity import as_matrix, as_vector, score_rows, squared_l2
from .types import ProductEncoded

ProgressCallback = Callable[[int, KMeansStep], None]
Codes = Union[ProductEncoded, np.ndarray, List[int]]


class ProductCodec:
    """Trainable product quantizer.

    Untrained until ``train`` or ``import_codebook`` succeeds; every encode,
    decode and distance call before that raises NotTrainedError.
    """

    def __init__(self, dimension: int, config: Optional[ProductConfig] = None, **overrides):
        if not 1 <= dimension <= MAX_VECTOR_DIMENSION:
            raise ValidationError(f"dimension must be between 1 and {MAX_VECTOR_DIMENSION}, got {dimension}")
        self.config = resolve_config(ProductConfig, config, **overrides)
        if dimension % self.config.num_subspaces != 0:
            raise ValidationError(
                f"dimension ({dimension}) must be divisible by num_subspaces ({self.config.num_subspaces})"
            )

        self.dimension = dimension
        self.num_subspaces = self.config.num_subspaces
        self.num_centroids = self.config.num_centroids
        self.subspace_dim = dimension // self.num_subspaces
        self.codebooks: Optional[np.ndarray] = None
        self._centroid_sq_norms: Optional[np.ndarray] = None

    def is_trained(self) -> bool:
        return self.codebooks is not None

    # Training

    def train(self, vectors, workers: int = 1, progress: Optional[ProgressCallback] = None) -> None:
        """Learn one codebook per subspace.

        Every subspace draws from its own generator spawned from the configured
        seed, so the result does not depend on ``workers``. With ``workers > 1``
        subspaces train on a thread pool and ``progress`` may be called from
        those threads.
        """
        matrix = self._training_matrix(vectors)
        rngs = self._subspace_rngs()
        start_time = time.time()

        def run(subspace: int) -> KMeansResult:
            step = None
            for step in self._steps(matrix, subspace, rngs[subspace]):
                if progress is not None and step.iteration % self.config.yield_every == 0:
                    progress(subspace, step)
            return result_from_step(step)

        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(run, range(self.num_subspaces)))
        else:
            results = [run(subspace) for subspace in range(self.num_subspaces)]

        self._install(results, len(matrix), start_time)

    async def train_async(self, vectors, progress: Optional[ProgressCallback] = None) -> None:
        """Same codebooks as ``train``, yielding to the event loop every ``yield_every`` iterations."""
        matrix = self._training_matrix(vectors)
        rngs = self._subspace_rngs()
        start_time = time.time()

        results = []
        for subspace in range(self.num_subspaces):
            step = None
            for step in self._steps(matrix, subspace, rngs[subspace]):
                if step.iteration % self.config.yield_every == 0:
                    if progress is not None:
                        progress(subspace, step)
                    await asyncio.sleep(0)
            results.append(result_from_step(step))

        self._install(results, len(matrix), start_time)

    def _training_matrix(self, vectors) -> np.ndarray:
        matrix = as_matrix(vectors, self.dimension, "training vectors")
        count = matrix.shape[0]
        if count < self.num_centroids:
            raise ValidationError(
                f"need at least {self.num_centroids} training vectors, got {count}"
            )
        if count > MAX_TRAINING_VECTORS:
            raise ValidationError(
                f"at most {MAX_TRAINING_VECTORS} training vectors are accepted, got {count}"
            )
        return matrix

    def _subspace_rngs(self) -> List[np.random.Generator]:
        children = np.random.SeedSequence(self.config.seed).spawn(self.num_subspaces)
        return [np.random.default_rng(child) for child in children]

    def _steps(self, matrix: np.ndarray, subspace: int, rng: np.random.Generator):
        points = matrix[:, self._span(subspace)]
        return kmeans_steps(
            points,
            self.num_centroids,
            rng,
            self.config.max_iterations,
            self.config.convergence_threshold,
        )

    def _install(self, results: List[KMeansResult], count: int, start_time: float) -> None:
        self._set_codebooks(np.stack([result.centroids for result in results]))
        logger.log_training_run("product", start_time, time.time(), details={
            "vectors": count,
            "num_subspaces": self.num_subspaces,
            "num_centroids": self.num_centroids,
            "iterations": max(result.iterations for result in results),
            "converged_subspaces": sum(1 for result in results if result.converged),
            "inertia": round(sum(result.inertia for result in results), 6),
        })

    def _set_codebooks(self, codebooks: np.ndarray) -> None:
        self.codebooks = codebooks.astype(np.float32)
        wide = self.codebooks.astype(np.float64)
        self._centroid_sq_norms = np.einsum("mkd,mkd->mk", wide, wide)

    # Encoding

    def encode(self, vector) -> ProductEncoded:
        self._require_trained()
        v = as_vector(vector, self.dimension)
        codes, norms = self.encode_batch(v.reshape(1, -1))
        return ProductEncoded(codes=codes[0], norm=float(norms[0]))

    def encode_batch(self, vectors) -> Tuple[np.ndarray, np.ndarray]:
        """Codes ``(n, num_subspaces)`` uint8 and original L2 norms ``(n,)`` float32."""
        self._require_trained()
        matrix = as_matrix(vectors, self.dimension)
        codes = np.empty((matrix.shape[0], self.num_subspaces), dtype=np.uint8)
        for subspace in range(self.num_subspaces):
            labels, _ = assign(matrix[:, self._span(subspace)], self.codebooks[subspace])
            codes[:, subspace] = labels
        norms = np.linalg.norm(matrix.astype(np.float64), axis=1).astype(np.float32)
        return codes, norms

    def decode(self, encoded: Codes) -> np.ndarray:
        """Concatenate the assigned centroids of one encoded vector."""
        self._require_trained()
        return self.decode_batch(self._codes_row(encoded))[0]

    def decode_batch(self, codes) -> np.ndarray:
        self._require_trained()
        codes = self._check_codes(codes)
        centroids = self.codebooks[np.arange(self.num_subspaces), codes]
        return centroids.reshape(codes.shape[0], self.dimension)

    # Distances

    def asymmetric_distance(self, query, encoded: Codes) -> float:
        """Squared L2 between a full-precision query and an encoded vector, summed per subspace."""
        self._require_trained()
        q = as_vector(query, self.dimension, "query").astype(np.float64)
        codes = self._codes_row(encoded)[0]
        centroids = self.codebooks[np.arange(self.num_subspaces), codes]
        return squared_l2(q, centroids.reshape(-1))

    def precompute_distance_tables(self, query) -> np.ndarray:
        """``table[m][k]`` = squared L2 between subvector ``m`` of ``query`` and centroid ``k``."""
        self._require_trained()
        q = self._query_subvectors(query)
        diff = self.codebooks.astype(np.float64) - q[:, None, :]
        return np.einsum("mkd,mkd->mk", diff, diff)

    def precompute_inner_product_tables(self, query) -> np.ndarray:
        """``table[m][k]`` = dot product of subvector ``m`` of ``query`` with centroid ``k``."""
        self._require_trained()
        q = self._query_subvectors(query)
        return np.einsum("mkd,md->mk", self.codebooks.astype(np.float64), q)

    def centroid_norm_tables(self) -> np.ndarray:
        """Squared norm of every centroid, shape ``(num_subspaces, num_centroids)``."""
        self._require_trained()
        return self._centroid_sq_norms

    def distance_from_tables(self, tables: np.ndarray, encoded: Codes) -> float:
        return float(self.distances_from_tables(tables, self._codes_row(encoded))[0])

    def distances_from_tables(self, tables: np.ndarray, codes) -> np.ndarray:
        """Sum ``tables[m][codes[:, m]]`` over subspaces for every row of ``codes``."""
        tables = np.asarray(tables)
        if tables.shape != (self.num_subspaces, self.num_centroids):
            raise ValidationError(
                f"tables must have shape {(self.num_subspaces, self.num_centroids)}, got {tables.shape}"
            )
        codes = self._check_codes(codes)
        return tables[np.arange(self.num_subspaces), codes].sum(axis=1)

    # Introspection and persistence

    def compression_ratio(self) -> float:
        """Raw float32 bytes over code bytes plus the stored float32 norm."""
        return self.dimension * 4 / (self.num_subspaces + 4)

    def codebook_bytes(self) -> int:
        return self.num_subspaces * self.num_centroids * self.subspace_dim * 4

    def get_stats(self) -> Dict[str, Any]:
        return {
            "trained": self.is_trained(),
            "dimension": self.dimension,
            "num_subspaces": self.num_subspaces,
            "subspace_dim": self.subspace_dim,
            "num_centroids": self.num_centroids,
            "compression_ratio": self.compression_ratio(),
            "codebook_bytes": self.codebook_bytes() if self.is_trained() else 0,
        }

    def codebook_state(self) -> Dict[str, Any]:
        """JSON-ready codebook document, the object form of ``export_codebook``."""
        self._require_trained()
        settings = self.config.model_dump()
        settings["dimension"] = self.dimension
        return {"config": settings, "codebooks": self.codebooks.tolist()}

    def export_codebook(self) -> str:
        return json.dumps(self.codebook_state())

    def import_codebook(self, payload: Union[str, bytes, Dict[str, Any], ExportedCodebook]) -> None:
        """Replace the codebooks with a previously exported set.

        The payload is checked against the schema and against this codec's
        dimension, subspace and centroid counts before any array is built.
        Raises IntegrityError when it does not match.
        """
        if not isinstance(payload, ExportedCodebook):
            payload = parse_payload(ExportedCodebook, payload, "codebook")
        self.load_codebook(payload)
        logger.log_operation("codebook.import", "success", {
            "dimension": self.dimension,
            "num_subspaces": self.num_subspaces,
            "num_centroids": self.num_centroids,
        })

    def load_codebook(self, parsed: ExportedCodebook) -> None:
        cfg = parsed.config
        expected = (self.dimension, self.num_subspaces, self.num_centroids)
        actual = (cfg.dimension, cfg.num_subspaces, cfg.num_centroids)
        if actual != expected:
            raise IntegrityError(
                f"codebook shape (dimension, num_subspaces, num_centroids)={actual} "
                f"does not match codec {expected}"
            )
        codebooks = np.asarray(parsed.codebooks, dtype=np.float32)
        if not np.all(np.isfinite(codebooks)):
            raise IntegrityError("codebook values overflow float32")
        self._set_codebooks(codebooks.reshape(self.num_subspaces, self.num_centroids, self.subspace_dim))

    # Helpers

    def _span(self, subspace: int) -> slice:
        return slice(subspace * self.subspace_dim, (subspace + 1) * self.subspace_dim)

    def _require_trained(self) -> None:
        if self.codebooks is None:
            raise NotTrainedError("product codec must be trained or loaded before use")

    def _query_subvectors(self, query) -> np.ndarray:
        q = as_vector(query, self.dimension, "query").astype(np.float64)
        return q.reshape(self.num_subspaces, self.subspace_dim)

    def _codes_row(self, encoded: Codes) -> np.ndarray:
        codes = encoded.codes if isinstance(encoded, ProductEncoded) else encoded
        return self._check_codes(np.asarray(codes).reshape(1, -1))

    def _check_codes(self, codes) -> np.ndarray:
        codes = np.asarray(codes)
        if codes.ndim == 1:
            codes = codes.reshape(1, -1)
        if codes.ndim != 2 or codes.shape[1] != self.num_subspaces:
            raise ValidationError(
                f"codes must have {self.num_subspaces} entries per vector, got shape {codes.shape}"
            )
        if codes.size and not np.issubdtype(codes.dtype, np.integer):
            raise ValidationError(f"codes must be integers, got {codes.dtype}")
        if codes.size and (codes.min() < 0 or codes.max() >= self.num_centroids):
            raise ValidationError(f"codes must be in [0, {self.num_centroids})")
        return codes.astype(np.intp)


class ProductIndex(IQuantizedIndex):
    """Product-quantized rows for a store: one code per subspace plus the original norm.

    Full-precision rows are kept only when ``retain_vectors`` is set; without
    them a non-empty index cannot be retrained.
    """

    quantization_type = "product"

    def __init__(self, codec: ProductCodec, retain_vectors: bool = False, chunk_rows: int = SEARCH_CHUNK_ROWS):
        self.codec = codec
        self.dimension = codec.dimension
        self.chunk_rows = max(1, chunk_rows)
        self._codes = RowBuffer(codec.num_subspaces, np.uint8)
        self._norms = RowBuffer(1, np.float32)
        self._raw = RowBuffer(codec.dimension, np.float32) if retain_vectors else None

    def __len__(self) -> int:
        return len(self._codes)

    def is_ready(self) -> bool:
        return self.codec.is_trained()

    @property
    def bytes_per_vector(self) -> int:
        # one byte per subspace plus the float32 norm
        return self.codec.num_subspaces + 4

    @property
    def overhead_bytes(self) -> int:
        return self.codec.codebook_bytes() if self.codec.is_trained() else 0

    @property
    def raw_bytes(self) -> int:
        return self._raw.nbytes if self._raw is not None else 0

    def train(self, vectors, workers: int = 1, progress: Optional[ProgressCallback] = None) -> None:
        self._check_retrainable()
        self.codec.train(vectors, workers=workers, progress=progress)
        self._reencode()

    async def train_async(self, vectors, progress: Optional[ProgressCallback] = None) -> None:
        self._check_retrainable()
        await self.codec.train_async(vectors, progress=progress)
        self._reencode()

    def append(self, vector: np.ndarray) -> None:
        encoded = self.codec.encode(vector)
        self._codes.append(encoded.codes)
        self._norms.append(encoded.norm)
        if self._raw is not None:
            self._raw.append(vector)

    def append_many(self, vectors: np.ndarray) -> None:
        codes, norms = self.codec.encode_batch(vectors)
        self._codes.extend(codes)
        self._norms.extend(norms.reshape(-1, 1))
        if self._raw is not None:
            self._raw.extend(vectors)

    def replace(self, position: int, vector: np.ndarray) -> None:
        encoded = self.codec.encode(vector)
        self._codes.set(position, encoded.codes)
        self._norms.set(position, encoded.norm)
        if self._raw is not None:
            self._raw.set(position, vector)

    def swap_remove(self, position: int) -> None:
        self._codes.swap_remove(position)
        self._norms.swap_remove(position)
        if self._raw is not None:
            self._raw.swap_remove(position)

    def decode(self, position: int) -> np.ndarray:
        if self._raw is not None:
            return self._raw.row(position).copy()
        return self.codec.decode_batch(self._codes.row(position).reshape(1, -1))[0]

    def score(self, query: np.ndarray, metric: str) -> Tuple[np.ndarray, np.ndarray]:
        count = len(self)
        if count == 0:
            return np.zeros(0), np.zeros(0)
        codes = self._codes.rows

        if metric == "l2":
            tables = self.codec.precompute_distance_tables(query)
            distances = self._lookup(tables, codes)
            return distances, 1.0 / (1.0 + distances)

        # subspaces are disjoint, so |r|^2 is the sum of per-subspace centroid norms
        dots = self._lookup(self.codec.precompute_inner_product_tables(query), codes)
        row_sq_norms = self._lookup(self.codec.centroid_norm_tables(), codes)
        q = query.astype(np.float64)
        return score_rows(metric, dots, row_sq_norms, float(np.dot(q, q)))

    def payload(self, position: int) -> Dict[str, Any]:
        return {
            "codes": self._codes.row(position).tolist(),
            "norm": float(self._norms.row(position)[0]),
        }

    def export_state(self) -> Dict[str, Any]:
        if not self.codec.is_trained():
            return {}
        return {"codebooks": self.codec.codebook_state()}

    def load(self, state: Dict[str, Any], payloads: List[Any]) -> None:
        if state.get("ranges") is not None:
            raise IntegrityError("product store payload must not carry scalar ranges")
        codebooks = state.get("codebooks")
        if codebooks is None:
            if payloads:
                raise IntegrityError("product store payload with entries must carry codebooks")
            self.clear()
            return

        num_subspaces = self.codec.num_subspaces
        num_centroids = self.codec.num_centroids
        for position, payload in enumerate(payloads):
            if payload.norm is None:
                raise IntegrityError(f"entry {position}: product payload must carry a norm")
            if len(payload.codes) != num_subspaces:
                raise IntegrityError(
                    f"entry {position}: expected {num_subspaces} codes, got {len(payload.codes)}"
                )
            if any(code >= num_centroids for code in payload.codes):
                raise IntegrityError(f"entry {position}: code out of range for {num_centroids} centroids")
            if not np.isfinite(np.float32(payload.norm)):
                raise IntegrityError(f"entry {position}: norm overflows float32")

        self.codec.load_codebook(codebooks)
        codes = np.asarray([payload.codes for payload in payloads], dtype=np.uint8).reshape(-1, num_subspaces)
        norms = np.asarray([payload.norm for payload in payloads], dtype=np.float32).reshape(-1, 1)
        self._codes.reset(codes)
        self._norms.reset(norms)
        if self._raw is not None:
            # Reconstructions stand in for the full-precision rows that were not exported
            self._raw.reset(self.codec.decode_batch(codes))

    def clear(self) -> None:
        self._codes.clear()
        self._norms.clear()
        if self._raw is not None:
            self._raw.clear()

    def stats(self) -> Dict[str, Any]:
        stats = self.codec.get_stats()
        stats["retain_vectors"] = self._raw is not None
        return stats

    def _lookup(self, tables: np.ndarray, codes: np.ndarray) -> np.ndarray:
        out = np.empty(len(codes))
        for start in range(0, len(codes), self.chunk_rows):
            out[start:start + self.chunk_rows] = self.codec.distances_from_tables(
                tables, codes[start:start + self.chunk_rows]
            )
        return out

    def _check_retrainable(self) -> None:
        if len(self) and self._raw is None:
            raise ValidationError(
                f"cannot retrain: {len(self)} stored rows have no retained vectors to re-encode; "
                "create the store with retain_vectors=True or clear it first"
            )

    def _reencode(self) -> None:
        if self._raw is None or not len(self._raw):
            return
        codes, norms = self.codec.encode_batch(self._raw.rows)
        self._codes.reset(codes)
        self._norms.reset(norms.reshape(-1, 1))
        logger.log_store_operation("reencode", {"rows": len(codes)})
