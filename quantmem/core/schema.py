"""
Typed configuration records and persistence schemas.
Imports run through these models before any buffer is sized or indexed.
"""

from typing import Annotated, Any, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from . import config
from .errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

# Leaves of imported payloads: no coercion from strings, no NaN/inf
FiniteFloat = Annotated[float, Field(strict=True, allow_inf_nan=False)]
ByteCode = Annotated[int, Field(strict=True, ge=0, le=255)]


class ProductConfig(BaseModel):
    """Product quantizer settings. Defaults are resolved once, at construction."""
    model_config = ConfigDict(extra="forbid")

    num_subspaces: int = config.DEFAULT_NUM_SUBSPACES
    num_centroids: int = config.DEFAULT_NUM_CENTROIDS
    max_iterations: int = config.DEFAULT_MAX_ITERATIONS
    convergence_threshold: float = config.DEFAULT_CONVERGENCE_THRESHOLD
    seed: int = config.KMEANS_SEED
    yield_every: int = config.KMEANS_YIELD_EVERY

    @field_validator('num_subspaces')
    @classmethod
    def num_subspaces_must_fit(cls, v):
        if not 1 <= v <= config.MAX_SUBSPACES:
            raise ValueError(f'num_subspaces must be between 1 and {config.MAX_SUBSPACES}')
        return v

    @field_validator('num_centroids')
    @classmethod
    def num_centroids_must_fit_a_byte(cls, v):
        if not 2 <= v <= config.MAX_CENTROIDS:
            raise ValueError(f'num_centroids must be between 2 and {config.MAX_CENTROIDS}')
        return v

    @field_validator('max_iterations')
    @classmethod
    def clamp_max_iterations(cls, v):
        if v < 1:
            raise ValueError('max_iterations must be >= 1')
        return min(v, config.MAX_KMEANS_ITERATIONS)

    @field_validator('convergence_threshold')
    @classmethod
    def threshold_must_be_non_negative(cls, v):
        if not v >= 0 or v == float('inf'):
            raise ValueError('convergence_threshold must be a finite number >= 0')
        return v

    @field_validator('seed')
    @classmethod
    def seed_must_be_non_negative(cls, v):
        if v < 0:
            raise ValueError('seed must be >= 0')
        return v

    @field_validator('yield_every')
    @classmethod
    def yield_every_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('yield_every must be >= 1')
        return v


class StoreConfig(BaseModel):
    """Quantized vector store settings."""
    model_config = ConfigDict(extra="forbid")

    dimension: int
    quantization_type: str = config.DEFAULT_QUANTIZATION_TYPE
    metric: str = config.DEFAULT_METRIC
    max_vectors: int = config.MAX_STORE_SIZE
    retain_vectors: bool = False
    product_config: Optional[ProductConfig] = None

    @field_validator('dimension')
    @classmethod
    def dimension_must_be_in_range(cls, v):
        if not 1 <= v <= config.MAX_VECTOR_DIMENSION:
            raise ValueError(f'dimension must be between 1 and {config.MAX_VECTOR_DIMENSION}')
        return v

    @field_validator('quantization_type')
    @classmethod
    def quantization_type_must_be_valid(cls, v):
        if v not in config.QUANTIZATION_TYPES:
            raise ValueError(f'quantization_type must be one of: {list(config.QUANTIZATION_TYPES)}')
        return v

    @field_validator('metric')
    @classmethod
    def metric_must_be_valid(cls, v):
        if v not in config.METRICS:
            raise ValueError(f'metric must be one of: {list(config.METRICS)}')
        return v

    @field_validator('max_vectors')
    @classmethod
    def max_vectors_must_be_bounded(cls, v):
        if not 1 <= v <= config.MAX_STORE_SIZE:
            raise ValueError(f'max_vectors must be between 1 and {config.MAX_STORE_SIZE}')
        return v

    @model_validator(mode='after')
    def resolve_product_config(self):
        if self.quantization_type != 'product':
            return self
        if self.product_config is None:
            self.product_config = ProductConfig()
        if self.dimension % self.product_config.num_subspaces != 0:
            raise ValueError(
                f'dimension ({self.dimension}) must be divisible by '
                f'num_subspaces ({self.product_config.num_subspaces})'
            )
        return self


# Persistence schemas

class CodebookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    dimension: Annotated[int, Field(strict=True)]
    num_subspaces: Annotated[int, Field(strict=True)]
    num_centroids: Annotated[int, Field(strict=True)]
    max_iterations: Optional[Annotated[int, Field(strict=True)]] = None
    convergence_threshold: Optional[FiniteFloat] = None
    seed: Optional[Annotated[int, Field(strict=True)]] = None
    yield_every: Optional[Annotated[int, Field(strict=True)]] = None


class ExportedCodebook(BaseModel):
    """Serialized product quantizer codebooks: [subspace][centroid][coordinate]."""
    model_config = ConfigDict(extra="forbid")

    config: CodebookConfig
    codebooks: Annotated[
        List[Annotated[
            List[Annotated[List[FiniteFloat], Field(max_length=config.MAX_VECTOR_DIMENSION)]],
            Field(max_length=config.MAX_CENTROIDS),
        ]],
        Field(max_length=config.MAX_SUBSPACES),
    ]

    @model_validator(mode='after')
    def shape_must_match_config(self):
        cfg = self.config
        if not 1 <= cfg.dimension <= config.MAX_VECTOR_DIMENSION:
            raise ValueError('codebook dimension out of range')
        if not 2 <= cfg.num_centroids <= config.MAX_CENTROIDS:
            raise ValueError('codebook num_centroids out of range')
        if not 1 <= cfg.num_subspaces <= config.MAX_SUBSPACES:
            raise ValueError('codebook num_subspaces out of range')
        if cfg.dimension % cfg.num_subspaces != 0:
            raise ValueError('codebook dimension must be divisible by num_subspaces')

        subspace_dim = cfg.dimension // cfg.num_subspaces
        if len(self.codebooks) != cfg.num_subspaces:
            raise ValueError(
                f'expected {cfg.num_subspaces} subspaces, got {len(self.codebooks)}'
            )
        for s, subspace in enumerate(self.codebooks):
            if len(subspace) != cfg.num_centroids:
                raise ValueError(
                    f'subspace {s}: expected {cfg.num_centroids} centroids, got {len(subspace)}'
                )
            for c, centroid in enumerate(subspace):
                if len(centroid) != subspace_dim:
                    raise ValueError(
                        f'subspace {s} centroid {c}: expected {subspace_dim} values, got {len(centroid)}'
                    )
        return self


class ExportedRanges(BaseModel):
    """Per-dimension scalar quantization ranges shared by every row of a store."""
    model_config = ConfigDict(extra="forbid")

    bits: Annotated[int, Field(strict=True)]
    mins: Annotated[List[FiniteFloat], Field(max_length=config.MAX_VECTOR_DIMENSION)]
    maxs: Annotated[List[FiniteFloat], Field(max_length=config.MAX_VECTOR_DIMENSION)]

    @field_validator('bits')
    @classmethod
    def bits_must_be_supported(cls, v):
        if v not in (4, 8):
            raise ValueError('bits must be 4 or 8')
        return v

    @model_validator(mode='after')
    def ranges_must_be_consistent(self):
        if len(self.mins) != len(self.maxs):
            raise ValueError('mins and maxs must have the same length')
        if any(hi < lo for lo, hi in zip(self.mins, self.maxs)):
            raise ValueError('every max must be >= its min')
        return self


class ExportedPayload(BaseModel):
    """One entry's codec payload. ``norm`` is present for product codes only."""
    model_config = ConfigDict(extra="forbid")

    codes: Annotated[List[ByteCode], Field(max_length=config.MAX_VECTOR_DIMENSION)]
    norm: Optional[Annotated[float, Field(strict=True, allow_inf_nan=False, ge=0)]] = None


class ExportedEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Annotated[str, Field(strict=True, min_length=1)]
    quantized: ExportedPayload
    metadata: Optional[Dict[str, Any]] = None


class ExportedProductConfig(ProductConfig):
    """ProductConfig as read back from an export: values must already have their JSON types."""
    model_config = ConfigDict(extra="forbid", strict=True)


class ExportedStoreConfig(StoreConfig):
    model_config = ConfigDict(extra="forbid", strict=True)

    product_config: Optional[ExportedProductConfig] = None


class ExportedStore(BaseModel):
    """Top-level persistence document written by QuantizedVectorStore.export()."""
    model_config = ConfigDict(extra="forbid")

    format_version: Annotated[int, Field(strict=True)]
    config: ExportedStoreConfig
    vectors: List[ExportedEntry]
    ranges: Optional[ExportedRanges] = None
    codebooks: Optional[ExportedCodebook] = None

    @field_validator('format_version')
    @classmethod
    def format_version_must_be_known(cls, v):
        if v != config.EXPORT_FORMAT_VERSION:
            raise ValueError(f'unsupported format_version {v}')
        return v

    @model_validator(mode='after')
    def entries_must_fit_config(self):
        if len(self.vectors) > self.config.max_vectors:
            raise ValueError(
                f'{len(self.vectors)} entries exceed max_vectors ({self.config.max_vectors})'
            )
        seen = set()
        for entry in self.vectors:
            if entry.id in seen:
                raise ValueError(f'duplicate id {entry.id!r}')
            seen.add(entry.id)
        return self


def resolve_config(model: Type[ModelT], value: Union[ModelT, Dict[str, Any], None] = None, **overrides) -> ModelT:
    """Build a configuration record, surfacing schema problems as ValidationError."""
    if isinstance(value, model) and not overrides:
        return value
    data = value.model_dump() if isinstance(value, BaseModel) else dict(value or {})
    data.update(overrides)
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {model.__name__}: {_summarize(exc)}") from exc


def parse_payload(model: Type[ModelT], payload: Union[str, bytes, Dict[str, Any]], operation: str, error_cls=None) -> ModelT:
    """Validate an imported payload against ``model`` before anything trusts it.

    Raises ``error_cls`` (IntegrityError by default) with the pydantic error
    chained; the rejected details are logged without their input values.
    """
    from ..util.logging import logger
    from .errors import IntegrityError

    error_cls = error_cls or IntegrityError
    try:
        if isinstance(payload, (str, bytes, bytearray)):
            return model.model_validate_json(payload)
        if isinstance(payload, dict):
            return model.model_validate(payload)
    except PydanticValidationError as exc:
        logger.log_import_rejected(operation, exc.errors(include_input=False))
        raise error_cls(f"Malformed {operation} payload: {_summarize(exc)}") from exc

    logger.log_import_rejected(operation, [f"unsupported payload type {type(payload).__name__}"])
    raise error_cls(f"Malformed {operation} payload: expected JSON text or a dict")


def _summarize(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors(include_input=False)[:3]:
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get('msg')))
    if exc.error_count() > 3:
        parts.append(f"(+{exc.error_count() - 3} more)")
    return "; ".join(parts)
