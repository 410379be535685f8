"""
quantmem - compact embedding storage with search over quantized vectors.
"""

from .core.config import VERSION, get_vector_store
from .core.errors import CapacityError, IntegrityError, NotTrainedError, QuantizationError, ValidationError
from .core.schema import ProductConfig, StoreConfig
from .vector import (
    ProductCodec,
    QuantizedVectorStore,
    QueryResult,
    ScalarCodec,
    VectorRecord,
    create_product_quantized_store,
    create_scalar4bit_store,
    create_scalar8bit_store,
)

__version__ = VERSION

__all__ = [
    'CapacityError',
    'IntegrityError',
    'NotTrainedError',
    'QuantizationError',
    'ValidationError',
    'ProductConfig',
    'StoreConfig',
    'ProductCodec',
    'QuantizedVectorStore',
    'QueryResult',
    'ScalarCodec',
    'VectorRecord',
    'create_product_quantized_store',
    'create_scalar4bit_store',
    'create_scalar8bit_store',
    'get_vector_store'
]
