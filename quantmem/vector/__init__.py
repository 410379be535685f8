"""
Quantized vector layer: scalar and product codecs and the store built on them.
"""

# Package initialization for vector module
from .index import IVectorStore, IQuantizedIndex
from .types import VectorRecord, QueryResult, ScalarQuantized, ProductEncoded, StoreStats
from .scalar import ScalarCodec, ScalarIndex, pack_nibbles, unpack_nibbles, quantize8bit, quantize4bit, dequantize8bit, dequantize4bit
from .kmeans import KMeansResult, KMeansStep, kmeans, kmeans_plus_plus, kmeans_steps
from .product import ProductCodec, ProductIndex
from .quality import calculate_quantization_error, get_quantization_stats, calculate_compression_ratio, estimate_memory_savings
from .store import QuantizedVectorStore, create_scalar8bit_store, create_scalar4bit_store, create_product_quantized_store

__all__ = [
    'IVectorStore',
    'IQuantizedIndex',
    'VectorRecord',
    'QueryResult',
    'ScalarQuantized',
    'ProductEncoded',
    'StoreStats',
    'ScalarCodec',
    'ScalarIndex',
    'pack_nibbles',
    'unpack_nibbles',
    'quantize8bit',
    'quantize4bit',
    'dequantize8bit',
    'dequantize4bit',
    'KMeansResult',
    'KMeansStep',
    'kmeans',
    'kmeans_plus_plus',
    'kmeans_steps',
    'ProductCodec',
    'ProductIndex',
    'calculate_quantization_error',
    'get_quantization_stats',
    'calculate_compression_ratio',
    'estimate_memory_savings',
    'QuantizedVectorStore',
    'create_scalar8bit_store',
    'create_scalar4bit_store',
    'create_product_quantized_store'
]
