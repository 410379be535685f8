"""
Quantized vector layer configuration.
Environment-driven defaults and hard limits, read once at import time.
"""

import os

# Hard limits
MAX_VECTOR_DIMENSION = int(os.getenv("QUANTMEM_MAX_DIMENSION", "4096"))
MAX_STORE_SIZE = int(os.getenv("QUANTMEM_MAX_STORE_SIZE", "10000000"))
MAX_TRAINING_VECTORS = int(os.getenv("QUANTMEM_MAX_TRAINING_VECTORS", "1000000"))
MAX_KMEANS_ITERATIONS = 500  # ceiling for every k-means run, not configurable upward
MAX_CENTROIDS = 256  # codes are single bytes
MAX_SUBSPACES = 256

# Store defaults
DEFAULT_DIMENSION = int(os.getenv("QUANTMEM_DIMENSION", "384"))
DEFAULT_QUANTIZATION_TYPE = os.getenv("QUANTMEM_QUANTIZATION", "scalar-8bit")  # scalar-8bit|scalar-4bit|product
DEFAULT_METRIC = os.getenv("QUANTMEM_METRIC", "cosine")  # cosine|l2|ip
SEARCH_CHUNK_ROWS = int(os.getenv("QUANTMEM_SEARCH_CHUNK_ROWS", "4096"))

# Product quantization defaults
DEFAULT_NUM_SUBSPACES = int(os.getenv("QUANTMEM_NUM_SUBSPACES", "8"))
DEFAULT_NUM_CENTROIDS = int(os.getenv("QUANTMEM_NUM_CENTROIDS", "256"))
DEFAULT_MAX_ITERATIONS = int(os.getenv("QUANTMEM_KMEANS_ITERATIONS", "50"))
DEFAULT_CONVERGENCE_THRESHOLD = float(os.getenv("QUANTMEM_KMEANS_TOLERANCE", "1e-4"))
KMEANS_SEED = int(os.getenv("QUANTMEM_KMEANS_SEED", "42"))
KMEANS_YIELD_EVERY = int(os.getenv("QUANTMEM_KMEANS_YIELD_EVERY", "10"))

# Logging
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("QUANTMEM_LOG_LEVEL", "DEBUG" if DEBUG else "INFO").upper()

QUANTIZATION_TYPES = ("scalar-8bit", "scalar-4bit", "product")
METRICS = ("cosine", "l2", "ip")

# Persistence format written by QuantizedVectorStore.export()
EXPORT_FORMAT_VERSION = 1

VERSION = "0.3.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def get_quantization_type():
    """Get default quantization type (scalar-8bit|scalar-4bit|product)."""
    return DEFAULT_QUANTIZATION_TYPE


def get_metric():
    """Get default distance metric (cosine|l2|ip)."""
    return DEFAULT_METRIC


def validate_quantization_config():
    """Validate quantization configuration and return any issues."""
    issues = []
    quantization_type = get_quantization_type()
    metric = get_metric()

    if quantization_type not in QUANTIZATION_TYPES:
        issues.append(f"Invalid QUANTMEM_QUANTIZATION: {quantization_type}")

    if metric not in METRICS:
        issues.append(f"Invalid QUANTMEM_METRIC: {metric}")

    if not 1 <= DEFAULT_DIMENSION <= MAX_VECTOR_DIMENSION:
        issues.append(f"QUANTMEM_DIMENSION must be between 1 and {MAX_VECTOR_DIMENSION}")

    if MAX_STORE_SIZE < 1:
        issues.append("QUANTMEM_MAX_STORE_SIZE must be >= 1")

    if SEARCH_CHUNK_ROWS < 1:
        issues.append("QUANTMEM_SEARCH_CHUNK_ROWS must be >= 1")

    if not 2 <= DEFAULT_NUM_CENTROIDS <= MAX_CENTROIDS:
        issues.append(f"QUANTMEM_NUM_CENTROIDS must be between 2 and {MAX_CENTROIDS}")

    if not 1 <= DEFAULT_NUM_SUBSPACES <= MAX_SUBSPACES:
        issues.append(f"QUANTMEM_NUM_SUBSPACES must be between 1 and {MAX_SUBSPACES}")
    elif quantization_type == "product" and DEFAULT_DIMENSION % DEFAULT_NUM_SUBSPACES != 0:
        issues.append("QUANTMEM_DIMENSION must be divisible by QUANTMEM_NUM_SUBSPACES")

    if DEFAULT_MAX_ITERATIONS < 1:
        issues.append("QUANTMEM_KMEANS_ITERATIONS must be >= 1")

    if KMEANS_YIELD_EVERY < 1:
        issues.append("QUANTMEM_KMEANS_YIELD_EVERY must be >= 1")

    return issues


def get_vector_store(**overrides):
    """Build a quantized vector store from the configured defaults.

    Keyword arguments override individual StoreConfig fields, e.g.
    ``get_vector_store(dimension=64, quantization_type="scalar-4bit")``.
    """
    from ..vector.store import QuantizedVectorStore

    settings = {
        "dimension": DEFAULT_DIMENSION,
        "quantization_type": get_quantization_type(),
        "metric": get_metric(),
    }
    settings.update(overrides)
    return QuantizedVectorStore(settings)
