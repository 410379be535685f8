"""
Shared fixtures for the quantized vector layer tests.
"""

import numpy as np
import pytest


@pytest.fixture
def rng():
    """Seeded generator so every test sees the same vectors."""
    return np.random.default_rng(1234)


@pytest.fixture
def random_vectors(rng):
    """100 random 64-dimensional float32 vectors."""
    return rng.standard_normal((100, 64)).astype(np.float32)


@pytest.fixture
def unit_vectors(random_vectors):
    """The random vectors scaled to unit length."""
    norms = np.linalg.norm(random_vectors, axis=1, keepdims=True)
    return (random_vectors / norms).astype(np.float32)
