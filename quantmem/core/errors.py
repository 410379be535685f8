"""
Error taxonomy for the quantized vector layer.
Usage and configuration errors fail fast; callers receive them unmodified.
"""


class QuantizationError(Exception):
    """Base exception for quantization and quantized store operations."""
    pass


class ValidationError(QuantizationError, ValueError):
    """Dimension, configuration or argument mismatch."""
    pass


class NotTrainedError(QuantizationError, RuntimeError):
    """Product codec used before its codebooks were trained or imported."""
    pass


class CapacityError(QuantizationError):
    """Store has reached its configured maximum number of vectors."""
    pass


class IntegrityError(QuantizationError, ValueError):
    """Imported payload is malformed: wrong shape, non-numeric or out-of-range values."""
    pass
