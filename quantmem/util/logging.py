"""
Structured operation logging for the quantized vector layer.
"""

import logging
from typing import Any, Dict, List

from ..core.config import LOG_LEVEL

SENSITIVE_FIELDS = ['input', 'value', 'metadata', 'vector', 'ctx']


class StructuredLogger:
    """Structured logger for store, codec and training operations."""

    def __init__(self, name: str = "quantmem"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_vector_operation(self, operation: str, record_id: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a per-record vector operation. Debug level, these fire once per row."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details, level=logging.DEBUG)

    def log_store_operation(self, operation: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a store-level operation (batch insert, rebuild, export, import)."""
        self.log_operation(f"store.{operation}", status, details)

    def log_training_run(self, codec: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log codebook training."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Training '{codec}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Training '{codec}' failed after {duration_ms}ms"

        level = logging.INFO if status == "success" else logging.WARNING
        self.log_operation(f"train.{codec}", status, log_details, level=level)

    def log_import_rejected(self, operation: str, errors: List[Any]):
        """Log rejected import payloads with sanitized details."""
        # Never echo the offending payload back into the log
        sanitized_errors = []
        for error in errors:
            if isinstance(error, dict):
                sanitized_errors.append(sanitize_payload(error))
            else:
                sanitized_errors.append(str(error)[:100])

        log_details = {
            "operation": operation,
            "errors": sanitized_errors[:10],
            "error_count": len(sanitized_errors)
        }
        self.log_operation("import.rejected", "rejected", log_details, level=logging.WARNING)

    # Free-text messages
    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


def sanitize_payload(payload: Any, sensitive_fields: List[str] = None) -> Any:
    """Redact raw values from a payload before it reaches the log."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if k in sensitive_fields:
                sanitized[k] = "[REDACTED]"
            else:
                sanitized[k] = sanitize_payload(v, sensitive_fields)
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, (list, tuple)):
        return [sanitize_payload(item, sensitive_fields) for item in payload[:20]]
    else:
        return payload


# Global logger instance
logger = StructuredLogger()
