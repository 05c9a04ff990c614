"""Cross-cutting utilities for the orchestration layer.

Modules:
    logging: structlog configuration and logger factory.
"""

from app.utils.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
]
