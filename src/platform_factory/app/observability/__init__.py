"""Structured logging for the platform factory."""

from .logging import configure_logging, get_logger, request_id_ctx

__all__ = ["configure_logging", "get_logger", "request_id_ctx"]
