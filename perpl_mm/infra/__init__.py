"""
Infrastructure package: logging configuration.
"""

from perpl_mm.infra.logging_cfg import build_logger, log_event

__all__ = [
    "build_logger",
    "log_event",
]
