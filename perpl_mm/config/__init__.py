"""
Configuration package.
"""

from perpl_mm.config.config import Settings

__all__ = [
    "Settings",
]
