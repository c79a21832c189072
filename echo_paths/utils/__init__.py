"""
Utility functions and helpers for the Echo Paths pipeline.
"""

from .helpers import (
    format_duration,
    load_config,
    setup_logging,
)

__all__ = [
    "format_duration",
    "load_config",
    "setup_logging",
]
