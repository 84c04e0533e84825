"""
Configuration package: environment settings and the tracked collections file.
"""

from bidsync.config.collections import load_collections, parse_collections
from bidsync.config.config import Settings, default_market_params

__all__ = [
    "Settings",
    "default_market_params",
    "load_collections",
    "parse_collections",
]
