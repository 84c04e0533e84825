"""
Infrastructure: logging and the shared state store.
"""

from bidsync.infra.logging_cfg import build_logger, log_event
from bidsync.infra.state_store import MemoryStateStore, RedisStateStore, SharedStateStore, build_state_store

__all__ = [
    "build_logger",
    "log_event",
    "MemoryStateStore",
    "RedisStateStore",
    "SharedStateStore",
    "build_state_store",
]
