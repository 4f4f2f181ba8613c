"""
Local durable key-value stores.
"""

from .store import (
    DurableStore,
    FileDurableStore,
    MemoryDurableStore,
    read_json_list,
    write_json_list,
)

__all__ = [
    "DurableStore",
    "FileDurableStore",
    "MemoryDurableStore",
    "read_json_list",
    "write_json_list",
]
