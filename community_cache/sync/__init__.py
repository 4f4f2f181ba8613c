"""
Read-through / write-through synchronization between cache and gateway.
"""

from .synchronizer import Synchronizer, WriteOp, WritePolicy, WriteResult

__all__ = [
    "Synchronizer",
    "WriteOp",
    "WritePolicy",
    "WriteResult",
]
