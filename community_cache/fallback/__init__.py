"""
Local fallback queue for writes the gateway rejected.
"""

from .queue import (
    LOCAL_ID_PREFIX,
    FallbackQueue,
    FallbackRecord,
    is_local_id,
    merge_pending,
    new_client_ref,
)

__all__ = [
    "LOCAL_ID_PREFIX",
    "FallbackQueue",
    "FallbackRecord",
    "is_local_id",
    "merge_pending",
    "new_client_ref",
]
