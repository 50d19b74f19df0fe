from .blob import BlobNotFound, InMemoryBlobStore, LocalBlobStore
from .context_store import ContextRecord, ContextStore, WriteResult
from .memory import RunRepository

__all__ = [
    "BlobNotFound",
    "InMemoryBlobStore",
    "LocalBlobStore",
    "ContextRecord",
    "ContextStore",
    "WriteResult",
    "RunRepository",
]
