from .base import Backend, BaseBackend
from .directory import DirectoryBackend
from .sql import AdvisoryLockBackend, ConditionalUpdateBackend, SqlBackend

__all__ = [
    "Backend",
    "BaseBackend",
    "DirectoryBackend",
    "SqlBackend",
    "AdvisoryLockBackend",
    "ConditionalUpdateBackend",
]
