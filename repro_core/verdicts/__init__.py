from .cache import (
    FileVerdictCache,
    MemoryVerdictCache,
    NullVerdictCache,
    VerdictCache,
    cache_key,
    open_cache,
)

__all__ = [
    "FileVerdictCache",
    "MemoryVerdictCache",
    "NullVerdictCache",
    "VerdictCache",
    "cache_key",
    "open_cache",
]
