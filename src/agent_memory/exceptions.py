"""
Memory subsystem exceptions.

Every error raised inside the package derives from ``MemorySystemError`` so the
unified manager can catch them at its boundary and degrade gracefully.
"""


class MemorySystemError(Exception):
    """Base memory subsystem error"""

    pass


class ConfigError(MemorySystemError):
    """Out-of-range configuration value.

    Configuration resolution clamps instead of raising; this exists so callers
    validating raw input themselves have a typed error to use.
    """

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid config value for '{field}': {message}")


class StoreIOError(MemorySystemError):
    """Typed-store file read/write/parse failure"""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class IndexInitError(MemorySystemError):
    """Embedded search database failed to initialize"""

    def __init__(self, message: str, db_path: str | None = None):
        self.db_path = db_path
        super().__init__(message)


class EmbeddingProviderError(MemorySystemError):
    """Embedding provider failure (network, auth, timeout, bad response)"""

    def __init__(self, message: str, provider: str | None = None):
        self.provider = provider
        super().__init__(f"[{provider}] {message}" if provider else message)


class ClassificationError(MemorySystemError):
    """LLM port failure while classifying a message"""

    pass


class InvalidTransitionError(MemorySystemError):
    """Refused prospective-memory status transition"""

    def __init__(self, memory_id: str, current: str, target: str):
        self.memory_id = memory_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move prospective memory {memory_id} from {current} to {target}"
        )
