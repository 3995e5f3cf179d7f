"""
Memory system exceptions.

Each failure class maps to one HTTP status in the API layer.
"""


class MemorySystemError(Exception):
    """Base exception for the memory system."""

    pass


class ValidationError(MemorySystemError):
    """Malformed input, rejected before any write."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error for '{field}': {message}")


class NotFoundError(MemorySystemError):
    """Unknown identifier referenced."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class StorageError(MemorySystemError):
    """Structured store or log I/O failure."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class ProviderError(MemorySystemError):
    """Embedding provider call failed."""

    pass
