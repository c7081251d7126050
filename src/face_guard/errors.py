from __future__ import annotations


class NotFound(KeyError):
    """Raised when an identity id is not present in the store."""

    def __init__(self, identity_id: str) -> None:
        super().__init__(identity_id)
        self.identity_id = identity_id

    def __str__(self) -> str:
        return f"Unknown identity {self.identity_id}"


class IndexOutOfRange(IndexError):
    """Raised when a sample index does not address an existing sample."""

    def __init__(self, identity_id: str, index: int, size: int) -> None:
        super().__init__(
            f"Sample index {index} out of range for {identity_id} ({size} samples)"
        )
        self.identity_id = identity_id
        self.index = index
        self.size = size


class ExtractionFailed(RuntimeError):
    """Per-frame extractor failure. The pipeline treats it as a frame without faces."""


class InitializationFailed(RuntimeError):
    """The feature extractor could not be loaded."""


class PersistenceWarning(UserWarning):
    """Writing the store to disk failed; in-memory state stays authoritative."""
