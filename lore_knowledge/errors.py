"""Exception hierarchy for the ingestion and sync engine."""


class LoreError(Exception):
    """Base class for all lore-knowledge errors."""

    pass


class AuthorizationError(LoreError):
    """Raised when the remote store rejects our credentials.

    An authorization failure invalidates the whole sync run: every later
    write would be rejected in the same way.
    """

    def __init__(self, message: str = "Remote store rejected credentials") -> None:
        super().__init__(f"{message}. Please re-authenticate and run sync again.")


class StoreError(LoreError):
    """Raised when a single remote store operation fails."""

    pass


class ExtractionError(LoreError):
    """Raised when metadata extraction fails for a file."""

    pass


class ConfigError(LoreError):
    """Raised for invalid sync-source configuration."""

    pass


class EmbeddingError(LoreError):
    """Raised when a summary cannot be embedded."""

    pass
