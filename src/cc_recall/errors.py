"""Exception types for cc-recall."""


class CCRecallError(Exception):
    """Base class for all cc-recall errors."""


class ConfigError(CCRecallError):
    """Invalid configuration value."""


class TranscriptError(CCRecallError):
    """A transcript file is missing, unreadable or malformed."""


class EnrichmentError(CCRecallError):
    """The embedding or summary provider failed."""


class StoreError(CCRecallError):
    """The index database could not be read or written."""


class SchemaVersionError(StoreError):
    """The index database was written by a newer schema than this code knows."""

    def __init__(self, stored: int, expected: int) -> None:
        super().__init__(
            f"Index schema version {stored} is newer than supported version {expected}"
        )
        self.stored = stored
        self.expected = expected


class RebuildRefused(CCRecallError):
    """Rebuild was not confirmed interactively."""
