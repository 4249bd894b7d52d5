"""Exceptions shared across packages."""


class MigrationPendingError(Exception):
    """The store lacks the identity/version columns; versioning is skipped until it is migrated."""


class ProviderError(Exception):
    """A provider could not fetch or understand a listing source."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
