"""Error taxonomy shared by the migration runner and the user repository.

Errors propagate to the caller unchanged; nothing at this layer retries.
"""


class UserStoreError(Exception):
    """Base exception for userstore errors."""

    pass


# =============================================================================
# Migrations
# =============================================================================


class LedgerUnavailable(UserStoreError):
    """The migration ledger's store cannot be reached."""

    pass


class ChecksumMismatch(UserStoreError):
    """An applied migration's script no longer matches its recorded checksum."""

    def __init__(self, version: int, recorded: str, actual: str):
        self.version = version
        self.recorded = recorded
        self.actual = actual
        super().__init__(
            f"Migration {version} was modified after it was applied "
            f"(recorded checksum {recorded[:12]}..., script checksum {actual[:12]}...)"
        )


class MigrationFailed(UserStoreError):
    """A migration script failed; its transaction was rolled back."""

    def __init__(self, version: int, cause: str):
        self.version = version
        self.cause = cause
        super().__init__(f"Migration {version} failed: {cause}")


class OutOfOrderMigration(MigrationFailed):
    """A pending migration is older than the latest applied one."""

    def __init__(self, version: int, latest_applied: int):
        self.latest_applied = latest_applied
        super().__init__(
            version,
            f"version is older than latest applied migration {latest_applied}",
        )


class MissingMigrationScript(UserStoreError):
    """The ledger lists a version that has no script in the source directory."""

    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Applied migration {version} has no script in the migrations directory")


class InvalidMigrationSource(UserStoreError):
    """The migrations directory contains malformed or conflicting scripts."""

    pass


class RunnerBusy(UserStoreError):
    """Another runner holds the migration lock."""

    pass


# =============================================================================
# Users
# =============================================================================


class DuplicateEmail(UserStoreError):
    """Email already belongs to another user."""

    pass


class DuplicateUsername(UserStoreError):
    """Username already belongs to another user."""

    pass


class NotFound(UserStoreError):
    """Requested record does not exist."""

    pass


class InvalidRole(UserStoreError, ValueError):
    """Role is not a member of UserRole."""

    pass


# =============================================================================
# Store
# =============================================================================


class OperationTimeout(UserStoreError):
    """Operation exceeded its deadline and was rolled back."""

    pass


class StoreUnavailable(UserStoreError):
    """The relational store cannot be reached."""

    pass
