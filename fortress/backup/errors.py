"""
Exceptions raised by the backup engine.
"""


class BackupEngineError(Exception):
    """Base class for backup engine failures."""
    pass


class ConnectionFailed(BackupEngineError):
    """Raised when an SSH session cannot be used (not connected, transport lost)."""
    pass


class CredentialNotFound(BackupEngineError):
    """Raised when a referenced SSH key does not exist in the credential store."""
    pass


class DecryptionFailed(BackupEngineError):
    """Raised when no candidate master key can decrypt a stored credential."""
    pass


class CommandExecutionFailed(BackupEngineError):
    """Raised when a tool command exits non-zero."""

    def __init__(self, message: str, exit_code: int = None, stderr: str = ''):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ListFailed(BackupEngineError):
    """Raised when snapshot or file listing fails."""
    pass


class UnsupportedOperation(ListFailed):
    """Raised when a tool cannot perform the requested verb (e.g. rsync snapshots)."""
    pass


class SnapshotNotFound(ListFailed):
    """Raised when the tool reports an unknown snapshot id."""
    pass


class PruneFailed(BackupEngineError):
    """Prune step failed after a successful backup. Recorded as a warning."""
    pass


class UnsupportedDestination(BackupEngineError):
    """Raised when a tool cannot write to the configured destination type."""
    pass


class MissingRepositoryPassword(BackupEngineError):
    """Raised when borg/restic is configured without a repository password."""
    pass
