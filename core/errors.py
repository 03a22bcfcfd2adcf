"""Error hierarchy for backup orchestration."""


class BackupError(Exception):
    """
    Base exception for backup-related errors.

    Raised for failed steps and for misuse of the orchestration state machine.
    """


class PreflightError(BackupError):
    """
    Raised when a pre-flight check fails.

    Attributes:
        step: Name of the failed check (e.g. "credentials")
        provider: Storage provider involved, if any
    """

    def __init__(self, message: str, step: str = "preflight", provider: str = ""):
        self.step = step
        self.provider = provider
        super().__init__(message)


class SnapshotError(BackupError):
    """Raised when the snapshot command fails."""


class DeliveryError(BackupError):
    """Raised when a snapshot can't be transferred to its storage backend."""


class MetadataError(BackupError):
    """
    Raised when metadata of a delivered artifact can't be retrieved.

    Never fails a target: the delivery already succeeded.
    """


class BackupCancelled(BackupError):
    """Raised when a run is cancelled between state transitions."""
