"""Exception hierarchy for storage pool operations."""


class GreypoolError(Exception):
    """Base class for all storage pool errors."""


class ConfigurationError(GreypoolError):
    """The configuration is invalid or incomplete."""


class ShareNotFoundError(GreypoolError):
    """A task or request referenced a share that is not configured."""

    def __init__(self, share_name: str):
        super().__init__(f"Share not found: {share_name}")
        self.share_name = share_name


class DriveNotFoundError(GreypoolError):
    """A drive path is not part of the storage pool."""

    def __init__(self, drive_path: str):
        super().__init__(f"Drive is not part of the storage pool: {drive_path}")
        self.drive_path = drive_path


class DriveNotEligibleError(GreypoolError):
    """A drive may not receive new file copies (going, gone or unavailable)."""

    def __init__(self, drive_path: str, reason: str = ""):
        message = f"Drive is not eligible for new copies: {drive_path}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.drive_path = drive_path


class InvalidTaskError(GreypoolError):
    """A task record was rejected at enqueue time."""


class CopyError(GreypoolError):
    """Creating or verifying a file copy failed."""
