"""
Base error type for the backup pipeline.

Each module defines its own subclass (ArchiveReadError, EncryptionError,
UploadError, ...) next to the code that raises it.
"""

from typing import List, Optional


class BackupError(Exception):
    """
    Raised when any step of a backup fails.

    Attributes:
        stage: Name of the pipeline stage that failed, if known
        subordinate: Failures detected after this one while tearing down
    """

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.subordinate: List[BaseException] = []

    def __str__(self):
        if self.stage:
            return f"{self.stage}: {self.message}"
        return self.message
