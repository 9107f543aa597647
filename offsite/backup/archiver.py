"""
Archive stage: streams a directory as an uncompressed tar.

tar runs as a separate process writing to its stdout. Member order follows
ordinary directory enumeration. Nothing is compressed.
"""

import logging
from typing import List

from offsite.errors import BackupError
from .pipeline import ProcessStage
from .sources import BackupSource


logger = logging.getLogger(__name__)


class ArchiveReadError(BackupError):
    """Raised when the source directory cannot be archived."""

    def __init__(self, message: str, stage: str = 'archive'):
        super().__init__(message, stage)


def build_tar_command(source: BackupSource, tar_executable: str = 'tar') -> List[str]:
    """
    Build the tar argument vector for a source.

    The archive contains a single top-level entry named after the source
    directory, relative to its parent.

    Args:
        source: Directory to archive
        tar_executable: tar binary to run

    Returns:
        Argument vector (never passed through a shell)
    """
    return [tar_executable, 'c', '-C', source.parent, '--', source.base_name]


class ArchiveStage(ProcessStage):
    """Producer stage running tar over a BackupSource."""

    error_class = ArchiveReadError

    def __init__(self, source: BackupSource, tar_executable: str = 'tar'):
        super().__init__('archive')
        self.source = source
        self.tar_executable = tar_executable

    def command(self) -> List[str]:
        return build_tar_command(self.source, self.tar_executable)

    def start(self, stdin):
        if stdin is not None:
            raise ValueError("The archive stage does not take an input stream")
        return super().start(None)
