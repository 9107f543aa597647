"""
Backup sources.

A BackupSource names one directory (typically a virtual machine's folder)
and the moment the backup run started. The directory-size query feeds the
progress display.
"""

import os
import subprocess
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from offsite.errors import BackupError


logger = logging.getLogger(__name__)

DESCRIPTION_TIME_FORMAT = '%Y-%m-%d_%H:%M'


class SizeQueryError(BackupError):
    """Raised when the size of a source directory cannot be determined."""

    def __init__(self, message: str, stage: str = 'size-query'):
        super().__init__(message, stage)


@dataclass(frozen=True)
class BackupSource:
    """
    Immutable description of one directory to back up.

    Attributes:
        path: Absolute path of the directory
        name: Logical name (e.g. the VM name)
        timestamp: Start time of the backup run
    """

    path: str
    name: str
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Backup source name must not be empty")
        # Frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, 'path', os.path.abspath(self.path))

    @classmethod
    def from_directory(cls, path: str, name: Optional[str] = None,
                       timestamp: Optional[datetime] = None) -> 'BackupSource':
        """
        Build a source for a directory, defaulting the name to its basename.

        Raises:
            ValueError: If path is not a directory
        """
        if not os.path.isdir(path):
            raise ValueError(f"Not a directory: {path}")

        path = os.path.abspath(path)
        return cls(
            path=path,
            name=name or os.path.basename(path.rstrip(os.sep)),
            timestamp=timestamp or datetime.now()
        )

    @property
    def description(self) -> str:
        """Human description stored with the remote archive, e.g. '2024-01-01_00:00 vm1'."""
        return f"{self.timestamp.strftime(DESCRIPTION_TIME_FORMAT)} {self.name}"

    @property
    def parent(self) -> str:
        return os.path.dirname(self.path.rstrip(os.sep)) or os.sep

    @property
    def base_name(self) -> str:
        return os.path.basename(self.path.rstrip(os.sep))

    def contains(self, other_path: str) -> bool:
        """Check whether other_path lies inside this source directory."""
        source = os.path.realpath(self.path)
        other = os.path.realpath(other_path)
        return other == source or other.startswith(source + os.sep)


def directory_size(path: str, du_executable: str = 'du') -> int:
    """
    Determine the apparent size of a directory in bytes.

    Args:
        path: Directory to measure
        du_executable: du binary to run

    Returns:
        Size in bytes

    Raises:
        SizeQueryError: If du fails or its output cannot be parsed
    """
    command = [du_executable, '-sb', path]
    logger.debug("Querying directory size: %s", command)

    try:
        result = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False
        )
    except OSError as e:
        raise SizeQueryError(f"Unable to determine size of directory {path}: {e}")

    if result.returncode != 0:
        stderr = result.stderr.decode(errors='replace').strip()
        raise SizeQueryError(
            f"Unable to determine size of directory {path} "
            f"(exit {result.returncode}): {stderr}"
        )

    try:
        return int(result.stdout.split()[0])
    except (IndexError, ValueError):
        raise SizeQueryError(f"Unexpected du output for {path}: {result.stdout!r}")
