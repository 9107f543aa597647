"""
Durable archive list.

An append-only CSV file with one row per successful backup:

    2024-01-01_00:00 vm1,<remote archive id>

It is the only map from human-readable backups to remote identifiers, so
every append is flushed and fsync'd before returning.
"""

import os
import csv
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from offsite.errors import BackupError
from .sources import DESCRIPTION_TIME_FORMAT


logger = logging.getLogger(__name__)


class RecordWriteError(BackupError):
    """Raised when the archive list cannot be written or read."""

    def __init__(self, message: str, stage: str = 'record'):
        super().__init__(message, stage)


@dataclass(frozen=True)
class ArchiveRecord:
    """One row of the archive list."""

    description: str
    archive_id: str
    timestamp: Optional[datetime] = None

    @classmethod
    def from_row(cls, description: str, archive_id: str) -> 'ArchiveRecord':
        return cls(description, archive_id, parse_description_time(description))


def parse_description_time(description: str) -> Optional[datetime]:
    """
    Extract the backup time from a description like '2024-01-01_00:00 vm1'.

    Returns:
        Parsed datetime, or None if the description has no timestamp prefix
    """
    prefix = description.split(' ', 1)[0]
    try:
        return datetime.strptime(prefix, DESCRIPTION_TIME_FORMAT)
    except ValueError:
        return None


class ArchiveList:
    """Append-only log of uploaded archives."""

    def __init__(self, path: str):
        self.path = path

    def append(self, description: str, archive_id: str) -> ArchiveRecord:
        """
        Append one record and force it to disk.

        Only call this after the upload has been confirmed.

        Args:
            description: Human description of the backup
            archive_id: Identifier returned by the remote store

        Returns:
            The written ArchiveRecord

        Raises:
            RecordWriteError: If the row cannot be written or synced
        """
        if not archive_id:
            raise RecordWriteError("Refusing to record a backup without an archive id")

        try:
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)

            with open(self.path, 'a', newline='', encoding='utf-8') as log_out:
                csv.writer(log_out, lineterminator='\n').writerow([description, archive_id])
                log_out.flush()
                os.fsync(log_out.fileno())
        except OSError as e:
            raise RecordWriteError(f"Failed to append to archive list {self.path}: {e}")

        logger.info("Recorded archive %s: %s", description, archive_id)
        return ArchiveRecord.from_row(description, archive_id)

    def records(self) -> List[ArchiveRecord]:
        """
        Read every record back, oldest first.

        Returns:
            List of ArchiveRecord (empty if the file does not exist yet)

        Raises:
            RecordWriteError: If the file exists but cannot be parsed
        """
        if not os.path.exists(self.path):
            return []

        try:
            with open(self.path, newline='', encoding='utf-8') as log_in:
                rows = [row for row in csv.reader(log_in) if row]
        except (OSError, csv.Error) as e:
            raise RecordWriteError(f"Failed to read archive list {self.path}: {e}")

        records = []
        for line_number, row in enumerate(rows, start=1):
            if len(row) != 2:
                raise RecordWriteError(
                    f"Malformed archive list row {line_number} in {self.path}: {row!r}"
                )
            records.append(ArchiveRecord.from_row(row[0], row[1]))
        return records

    def expired(self, policy, now: Optional[datetime] = None) -> List[ArchiveRecord]:
        """
        Records whose retention horizon has passed.

        Records without a parsable timestamp are never considered expired.

        Args:
            policy: RetentionPolicy
            now: Reference time (defaults to now)
        """
        now = now or datetime.now()
        return [
            record for record in self.records()
            if record.timestamp is not None and policy.is_expired(record.timestamp, now)
        ]
