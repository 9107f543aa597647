"""
Retention policy for remote backups.

expiry_instant() is a pure function of a backup's timestamp and the
configured horizon. RetentionManager applies it to a storage backend; the
backup pipeline itself never deletes anything.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .storage import UploadError, create_storage


logger = logging.getLogger(__name__)


def expiry_instant(timestamp: datetime, horizon_days: int) -> datetime:
    """Instant after which a backup taken at timestamp may be deleted."""
    return timestamp + timedelta(days=horizon_days)


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Expiry horizon for remote backups.

    Attributes:
        horizon_days: Days a backup is kept before it becomes deletable
    """

    horizon_days: int

    @classmethod
    def from_config(cls, config) -> 'RetentionPolicy':
        """Policy with the configured expiry_days as its horizon."""
        return cls(config.expiry_days)

    def __post_init__(self):
        if self.horizon_days < 0:
            raise ValueError(f"Retention horizon must not be negative: {self.horizon_days}")

    def expiry_instant(self, timestamp: datetime) -> datetime:
        return expiry_instant(timestamp, self.horizon_days)

    def is_expired(self, timestamp: datetime, now: datetime) -> bool:
        return self.expiry_instant(timestamp) < now

    def cutoff(self, now: datetime) -> datetime:
        """Backups taken before this instant are expired."""
        return now - timedelta(days=self.horizon_days)


class RetentionManager:
    """
    Removes expired backups from a storage backend.

    Backends that cannot delete (Glacier) are skipped with a warning.
    """

    def __init__(self, storage, policy: RetentionPolicy):
        """
        Args:
            storage: Storage backend (S3Storage or GlacierStorage)
            policy: RetentionPolicy to enforce
        """
        self.storage = storage
        self.policy = policy
        self.logs = []

    @classmethod
    def from_config(cls, config, storage=None) -> 'RetentionManager':
        """
        Build a manager for the configured backend and expiry horizon.

        Args:
            config: BackupConfig instance
            storage: Storage backend (defaults to create_storage(config))
        """
        return cls(storage or create_storage(config), RetentionPolicy.from_config(config))

    def remove_old(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Delete remote backups whose expiry instant has passed.

        Args:
            now: Reference time (defaults to now, UTC)

        Returns:
            Dict with summary of cleanup operations:
            {
                'deleted': int,
                'kept': int,
                'errors': List[str],
                'logs': List[str]
            }

        Raises:
            UploadError: If the backend cannot list its objects
        """
        summary = {'deleted': 0, 'kept': 0, 'errors': []}

        if not getattr(self.storage, 'supports_removal', False):
            self._log(
                f"{type(self.storage).__name__} does not implement the removal "
                f"of old backups, skipping",
                logging.WARNING
            )
            summary['logs'] = self.logs
            return summary

        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self._log(f"Removing backups older than {self.policy.horizon_days} days")

        for obj in self.storage.list_objects():
            last_modified = obj['LastModified']
            if last_modified.tzinfo is None:
                last_modified = last_modified.replace(tzinfo=timezone.utc)

            if not self.policy.is_expired(last_modified, now):
                summary['kept'] += 1
                continue

            try:
                self.storage.delete(obj['Key'])
                summary['deleted'] += 1
                self._log(f"Deleted expired backup: {obj['Key']}")
            except UploadError as e:
                error_msg = f"Failed to delete {obj['Key']}: {e}"
                self._log(error_msg, logging.ERROR)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Deleted: {summary['deleted']}, "
            f"Kept: {summary['kept']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
