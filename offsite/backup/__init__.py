"""
Backup module for offsite.

This module handles the encrypted streaming backup pipeline:
- Archiving (tar)
- Encryption (gpg, passphrase over an inherited pipe)
- Pipeline composition and progress
- Remote storage (S3 and Glacier)
- The archive list and retention policy
"""

from offsite.errors import BackupError
from offsite.utils.secret_channel import SecretChannel, SecretDeliveryError
from .sources import BackupSource, SizeQueryError, directory_size
from .archiver import ArchiveStage, ArchiveReadError
from .encryption import EncryptStage, EncryptionError, decrypt
from .pipeline import Pipeline, PipelineResult, ProgressTap, ForwardOnlyReader
from .storage import S3Storage, GlacierStorage, UploadDescriptor, UploadError, create_storage
from .records import ArchiveList, ArchiveRecord, RecordWriteError
from .retention import RetentionPolicy, RetentionManager, expiry_instant
from .executor import BackupExecutor, BackupOutcome, run_backups

__all__ = [
    'BackupError',
    'SecretChannel',
    'SecretDeliveryError',
    'BackupSource',
    'SizeQueryError',
    'directory_size',
    'ArchiveStage',
    'ArchiveReadError',
    'EncryptStage',
    'EncryptionError',
    'decrypt',
    'Pipeline',
    'PipelineResult',
    'ProgressTap',
    'ForwardOnlyReader',
    'S3Storage',
    'GlacierStorage',
    'UploadDescriptor',
    'UploadError',
    'create_storage',
    'ArchiveList',
    'ArchiveRecord',
    'RecordWriteError',
    'RetentionPolicy',
    'RetentionManager',
    'expiry_instant',
    'BackupExecutor',
    'BackupOutcome',
    'run_backups',
]
