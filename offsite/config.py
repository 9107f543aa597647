import os
import tempfile
from dataclasses import dataclass, field
from typing import Mapping, Optional


MiB = 1024 * 1024


def _flag(value: Optional[str]) -> bool:
    return (value or 'false').lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BackupConfig:
    """
    Settings consumed by the backup pipeline.

    Built once by the caller and passed explicitly into each component;
    nothing reads configuration from module-level state.
    """

    # Encryption
    encryption_key: str = field(default='', repr=False)

    # Remote store: 's3' (spool then upload) or 'glacier' (multipart stream)
    backend: str = 's3'
    aws_access_key: Optional[str] = None
    aws_secret_key: Optional[str] = field(default=None, repr=False)
    aws_region: str = 'us-east-1'
    s3_bucket: Optional[str] = None
    s3_prefix: str = ''
    glacier_vault: Optional[str] = None
    upload_chunk_size: int = 8 * MiB

    # Local
    temp_dir: str = field(default_factory=tempfile.gettempdir)
    archive_list_file: str = 'archives.csv'
    log_dir: Optional[str] = None
    quiet: bool = False
    debug: bool = False

    # Retention
    expiry_days: int = 90

    # External programs
    tar_executable: str = 'tar'
    gpg_executable: str = 'gpg'
    du_executable: str = 'du'
    gpg_homedir: Optional[str] = None

    # Seconds a stage gets between SIGTERM and SIGKILL
    stage_timeout: float = 30.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'BackupConfig':
        """Build a configuration from OFFSITE_* environment variables."""
        env = os.environ if environ is None else environ
        defaults = cls()

        return cls(
            encryption_key=env.get('OFFSITE_ENCRYPTION_KEY') or '',
            backend=env.get('OFFSITE_BACKEND') or defaults.backend,
            aws_access_key=env.get('AWS_ACCESS_KEY_ID'),
            aws_secret_key=env.get('AWS_SECRET_ACCESS_KEY'),
            aws_region=env.get('AWS_DEFAULT_REGION') or defaults.aws_region,
            s3_bucket=env.get('OFFSITE_S3_BUCKET'),
            s3_prefix=env.get('OFFSITE_S3_PREFIX') or '',
            glacier_vault=env.get('OFFSITE_GLACIER_VAULT'),
            upload_chunk_size=int(env.get('OFFSITE_UPLOAD_CHUNK_SIZE') or defaults.upload_chunk_size),
            temp_dir=env.get('OFFSITE_TEMP_DIR') or defaults.temp_dir,
            archive_list_file=env.get('OFFSITE_ARCHIVE_LIST_FILE') or defaults.archive_list_file,
            log_dir=env.get('OFFSITE_LOG_DIR'),
            quiet=_flag(env.get('OFFSITE_QUIET')),
            debug=_flag(env.get('OFFSITE_DEBUG')),
            expiry_days=int(env.get('OFFSITE_EXPIRY_DAYS') or defaults.expiry_days),
            tar_executable=env.get('OFFSITE_TAR') or defaults.tar_executable,
            gpg_executable=env.get('OFFSITE_GPG') or defaults.gpg_executable,
            du_executable=env.get('OFFSITE_DU') or defaults.du_executable,
            gpg_homedir=env.get('OFFSITE_GPG_HOMEDIR'),
            stage_timeout=float(env.get('OFFSITE_STAGE_TIMEOUT') or defaults.stage_timeout),
        )

    def validate(self) -> 'BackupConfig':
        """
        Check that the settings describe a usable backup run.

        Raises:
            ValueError: On the first problem found
        """
        if not self.encryption_key:
            raise ValueError("No encryption key configured")

        if self.backend == 's3':
            if not self.s3_bucket:
                raise ValueError("No S3 bucket configured")
        elif self.backend == 'glacier':
            if not self.glacier_vault:
                raise ValueError("No Glacier vault configured")
        else:
            raise ValueError(f"Invalid storage backend: {self.backend}")

        if self.upload_chunk_size <= 0:
            raise ValueError(f"Upload chunk size must be positive: {self.upload_chunk_size}")
        if self.expiry_days < 0:
            raise ValueError(f"Expiry days must not be negative: {self.expiry_days}")
        if self.stage_timeout <= 0:
            raise ValueError(f"Stage timeout must be positive: {self.stage_timeout}")

        return self
