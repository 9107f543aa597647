"""
Backup executor - orchestrates one offsite backup.

Workflow:
1. Reject sources that would archive their own spool
2. Measure the source (skipped in quiet mode, only feeds the progress bar)
3. Run tar -> [progress] -> gpg as a streaming pipeline
4. Upload: spool to a temp file first (S3) or stream in chunks (Glacier)
5. Append the archive ID to the archive list, only after the upload is confirmed
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from offsite.config import BackupConfig
from offsite.errors import BackupError
from .archiver import ArchiveStage, ArchiveReadError
from .encryption import EncryptStage
from .pipeline import Pipeline, ProgressTap, Stage
from .records import ArchiveList, ArchiveRecord
from .sources import BackupSource, directory_size
from .storage import UploadDescriptor, create_storage, spool


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Runs the encrypted streaming backup of one directory at a time.
    """

    def __init__(self, config: BackupConfig, storage=None, archive_list: Optional[ArchiveList] = None):
        """
        Initialize backup executor.

        Args:
            config: Settings for this run
            storage: Storage backend (defaults to the one named by config.backend)
            archive_list: Archive log (defaults to config.archive_list_file)
        """
        self.config = config
        self.storage = storage if storage is not None else create_storage(config)
        self.archive_list = archive_list or ArchiveList(config.archive_list_file)
        self.logs = []

    def execute(self, source: BackupSource) -> ArchiveRecord:
        """
        Back up a source directory.

        Args:
            source: Directory to back up

        Returns:
            ArchiveRecord appended to the archive list

        Raises:
            BackupError: If any stage fails; nothing is recorded in that case
        """
        self._log(f"== Pushing {source.path} offsite")

        try:
            if source.contains(self.config.temp_dir):
                raise ArchiveReadError(
                    f"Temporary directory {self.config.temp_dir} lies inside {source.path}"
                )

            size_estimate = None if self.config.quiet else directory_size(
                source.path, self.config.du_executable
            )

            descriptor = UploadDescriptor(
                description=source.description,
                size_estimate=size_estimate,
                chunk_size=self.config.upload_chunk_size
            )

            pipeline = Pipeline(
                self._build_stages(source, size_estimate),
                timeout=self.config.stage_timeout
            )

            if self.storage.requires_content_length:
                result = pipeline.run(self._spool_then_upload(descriptor))
            else:
                result = pipeline.run(self._stream_upload(descriptor))

        except BackupError as e:
            self._log(f"Backup of {source.name} failed: {e}", logging.ERROR)
            for later in e.subordinate:
                self._log(f"  also: {later}", logging.DEBUG)
            raise

        archive_id = result.value
        self._log(f"Archive: {source.description}")
        self._log(f"Archive ID: {archive_id} ({result.bytes_out} bytes)")

        try:
            return self.archive_list.append(source.description, archive_id)
        except BackupError as e:
            # Uploaded but not recorded: keep the ID visible for manual recovery
            self._log(
                f"Archive {archive_id} for '{source.description}' was uploaded "
                f"but could not be recorded: {e}",
                logging.ERROR
            )
            raise

    def _build_stages(self, source: BackupSource, size_estimate: Optional[int]) -> List[Stage]:
        stages = [ArchiveStage(source, self.config.tar_executable)]

        if not self.config.quiet:
            stages.append(ProgressTap(size_estimate, source.name))

        stages.append(EncryptStage(
            self.config.encryption_key,
            gpg_executable=self.config.gpg_executable,
            homedir=self.config.gpg_homedir
        ))
        return stages

    def _spool_then_upload(self, descriptor: UploadDescriptor):
        def consume(stream, pipeline):
            with spool(stream, self.config.temp_dir) as spool_file:
                # Nothing leaves the machine unless every stage succeeded
                pipeline.check()

                size = os.fstat(spool_file.fileno()).st_size
                gigs = round(size / 1024 / 1024 / 1024, 2)
                self._log(f"Sending {gigs}G file to {type(self.storage).__name__}")
                return self.storage.upload(spool_file, descriptor)
        return consume

    def _stream_upload(self, descriptor: UploadDescriptor):
        def consume(stream, pipeline):
            self._log(
                f"Streaming to {type(self.storage).__name__} "
                f"in {descriptor.chunk_size // (1024 * 1024)} MiB chunks"
            )
            return self.storage.upload(stream, descriptor, before_commit=pipeline.check)
        return consume

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


@dataclass
class BackupOutcome:
    """Result of backing up one source: either a record or an error."""

    source: BackupSource
    record: Optional[ArchiveRecord] = None
    error: Optional[BackupError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.record is not None


def run_backups(config: BackupConfig, sources: Iterable[BackupSource],
                storage=None, archive_list: Optional[ArchiveList] = None) -> List[BackupOutcome]:
    """
    Back up several sources one after another.

    A failing source does not stop the others; the caller inspects the
    outcomes and decides what a partial success means.

    Args:
        config: Settings for this run
        sources: Directories to back up

    Returns:
        One BackupOutcome per source, in order
    """
    executor = BackupExecutor(config, storage, archive_list)
    outcomes = []

    for source in sources:
        try:
            outcomes.append(BackupOutcome(source, record=executor.execute(source)))
        except BackupError as e:
            outcomes.append(BackupOutcome(source, error=e))

    failed = sum(1 for outcome in outcomes if not outcome.ok)
    logger.info("Backed up %d of %d sources", len(outcomes) - failed, len(outcomes))
    return outcomes
