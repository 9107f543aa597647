"""
Unit tests for backup executor (offsite/backup/executor.py).

Tests the complete backup workflow: tar -> gpg -> upload -> archive list.
End-to-end tests use the real tar and gpg binaries; remote stores are moto
(S3) or a mocked client (Glacier).
"""

import io
import os
import logging
import tarfile
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from offsite.backup.archiver import ArchiveStage, ArchiveReadError
from offsite.backup.encryption import EncryptStage, decrypt
from offsite.backup.executor import BackupExecutor, run_backups
from offsite.backup.pipeline import ProgressTap
from offsite.backup.records import ArchiveList, RecordWriteError
from offsite.backup.sources import BackupSource
from offsite.backup.storage import MiB, UploadError

from conftest import requires_gpg, requires_tar


def spooling_storage(archive_id='key-1'):
    """MagicMock backend that wants a spooled, seekable stream."""
    storage = MagicMock()
    storage.requires_content_length = True
    storage.upload.return_value = archive_id
    return storage


def read_archive_list(config):
    with open(config.archive_list_file) as f:
        return f.read().splitlines()


class TestBuildStages:
    """Test the stage list for quiet and interactive runs."""

    def test_quiet_has_no_progress_tap(self, config, backup_source):
        executor = BackupExecutor(config, storage=spooling_storage())

        stages = executor._build_stages(backup_source, None)

        assert [type(stage) for stage in stages] == [ArchiveStage, EncryptStage]

    def test_progress_tap_when_not_quiet(self, config, backup_source):
        config.quiet = False
        executor = BackupExecutor(config, storage=spooling_storage())

        stages = executor._build_stages(backup_source, 1234)

        assert [type(stage) for stage in stages] == [ArchiveStage, ProgressTap, EncryptStage]
        assert stages[1].total_bytes == 1234
        assert stages[1].description == 'vm1'


class TestBackupExecutorFailures:
    """Test that failed backups never reach the archive list."""

    def test_temp_dir_inside_source(self, config, backup_source, source_dir):
        """Test a spool inside the source directory is refused up front."""
        config.temp_dir = str(source_dir / 'tmp')
        storage = spooling_storage()
        executor = BackupExecutor(config, storage=storage)

        with pytest.raises(ArchiveReadError) as exc_info:
            executor.execute(backup_source)

        assert 'lies inside' in str(exc_info.value)
        storage.upload.assert_not_called()
        assert not os.path.exists(config.archive_list_file)

    @requires_gpg
    def test_archive_failure_uploads_nothing(self, config, backup_source, spool_dir):
        """Test a failing tar stops the backup before anything is sent."""
        config.tar_executable = 'false'
        storage = spooling_storage()
        executor = BackupExecutor(config, storage=storage)

        with pytest.raises(ArchiveReadError) as exc_info:
            executor.execute(backup_source)

        assert exc_info.value.stage == 'archive'
        storage.upload.assert_not_called()
        assert not os.path.exists(config.archive_list_file)
        assert os.listdir(spool_dir) == []
        assert any('failed' in line for line in executor.logs)

    def test_size_query_runs_unless_quiet(self, config, backup_source):
        """Test du is consulted only for the progress bar."""
        config.quiet = False
        executor = BackupExecutor(config, storage=spooling_storage())

        with patch('offsite.backup.executor.directory_size') as mock_size, \
                patch('offsite.backup.executor.Pipeline') as mock_pipeline:
            mock_size.return_value = 4096
            mock_pipeline.return_value.run.return_value = MagicMock(value='key-1', bytes_out=10)
            executor.execute(backup_source)

        mock_size.assert_called_once_with(backup_source.path, 'du')

    @requires_tar
    @requires_gpg
    def test_record_failure_logs_archive_id(self, config, backup_source):
        """Test an uploaded but unrecorded archive is reported with its ID."""
        archive_list = MagicMock()
        archive_list.append.side_effect = RecordWriteError("disk full")
        executor = BackupExecutor(config, storage=spooling_storage('key-42'), archive_list=archive_list)

        with pytest.raises(RecordWriteError):
            executor.execute(backup_source)

        assert any('key-42' in line and 'could not be recorded' in line for line in executor.logs)


@requires_tar
@requires_gpg
class TestBackupExecutorS3:
    """End-to-end backups into a moto S3 bucket."""

    def test_backup_round_trip(self, config, backup_source, source_dir, mock_s3, spool_dir, tmp_path, secret):
        """Test one record is written and the object decrypts to the directory."""
        (source_dir / 'big.vdi').write_bytes(os.urandom(10 * MiB))
        tree_size = 10 * MiB + 256 * 1024

        record = BackupExecutor(config).execute(backup_source)

        assert read_archive_list(config) == [f"2024-01-01_00:00 vm1,{record.archive_id}"]
        assert os.listdir(spool_dir) == []

        ciphertext = mock_s3.Object('test-bucket', record.archive_id).get()['Body'].read()
        assert tree_size < len(ciphertext) < tree_size + 64 * 1024

        cipher_path = tmp_path / 'download.tar.gpg'
        cipher_path.write_bytes(ciphertext)
        plain = io.BytesIO()
        decrypt(str(cipher_path), secret, plain, homedir=config.gpg_homedir)
        plain.seek(0)

        with tarfile.open(fileobj=plain) as tar:
            assert tar.extractfile('vm1/big.vdi').read() == (source_dir / 'big.vdi').read_bytes()
            assert tar.extractfile('vm1/disk.vdi').read() == (source_dir / 'disk.vdi').read_bytes()

    def test_secret_not_logged(self, config, backup_source, mock_s3, secret, caplog):
        executor = BackupExecutor(config)

        with caplog.at_level(logging.DEBUG, logger='offsite'):
            executor.execute(backup_source)

        assert secret not in caplog.text
        assert all(secret not in line for line in executor.logs)

    def test_run_backups_continues_after_failure(self, config, backup_source, tmp_path, mock_s3):
        """Test a broken source does not prevent the next one."""
        missing = BackupSource(str(tmp_path / 'gone'), 'gone', backup_source.timestamp)

        outcomes = run_backups(config, [missing, backup_source])

        assert [outcome.ok for outcome in outcomes] == [False, True]
        assert isinstance(outcomes[0].error, ArchiveReadError)
        assert outcomes[1].record.description == '2024-01-01_00:00 vm1'
        assert len(read_archive_list(config)) == 1


@requires_tar
@requires_gpg
class TestBackupExecutorGlacier:
    """End-to-end streaming backups into a mocked Glacier vault."""

    def test_streaming_backup(self, config, backup_source, mock_glacier_client, spool_dir):
        """Test the archive is streamed in parts and recorded after completion."""
        config.backend = 'glacier'

        record = BackupExecutor(config).execute(backup_source)

        assert record.archive_id == 'archive-1'
        assert read_archive_list(config) == ['2024-01-01_00:00 vm1,archive-1']
        assert os.listdir(spool_dir) == []

        sent = sum(len(c.kwargs['body']) for c in mock_glacier_client.upload_multipart_part.call_args_list)
        complete_kwargs = mock_glacier_client.complete_multipart_upload.call_args.kwargs
        assert complete_kwargs['archiveSize'] == str(sent)

    def test_failed_part_aborts_and_records_nothing(self, config, backup_source, source_dir,
                                                    mock_glacier_client):
        """Test a part failure midway aborts the upload and stops tar and gpg."""
        config.backend = 'glacier'
        (source_dir / 'disk.vdi').write_bytes(os.urandom(MiB * 5 // 2))
        mock_glacier_client.upload_multipart_part.side_effect = [
            {'checksum': 'a'},
            {'checksum': 'b'},
            ClientError({'Error': {'Code': 'RequestTimeoutException', 'Message': 'x'}}, 'UploadMultipartPart')
        ]
        executor = BackupExecutor(config)

        with pytest.raises(UploadError) as exc_info:
            executor.execute(backup_source)

        assert 'after 2 parts' in str(exc_info.value)
        mock_glacier_client.abort_multipart_upload.assert_called_once()
        mock_glacier_client.complete_multipart_upload.assert_not_called()
        assert not os.path.exists(config.archive_list_file)

    def test_archive_failure_aborts_upload(self, config, backup_source, mock_glacier_client):
        """Test an upstream failure found at commit time aborts the upload."""
        config.backend = 'glacier'
        config.tar_executable = 'false'

        with pytest.raises(ArchiveReadError):
            BackupExecutor(config).execute(backup_source)

        mock_glacier_client.abort_multipart_upload.assert_called_once()
        mock_glacier_client.complete_multipart_upload.assert_not_called()
        assert not os.path.exists(config.archive_list_file)

    def test_archive_list_object(self, config, backup_source, mock_glacier_client):
        config.backend = 'glacier'
        archive_list = ArchiveList(config.archive_list_file)

        BackupExecutor(config, archive_list=archive_list).execute(backup_source)

        assert [r.archive_id for r in archive_list.records()] == ['archive-1']
