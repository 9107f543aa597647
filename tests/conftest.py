"""
Shared pytest fixtures for offsite tests.

This module provides fixtures for:
- Source directories to back up
- An isolated GnuPG home directory
- A BackupConfig wired to temporary paths
- Mock fixtures for AWS (moto S3, MagicMock Glacier client)
- Small pipeline stages for driving the composer without tar/gpg
"""

import os
import sys
import shutil
import subprocess
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from offsite.config import BackupConfig
from offsite.backup.pipeline import ProcessStage, Stage
from offsite.backup.sources import BackupSource


TEST_SECRET = 'correct horse battery staple'

requires_tar = pytest.mark.skipif(shutil.which('tar') is None, reason='tar not installed')
requires_gpg = pytest.mark.skipif(shutil.which('gpg') is None, reason='gpg not installed')
requires_du = pytest.mark.skipif(
    shutil.which('du') is None or not sys.platform.startswith('linux'),
    reason='GNU du not available'
)
requires_proc = pytest.mark.skipif(not os.path.isdir('/proc/self/fd'), reason='needs /proc')


@pytest.fixture
def secret():
    return TEST_SECRET


@pytest.fixture
def source_dir(tmp_path):
    """
    Create a small VM-like directory.

    Creates:
    - vm1/vm1.vbox
    - vm1/disk.vdi (random bytes)
    - vm1/Logs/VBox.log
    """
    vm_dir = tmp_path / 'machines' / 'vm1'
    (vm_dir / 'Logs').mkdir(parents=True)

    (vm_dir / 'vm1.vbox').write_text('<VirtualBox/>\n')
    (vm_dir / 'disk.vdi').write_bytes(os.urandom(256 * 1024))
    (vm_dir / 'Logs' / 'VBox.log').write_text('VirtualBox VM log\n')

    return vm_dir


@pytest.fixture
def backup_source(source_dir):
    return BackupSource(str(source_dir), 'vm1', datetime(2024, 1, 1, 0, 0))


@pytest.fixture
def gpg_home(tmp_path):
    """
    Isolated GnuPG home directory; the agent started in it is stopped afterwards.
    """
    home = tmp_path / 'gnupg'
    home.mkdir(mode=0o700)
    os.chmod(home, 0o700)

    yield str(home)

    if shutil.which('gpgconf'):
        subprocess.run(
            ['gpgconf', '--homedir', str(home), '--kill', 'gpg-agent'],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False
        )


@pytest.fixture
def spool_dir(tmp_path):
    path = tmp_path / 'spool'
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, gpg_home, spool_dir):
    """
    BackupConfig for the S3 backend, quiet, with all paths under tmp_path.
    """
    return BackupConfig(
        encryption_key=TEST_SECRET,
        backend='s3',
        aws_access_key='testing',
        aws_secret_key='testing',
        aws_region='us-east-1',
        s3_bucket='test-bucket',
        glacier_vault='test-vault',
        upload_chunk_size=1024 * 1024,
        temp_dir=str(spool_dir),
        archive_list_file=str(tmp_path / 'archives.csv'),
        quiet=True,
        expiry_days=30,
        gpg_homedir=gpg_home,
        stage_timeout=5.0
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_glacier_client():
    """
    MagicMock Glacier client patched into boto3.client for storage.py.

    initiate_multipart_upload returns uploadId 'upload-1' and
    complete_multipart_upload returns archiveId 'archive-1'.
    """
    with patch('offsite.backup.storage.boto3.client') as mock_client_factory:
        client = MagicMock()
        client.initiate_multipart_upload.return_value = {'uploadId': 'upload-1'}
        client.upload_multipart_part.return_value = {'checksum': 'ignored'}
        client.complete_multipart_upload.return_value = {'archiveId': 'archive-1'}
        mock_client_factory.return_value = client
        yield client


class CommandStage(ProcessStage):
    """Process stage running an arbitrary argument vector."""

    def __init__(self, name, argv):
        super().__init__(name)
        self._argv = argv

    def command(self):
        return list(self._argv)


class FileStage(Stage):
    """Producer stage that reads a local file in-process."""

    name = 'file'

    def __init__(self, path):
        super().__init__()
        self.path = path
        self._file = None

    def start(self, stdin):
        self._file = open(self.path, 'rb')
        return self._file

    def wait(self, timeout=None):
        pass

    def terminate(self, timeout):
        pass

    @property
    def running(self):
        return False

    def close(self):
        if self._file is not None:
            self._file.close()


def python_stage(name, code):
    """CommandStage running a Python snippet with the current interpreter."""
    return CommandStage(name, [sys.executable, '-c', code])


@pytest.fixture
def stages():
    """Factories for test stages: python_stage(name, code) and FileStage(path)."""
    return {'python': python_stage, 'file': FileStage, 'command': CommandStage}
