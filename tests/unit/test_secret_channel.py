"""
Unit tests for passphrase delivery (offsite/utils/secret_channel.py).

Tests SecretChannel and SecretHandle.
"""

import os
import sys
import subprocess

import pytest

from offsite.utils.secret_channel import (
    SecretChannel,
    SecretHandle,
    SecretDeliveryError,
    PIPE_BUF
)

from conftest import requires_proc


READ_ONCE = 'import sys; sys.stdout.write(open(sys.argv[1]).read())'


class TestSecretChannel:
    """Test SecretChannel construction and acquisition."""

    def test_acquire_returns_readable_handle(self, secret):
        """Test the secret can be read from the handle's descriptor."""
        handle = SecretChannel(secret).acquire()
        try:
            assert isinstance(handle, SecretHandle)
            assert handle.path.endswith(f"/{handle.fd}")
            assert handle.pass_fds == (handle.fd,)
            assert os.read(handle.fd, 4096) == secret.encode() + b'\n'
            # Write end is closed, so the reader sees EOF
            assert os.read(handle.fd, 4096) == b''
        finally:
            handle.close()

    def test_accepts_bytes(self):
        """Test bytes secrets are used as-is."""
        with SecretChannel(b'binary-key').acquire() as handle:
            assert os.read(handle.fd, 4096) == b'binary-key\n'

    def test_acquire_only_once(self, secret):
        """Test a channel cannot be reused for a second process."""
        channel = SecretChannel(secret)
        with channel.acquire():
            with pytest.raises(SecretDeliveryError) as exc_info:
                channel.acquire()

        assert 'only be acquired once' in str(exc_info.value)

    @pytest.mark.parametrize('bad_secret', ['', b'', 'two\nlines'])
    def test_rejects_unusable_secrets(self, bad_secret):
        """Test empty and multi-line secrets are refused."""
        with pytest.raises(SecretDeliveryError):
            SecretChannel(bad_secret)

    def test_rejects_secret_larger_than_pipe_buf(self):
        """Test the secret must fit in one atomic pipe write."""
        with pytest.raises(SecretDeliveryError) as exc_info:
            SecretChannel('x' * PIPE_BUF)

        assert 'too long' in str(exc_info.value)

    def test_error_names_stage(self):
        """Test errors identify the secret stage."""
        with pytest.raises(SecretDeliveryError) as exc_info:
            SecretChannel('')

        assert exc_info.value.stage == 'secret'
        assert str(exc_info.value).startswith('secret:')


class TestSecretHandle:
    """Test SecretHandle when handed to a child process."""

    @requires_proc
    def test_child_reads_secret_through_path(self, secret):
        """Test a child opens the fd path and the secret is not in its argv."""
        with SecretChannel(secret).acquire() as handle:
            argv = [sys.executable, '-c', READ_ONCE, handle.path]
            result = subprocess.run(
                argv,
                pass_fds=handle.pass_fds,
                stdout=subprocess.PIPE,
                check=True
            )

            assert result.stdout.decode() == secret + '\n'
            assert all(secret not in arg for arg in argv)
            assert handle.consumed() is True

    def test_consumed_false_when_nobody_read(self, secret):
        """Test an unread secret is reported as not consumed."""
        with SecretChannel(secret).acquire() as handle:
            assert handle.consumed() is False

    def test_close_is_idempotent(self, secret):
        """Test closing twice is harmless and consumed() then fails."""
        handle = SecretChannel(secret).acquire()
        handle.close()
        handle.close()

        assert handle.closed
        with pytest.raises(SecretDeliveryError):
            handle.consumed()

    def test_secret_not_written_to_disk(self, secret, tmp_path, monkeypatch):
        """Test acquiring a handle creates no files."""
        monkeypatch.chdir(tmp_path)
        before = set(os.listdir(tmp_path))

        with SecretChannel(secret).acquire():
            pass

        assert set(os.listdir(tmp_path)) == before
