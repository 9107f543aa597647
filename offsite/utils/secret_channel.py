"""
Hands the encryption passphrase to exactly one child process.

The passphrase is written into an anonymous pipe whose write end is closed
straight away. The child inherits only the read end and opens it through
/proc/self/fd/<n> (or /dev/fd/<n>), so the passphrase never appears on disk
or in any process argument vector.
"""

import os
import select
import logging

from offsite.errors import BackupError


logger = logging.getLogger(__name__)

# Writes up to PIPE_BUF bytes are atomic and never block on an empty pipe
PIPE_BUF = getattr(select, 'PIPE_BUF', 4096)


class SecretDeliveryError(BackupError):
    """Raised when the passphrase cannot be delivered to the encryptor."""

    def __init__(self, message: str, stage: str = 'secret'):
        super().__init__(message, stage)


def _fd_directory() -> str:
    if os.path.isdir('/proc/self/fd'):
        return '/proc/self/fd'
    return '/dev/fd'


class SecretHandle:
    """
    Read end of a secret pipe, owned by the parent until the child exits.

    Pass ``pass_fds`` to ``subprocess.Popen`` and ``path`` as the file
    argument of the child.
    """

    def __init__(self, read_fd: int):
        self.fd = read_fd
        self._closed = False

    @property
    def path(self) -> str:
        return f"{_fd_directory()}/{self.fd}"

    @property
    def pass_fds(self) -> tuple:
        return (self.fd,)

    @property
    def closed(self) -> bool:
        return self._closed

    def consumed(self) -> bool:
        """
        Check whether the child drained the pipe.

        Only meaningful once the child has exited. Reading here discards
        whatever the child left behind.

        Returns:
            True if the pipe is at EOF, False if secret bytes are still queued
        """
        if self._closed:
            raise SecretDeliveryError("Secret handle already closed")

        os.set_blocking(self.fd, False)
        try:
            return os.read(self.fd, PIPE_BUF) == b''
        except BlockingIOError:
            return False

    def close(self):
        if not self._closed:
            os.close(self.fd)
            self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SecretChannel:
    """
    Single-use delivery of a passphrase.

    Usage:
        with SecretChannel(key).acquire() as handle:
            subprocess.Popen([..., '--passphrase-file', handle.path],
                             pass_fds=handle.pass_fds)
    """

    def __init__(self, secret):
        if isinstance(secret, str):
            secret = secret.encode()

        if not secret:
            raise SecretDeliveryError("Encryption secret is empty")
        if b'\n' in secret:
            # gpg stops reading the passphrase file at the first newline
            raise SecretDeliveryError("Encryption secret must not contain newlines")
        if len(secret) + 1 > PIPE_BUF:
            raise SecretDeliveryError(
                f"Encryption secret too long ({len(secret)} bytes, max {PIPE_BUF - 1})"
            )

        self._secret = secret
        self._handle = None

    def acquire(self) -> SecretHandle:
        """
        Write the secret into a fresh pipe and return its read end.

        Returns:
            SecretHandle referencing the read end

        Raises:
            SecretDeliveryError: If the channel was already used or the write fails
        """
        if self._secret is None:
            raise SecretDeliveryError("Secret channel can only be acquired once")

        read_fd, write_fd = os.pipe()
        try:
            payload = self._secret + b'\n'
            written = os.write(write_fd, payload)
            if written != len(payload):
                raise SecretDeliveryError("Short write while delivering secret")
        except OSError as e:
            os.close(read_fd)
            raise SecretDeliveryError(f"Failed to write secret to pipe: {e}")
        except SecretDeliveryError:
            os.close(read_fd)
            raise
        finally:
            # EOF for the reader
            os.close(write_fd)

        self._secret = None
        self._handle = SecretHandle(read_fd)
        logger.debug("Secret pipe ready on fd %d", read_fd)
        return self._handle
