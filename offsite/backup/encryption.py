"""
Encryption stage: symmetric AES-256 via GnuPG.

The passphrase reaches gpg through a SecretChannel (an inherited pipe read
via --passphrase-file /proc/self/fd/<n>), never through the filesystem or
the argument vector. gpg compression is always off.
"""

import shutil
import logging
from typing import Any, Dict, List, Optional

from offsite.errors import BackupError
from offsite.utils.secret_channel import SecretChannel, SecretDeliveryError
from .pipeline import Pipeline, ProcessStage


logger = logging.getLogger(__name__)

CIPHER_ALGO = 'AES256'


class EncryptionError(BackupError):
    """Raised when gpg fails to encrypt or decrypt a stream."""

    def __init__(self, message: str, stage: str = 'encrypt'):
        super().__init__(message, stage)


def _gpg_base_command(gpg_executable: str, passphrase_path: str,
                      homedir: Optional[str] = None) -> List[str]:
    command = [
        gpg_executable,
        '--batch',
        '--no-tty',
        '--pinentry-mode', 'loopback',
        '--no-symkey-cache',
    ]
    if homedir:
        command += ['--homedir', homedir]
    command += ['--passphrase-file', passphrase_path]
    return command


def build_gpg_command(passphrase_path: str, gpg_executable: str = 'gpg',
                      homedir: Optional[str] = None) -> List[str]:
    """
    Build the gpg argument vector for symmetric encryption of stdin to stdout.

    Args:
        passphrase_path: Path the child opens to read the passphrase
        gpg_executable: gpg binary to run
        homedir: Optional GnuPG home directory

    Returns:
        Argument vector (contains the passphrase path, never the passphrase)
    """
    return _gpg_base_command(gpg_executable, passphrase_path, homedir) + [
        '--symmetric',
        '--cipher-algo', CIPHER_ALGO,
        '--compress-algo', 'none',
        '--output', '-',
    ]


def build_gpg_decrypt_command(passphrase_path: str, cipher_path: str,
                              gpg_executable: str = 'gpg',
                              homedir: Optional[str] = None) -> List[str]:
    return _gpg_base_command(gpg_executable, passphrase_path, homedir) + [
        '--decrypt',
        '--output', '-',
        '--',
        cipher_path,
    ]


class _SecretStage(ProcessStage):
    """gpg process that reads its passphrase from a SecretChannel."""

    error_class = EncryptionError

    def __init__(self, name: str, secret, gpg_executable: str = 'gpg',
                 homedir: Optional[str] = None):
        super().__init__(name)
        self.channel = SecretChannel(secret)
        self.gpg_executable = gpg_executable
        self.homedir = homedir
        self.handle = None

    def start(self, stdin):
        self.handle = self.channel.acquire()
        try:
            return super().start(stdin)
        except Exception:
            self.handle.close()
            raise

    def popen_kwargs(self) -> Dict[str, Any]:
        return {'pass_fds': self.handle.pass_fds}

    def failure(self, returncode: int, stderr: str) -> BaseException:
        if (self.handle is not None and not self.handle.closed
                and not self.handle.consumed()):
            return SecretDeliveryError(
                f"{self.gpg_executable} never read the passphrase "
                f"(exit {returncode}): {stderr}"
            )
        return super().failure(returncode, stderr)

    def close(self):
        super().close()
        if self.handle is not None:
            self.handle.close()


class EncryptStage(_SecretStage):
    """Transform stage encrypting its input with a symmetric passphrase."""

    def __init__(self, secret, gpg_executable: str = 'gpg', homedir: Optional[str] = None):
        super().__init__('encrypt', secret, gpg_executable, homedir)

    def command(self) -> List[str]:
        return build_gpg_command(self.handle.path, self.gpg_executable, self.homedir)

    def start(self, stdin):
        if stdin is None:
            raise ValueError("The encrypt stage needs an input stream")
        return super().start(stdin)


class DecryptStage(_SecretStage):
    """Producer stage decrypting an encrypted archive file."""

    def __init__(self, cipher_path: str, secret, gpg_executable: str = 'gpg',
                 homedir: Optional[str] = None):
        super().__init__('decrypt', secret, gpg_executable, homedir)
        self.cipher_path = cipher_path

    def command(self) -> List[str]:
        return build_gpg_decrypt_command(
            self.handle.path, self.cipher_path, self.gpg_executable, self.homedir
        )


def decrypt(cipher_path: str, secret, output, gpg_executable: str = 'gpg',
            homedir: Optional[str] = None, timeout: float = 30.0) -> int:
    """
    Decrypt an archive produced by EncryptStage.

    The plaintext written to output must be discarded unless this call
    returns; gpg only reports a wrong passphrase or tampering through its
    exit status.

    Args:
        cipher_path: Path of the encrypted file
        secret: Passphrase used for encryption
        output: Binary file object receiving the plaintext

    Returns:
        Number of plaintext bytes written

    Raises:
        EncryptionError: If the passphrase is wrong or the data is corrupt
        SecretDeliveryError: If gpg could not read the passphrase
    """
    def copy_out(stream, pipeline):
        shutil.copyfileobj(stream, output)
        pipeline.check()

    stage = DecryptStage(cipher_path, secret, gpg_executable, homedir)
    result = Pipeline([stage], timeout=timeout).run(copy_out)
    logger.info("Decrypted %s (%d bytes)", cipher_path, result.bytes_out)
    return result.bytes_out
