"""
Remote storage backends for encrypted archives.

Supports:
- S3Storage: spool-then-upload; needs the full size before the PUT
- GlacierStorage: multipart upload straight from the pipeline, chunk by chunk

Backends advertise ``requires_content_length``; the executor spools the
stream to a temporary file only when the backend needs it.
"""

import os
import re
import math
import shutil
import hashlib
import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import quote

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from offsite.errors import BackupError
from .records import parse_description_time


logger = logging.getLogger(__name__)

MiB = 1024 * 1024
GiB = 1024 * MiB

# Glacier tree hashes are built from 1 MiB leaves
TREE_HASH_LEAF_SIZE = MiB

# Both S3 and Glacier reject part numbers above this
MAX_PARTS = 10000

GLACIER_MAX_PART_SIZE = 4 * GiB


class UploadError(BackupError):
    """Raised when the remote store rejects or fails an upload."""

    def __init__(self, message: str, stage: str = 'upload'):
        super().__init__(message, stage)


@dataclass(frozen=True)
class UploadDescriptor:
    """
    What to upload and how.

    Attributes:
        description: Human description stored with the archive
        size_estimate: Expected size in bytes, or None if unknown
        chunk_size: Multipart chunk size in bytes
    """

    description: str
    size_estimate: Optional[int] = None
    chunk_size: int = 8 * MiB


def _client_error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


def safe_key_component(text: str) -> str:
    """Replace anything but letters, digits, '-', '_' and '.' with underscores."""
    return re.sub(r'[^A-Za-z0-9._-]', '_', text)


def leaf_hashes(data: bytes) -> List[bytes]:
    """SHA-256 digests of each 1 MiB slice of data."""
    return [
        hashlib.sha256(data[offset:offset + TREE_HASH_LEAF_SIZE]).digest()
        for offset in range(0, len(data), TREE_HASH_LEAF_SIZE)
    ] or [hashlib.sha256(b'').digest()]


def tree_hash(hashes: List[bytes]) -> str:
    """
    Combine leaf digests into a Glacier SHA-256 tree hash.

    Args:
        hashes: Leaf digests in stream order

    Returns:
        Hex-encoded root digest
    """
    if not hashes:
        return hashlib.sha256(b'').hexdigest()

    level = list(hashes)
    while len(level) > 1:
        paired = []
        for i in range(0, len(level), 2):
            if i + 1 < len(level):
                paired.append(hashlib.sha256(level[i] + level[i + 1]).digest())
            else:
                paired.append(level[i])
        level = paired
    return level[0].hex()


def validate_glacier_chunk_size(chunk_size: int):
    """
    Glacier part sizes must be 1 MiB times a power of two, up to 4 GiB.

    Raises:
        ValueError: If chunk_size is not an allowed part size
    """
    if chunk_size < MiB or chunk_size > GLACIER_MAX_PART_SIZE or chunk_size % MiB:
        raise ValueError(f"Invalid Glacier chunk size: {chunk_size}")

    mebibytes = chunk_size // MiB
    if mebibytes & (mebibytes - 1):
        raise ValueError(
            f"Glacier chunk size must be a power-of-two number of MiB, got {chunk_size}"
        )


def glacier_part_size(chunk_size: int, size_estimate: Optional[int] = None,
                      max_parts: int = MAX_PARTS) -> int:
    """
    Smallest allowed part size, at least chunk_size, that fits the estimate.

    The estimate is the plaintext size; 1% plus 1 MiB is added for
    encryption and archive overhead.

    Raises:
        ValueError: If chunk_size is invalid or even the largest part size
            cannot hold the estimate
    """
    validate_glacier_chunk_size(chunk_size)
    if not size_estimate:
        return chunk_size

    needed = size_estimate + size_estimate // 100 + MiB
    part_size = chunk_size
    while part_size * max_parts < needed:
        if part_size * 2 > GLACIER_MAX_PART_SIZE:
            raise ValueError(
                f"Archive of about {size_estimate} bytes does not fit in "
                f"{max_parts} Glacier parts"
            )
        part_size *= 2
    return part_size


@contextmanager
def spool(stream, temp_dir: Optional[str] = None):
    """
    Materialise a stream in a temporary file.

    The file is removed when the block exits, whether it succeeded or not.

    Yields:
        Temporary file object positioned at offset 0

    Raises:
        UploadError: If the spool cannot be written
    """
    try:
        spool_file = tempfile.NamedTemporaryFile(prefix='offsite_', suffix='.tar.gpg', dir=temp_dir)
    except OSError as e:
        raise UploadError(f"Failed to create spool file in {temp_dir}: {e}", 'spool')

    with spool_file:
        try:
            shutil.copyfileobj(stream, spool_file)
            spool_file.flush()
            spool_file.seek(0)
        except OSError as e:
            raise UploadError(f"Failed to write spool file {spool_file.name}: {e}", 'spool')

        logger.debug("Spooled %d bytes to %s", os.fstat(spool_file.fileno()).st_size, spool_file.name)
        yield spool_file


class S3Storage:
    """
    Handler for uploading encrypted backups to AWS S3.

    Uploads archives with a structured key format:
    {prefix}{name}/{YYYY}/{MM}/{description}.tar.gpg
    """

    requires_content_length = True
    supports_removal = True

    # put_object refuses bodies above 5 GiB
    SINGLE_UPLOAD_LIMIT = 5 * GiB
    MIN_PART_SIZE = 5 * MiB
    MAX_PARTS = MAX_PARTS

    def __init__(self, access_key: str, secret_key: str, bucket_name: str,
                 region: str = 'us-east-1', prefix: str = ''):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            prefix: Optional key prefix, e.g. 'offsite/'
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise UploadError(f"Failed to initialize S3 client: {e}")

    def key_for(self, description: str) -> str:
        """
        Build the object key for a backup description like '2024-01-01_00:00 vm1'.

        The year/month folders come from the description's timestamp, or from
        the current time when it has none.
        """
        _, _, name = description.partition(' ')
        taken = parse_description_time(description) or datetime.now()
        return (
            f"{self.prefix}{safe_key_component(name or description)}/"
            f"{taken.year}/{taken.month:02d}/{safe_key_component(description)}.tar.gpg"
        )

    def upload(self, stream, descriptor: UploadDescriptor,
               before_commit: Optional[Callable[[], None]] = None) -> str:
        """
        Upload a spooled archive to S3.

        Args:
            stream: Seekable binary file holding the complete archive
            descriptor: Upload parameters
            before_commit: Optional check run right before the upload starts

        Returns:
            S3 key of uploaded object

        Raises:
            UploadError: If the stream is not seekable or the upload fails
        """
        if not stream.seekable():
            raise UploadError("S3 uploads need a known size; spool the stream first")

        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(0)

        if before_commit is not None:
            before_commit()

        s3_key = self.key_for(descriptor.description)
        logger.info("Uploading %.2f MiB to s3://%s/%s", size / MiB, self.bucket_name, s3_key)

        try:
            if size > self.SINGLE_UPLOAD_LIMIT:
                self._multipart_upload(stream, s3_key, size, descriptor)
            else:
                self._simple_upload(stream, s3_key, size, descriptor)
            return s3_key

        except ClientError as e:
            raise UploadError(f"S3 upload failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"S3 upload failed: {e}")

    def _metadata(self, descriptor: UploadDescriptor) -> dict:
        # Metadata values must be ASCII
        return {'description': quote(descriptor.description)}

    def _simple_upload(self, stream, s3_key: str, size: int, descriptor: UploadDescriptor):
        self.s3_client.put_object(
            Bucket=self.bucket_name,
            Key=s3_key,
            Body=stream,
            ContentLength=size,
            Metadata=self._metadata(descriptor)
        )

    def _multipart_upload(self, stream, s3_key: str, size: int, descriptor: UploadDescriptor):
        """
        Upload a large spool with the S3 multipart API.

        Args:
            stream: Spool file positioned at 0
            s3_key: S3 object key
            size: Spool size in bytes
            descriptor: Upload parameters (chunk_size is raised to the S3
                minimum, and further so the spool fits in MAX_PARTS parts)
        """
        chunk_size = max(descriptor.chunk_size, self.MIN_PART_SIZE, math.ceil(size / self.MAX_PARTS))

        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            Metadata=self._metadata(descriptor)
        )
        upload_id = response['UploadId']

        parts = []

        try:
            part_number = 1
            while True:
                data = stream.read(chunk_size)
                if not data:
                    break

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

                part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning("Failed to abort multipart upload %s: %s", upload_id, abort_error)
            raise

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Raises:
            UploadError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=s3_key
            )
        except ClientError as e:
            raise UploadError(f"S3 delete failed ({_client_error_code(e)}): {e}", 'remove')
        except BotoCoreError as e:
            raise UploadError(f"Failed to delete from S3: {e}", 'remove')

    def list_objects(self, prefix: Optional[str] = None) -> list:
        """
        List objects in S3 with given prefix.

        Args:
            prefix: Key prefix to filter by (defaults to the storage prefix)

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            UploadError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name,
                                           Prefix=self.prefix if prefix is None else prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            raise UploadError(f"S3 list failed ({_client_error_code(e)}): {e}", 'list')
        except BotoCoreError as e:
            raise UploadError(f"Failed to list S3 objects: {e}", 'list')

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            UploadError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code == '404':
                raise UploadError(f"Bucket does not exist: {self.bucket_name}", 'connect')
            elif error_code == '403':
                raise UploadError(f"Access denied to bucket: {self.bucket_name}", 'connect')
            raise UploadError(f"S3 connection test failed ({error_code}): {e}", 'connect')
        except BotoCoreError as e:
            raise UploadError(f"Failed to connect to S3: {e}", 'connect')


class GlacierStorage:
    """
    Handler for streaming encrypted backups into an AWS Glacier vault.

    Reads the stream in fixed-size chunks and uploads each one as a
    multipart part as soon as it is available. The stream is never
    rewound; a failed upload is aborted, not resumed.
    """

    requires_content_length = False
    supports_removal = False
    MAX_PARTS = MAX_PARTS

    def __init__(self, access_key: str, secret_key: str, vault_name: str,
                 region: str = 'us-east-1'):
        """
        Initialize Glacier storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            vault_name: Glacier vault name
            region: AWS region (default: us-east-1)
        """
        self.vault_name = vault_name
        self.region = region

        try:
            self.glacier_client = boto3.client(
                'glacier',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise UploadError(f"Failed to initialize Glacier client: {e}")

    def upload(self, stream, descriptor: UploadDescriptor,
               before_commit: Optional[Callable[[], None]] = None) -> str:
        """
        Stream an archive into the vault as a multipart upload.

        Args:
            stream: Readable binary stream; only read forwards
            descriptor: Upload parameters; the part size is chunk_size, doubled
                as often as needed for size_estimate to fit in MAX_PARTS parts
            before_commit: Called after the last part, before completing the
                upload; raising from it aborts the upload

        Returns:
            Glacier archive ID

        Raises:
            UploadError: If Glacier rejects any request, the stream is empty,
                or the archive cannot fit in MAX_PARTS parts
            ValueError: If the chunk size is not a valid Glacier part size
        """
        validate_glacier_chunk_size(descriptor.chunk_size)
        try:
            chunk_size = glacier_part_size(descriptor.chunk_size, descriptor.size_estimate, self.MAX_PARTS)
        except ValueError as e:
            raise UploadError(str(e))
        if chunk_size != descriptor.chunk_size:
            logger.info(
                "Raising Glacier part size to %d MiB for an archive of about %d bytes",
                chunk_size // MiB, descriptor.size_estimate
            )

        try:
            response = self.glacier_client.initiate_multipart_upload(
                vaultName=self.vault_name,
                archiveDescription=descriptor.description,
                partSize=str(chunk_size)
            )
        except ClientError as e:
            raise UploadError(f"Glacier initiate failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"Glacier initiate failed: {e}")

        upload_id = response['uploadId']
        hashes = []
        offset = 0
        parts = 0

        try:
            while True:
                data = stream.read(chunk_size)
                if not data:
                    break

                if parts == self.MAX_PARTS:
                    raise UploadError(
                        f"Archive exceeds {self.MAX_PARTS} parts of {chunk_size} bytes"
                    )

                part_hashes = leaf_hashes(data)
                self.glacier_client.upload_multipart_part(
                    vaultName=self.vault_name,
                    uploadId=upload_id,
                    range=f"bytes {offset}-{offset + len(data) - 1}/*",
                    checksum=tree_hash(part_hashes),
                    body=data
                )

                hashes.extend(part_hashes)
                offset += len(data)
                parts += 1
                logger.debug("Uploaded part %d (%d bytes total)", parts, offset)

            if offset == 0:
                raise UploadError("Refusing to create an empty Glacier archive")

            if before_commit is not None:
                before_commit()

            response = self.glacier_client.complete_multipart_upload(
                vaultName=self.vault_name,
                uploadId=upload_id,
                archiveSize=str(offset),
                checksum=tree_hash(hashes)
            )

        except ClientError as e:
            self._abort(upload_id)
            raise UploadError(
                f"Glacier upload failed after {parts} parts ({_client_error_code(e)}): {e}"
            )
        except BotoCoreError as e:
            self._abort(upload_id)
            raise UploadError(f"Glacier upload failed after {parts} parts: {e}")
        except BaseException:
            self._abort(upload_id)
            raise

        logger.info("Glacier archive created: %s (%d parts, %d bytes)", descriptor.description, parts, offset)
        return response['archiveId']

    def _abort(self, upload_id: str):
        logger.warning("Abandoning Glacier multipart upload %s", upload_id)
        try:
            self.glacier_client.abort_multipart_upload(
                vaultName=self.vault_name,
                uploadId=upload_id
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("Failed to abort multipart upload %s: %s", upload_id, e)

    def test_connection(self) -> bool:
        """
        Test Glacier connection and vault access.

        Raises:
            UploadError: If the vault cannot be described
        """
        try:
            self.glacier_client.describe_vault(vaultName=self.vault_name)
            return True
        except ClientError as e:
            raise UploadError(
                f"Glacier connection test failed ({_client_error_code(e)}): {e}", 'connect'
            )
        except BotoCoreError as e:
            raise UploadError(f"Failed to connect to Glacier: {e}", 'connect')


def create_storage(config):
    """
    Factory function to create the configured storage backend.

    Args:
        config: BackupConfig instance

    Returns:
        S3Storage or GlacierStorage instance

    Raises:
        ValueError: If config.backend is invalid
    """
    if config.backend == 's3':
        return S3Storage(
            access_key=config.aws_access_key,
            secret_key=config.aws_secret_key,
            bucket_name=config.s3_bucket,
            region=config.aws_region,
            prefix=config.s3_prefix
        )
    elif config.backend == 'glacier':
        validate_glacier_chunk_size(config.upload_chunk_size)
        return GlacierStorage(
            access_key=config.aws_access_key,
            secret_key=config.aws_secret_key,
            vault_name=config.glacier_vault,
            region=config.aws_region
        )
    else:
        raise ValueError(f"Invalid storage backend: {config.backend}")
