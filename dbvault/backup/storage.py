"""
Storage handlers for backup artifacts.

Supports:
- S3Storage: Upload artifacts to an S3-compatible object store
- LocalStorage: Persist artifacts in a local working directory
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .packaging import compression_content_type
from .types import Artifact, UploadOptions, UploadResult


MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """
    Raised when a storage operation fails.

    Carries the HTTP status and provider error code when known so the
    failure can be classified and retried correctly.
    """

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code


def _client_error(action: str, error: ClientError) -> StorageError:
    details = error.response.get('Error', {})
    error_code = details.get('Code', 'Unknown')
    status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
    return StorageError(f"S3 {action} failed ({error_code}): {error}", status=status, code=error_code)


class S3Storage:
    """
    Handler for uploading, listing and deleting artifacts in S3.

    Objects are stored under a structured key:
    {prefix}/{YYYY}/{MM}/{DD}/{filename}
    """

    def __init__(
        self,
        access_key: Optional[str],
        secret_key: Optional[str],
        bucket_name: str,
        region: str = 'us-east-1',
        prefix: str = 'backups',
        endpoint_url: Optional[str] = None,
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID (None to use the default credential chain)
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            prefix: Key prefix for all artifacts
            endpoint_url: Custom endpoint for S3-compatible stores
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=region,
                endpoint_url=endpoint_url or None,
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def build_key(self, filename: str, create_date_folders: bool = True, now: Optional[datetime] = None) -> str:
        """Build the object key for an artifact filename."""
        parts = [self.prefix] if self.prefix else []
        if create_date_folders:
            now = now or datetime.now()
            parts.extend([f"{now.year}", f"{now.month:02d}", f"{now.day:02d}"])
        parts.append(filename)
        return '/'.join(parts)

    def upload(self, content: bytes, metadata: Artifact, options: UploadOptions = UploadOptions()) -> UploadResult:
        """
        Upload artifact bytes to S3.

        Args:
            content: Packaged artifact bytes
            metadata: Artifact metadata (name, format, checksum)
            options: Upload options

        Returns:
            UploadResult with the object key, its s3:// URL and size

        Raises:
            StorageError: If upload or verification fails
        """
        s3_key = self.build_key(metadata.name, options.create_date_folders)
        extra = {
            'ContentType': (
                compression_content_type(metadata.algorithm or 'gzip')
                if metadata.compressed else metadata.format.mime_type
            ),
            'Metadata': {
                'checksum-sha256': metadata.checksum,
                'format': metadata.format.value,
                'raw-size': str(metadata.raw_size),
            },
        }

        try:
            if len(content) > MULTIPART_THRESHOLD:
                self._multipart_upload(content, s3_key, extra)
            else:
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    Body=content,
                    **extra
                )
        except ClientError as e:
            raise _client_error('upload', e)
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")

        if options.verify_upload:
            self.verify_upload(s3_key, len(content))

        return UploadResult(
            remote_id=s3_key,
            remote_url=f"s3://{self.bucket_name}/{s3_key}",
            size=len(content),
        )

    def _multipart_upload(self, content: bytes, s3_key: str, extra: dict):
        """
        Upload large content in parts.

        Args:
            content: Bytes to upload
            s3_key: S3 object key
            extra: ContentType/Metadata arguments for the upload
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            **extra
        )
        upload_id = response['UploadId']

        parts = []

        try:
            for part_number, offset in enumerate(range(0, len(content), MULTIPART_CHUNK_SIZE), start=1):
                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=content[offset:offset + MULTIPART_CHUNK_SIZE]
                )
                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def verify_upload(self, s3_key: str, expected_size: int):
        """
        Verify an uploaded object by size.

        Remote digests differ between providers, so only the size is compared.

        Raises:
            StorageError: If the object is missing or the size differs
        """
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=s3_key)
        except ClientError as e:
            raise _client_error('verification', e)

        actual_size = response.get('ContentLength', 0)
        if actual_size != expected_size:
            raise StorageError(
                f"Upload verification failed: size mismatch for {s3_key}, "
                f"expected {expected_size}, got {actual_size}"
            )

    def list_objects(self, prefix: Optional[str] = None) -> list:
        """
        List objects under a key prefix.

        Args:
            prefix: Key prefix to filter by (defaults to the storage prefix)

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        if prefix is None:
            prefix = f"{self.prefix}/" if self.prefix else ''

        objects = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })
        except ClientError as e:
            raise _client_error('list', e)
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

        return objects

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=s3_key)
        except ClientError as e:
            raise _client_error('delete', e)
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
            if error_code in ('404', 'NoSuchBucket'):
                raise StorageError(f"Bucket does not exist: {self.bucket_name}", status=status, code=error_code)
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}", status=status, code=error_code)
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}", status=status, code=error_code)
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalStorage:
    """
    Handler for the local working directory where artifacts are written
    before upload.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory for artifact files
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def write(self, filename: str, content: bytes) -> str:
        """
        Write artifact bytes.

        Args:
            filename: Artifact filename (no directories)
            content: Bytes to write

        Returns:
            Full path of the written file

        Raises:
            StorageError: If the file cannot be written
        """
        dest_path = self.base_path / os.path.basename(filename)

        try:
            dest_path.write_bytes(content)
            return str(dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to save file: {e}")

    def read(self, path: str) -> bytes:
        """
        Read artifact bytes.

        Raises:
            StorageError: If the file cannot be read
        """
        try:
            return Path(path).read_bytes()
        except FileNotFoundError:
            raise StorageError(f"Local file not found: {path}")
        except OSError as e:
            raise StorageError(f"Failed to read local file: {e}")

    def delete(self, path: str):
        """
        Delete an artifact file if it exists.

        Raises:
            StorageError: If deletion fails
        """
        full_path = Path(path)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list_files(self) -> list:
        """
        List artifact files currently in the working directory.

        Returns:
            List of dicts with 'path', 'modified', and 'size' keys
        """
        files = []

        for file_path in sorted(self.base_path.iterdir()):
            if file_path.is_file():
                stat = file_path.stat()
                files.append({
                    'path': str(file_path),
                    'modified': datetime.fromtimestamp(stat.st_mtime),
                    'size': stat.st_size
                })

        return files
