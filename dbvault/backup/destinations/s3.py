"""
S3-compatible object storage destination.

Works with AWS S3 and, through endpoint_url, Cloudflare R2 and MinIO.
Object keys: {prefix}{data_source}/{YYYY}/{MM}/{run_id}/{filename}
"""

import base64
import hashlib
import logging
import os
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .base import BackupDestination
from .local import stored_relative_path
from ..errors import DestinationConfigError, DestinationStoreError

logger = logging.getLogger(__name__)

# Use multipart upload for files larger than this
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Destination(BackupDestination):
    """Uploads dumps to an S3-compatible bucket."""

    type_name = 's3'

    def __init__(
        self,
        destination_id: str,
        bucket: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        prefix: str = '',
        presign_expires: int = 3600,
        client=None
    ):
        super().__init__(destination_id)
        if not bucket:
            raise DestinationConfigError(f"S3 destination {destination_id} needs a bucket")

        self.bucket_name = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.prefix = prefix.strip('/') + '/' if prefix and prefix.strip('/') else ''
        self.presign_expires = presign_expires

        if client is not None:
            self.s3_client = client
        else:
            try:
                self.s3_client = boto3.client(
                    's3',
                    aws_access_key_id=access_key,
                    aws_secret_access_key=secret_key,
                    region_name=region,
                    endpoint_url=endpoint_url
                )
            except (BotoCoreError, ValueError) as e:
                raise DestinationConfigError(f"Failed to initialize S3 client: {e}")

    @property
    def disk(self) -> str:
        return self.bucket_name

    def _object_key(self, run, filename: str) -> str:
        return f"{self.prefix}{stored_relative_path(run, filename)}"

    def store(self, run, temp_path, filename, metadata):
        if not os.path.exists(temp_path):
            raise DestinationStoreError(f"Local file not found: {temp_path}")

        key = self._object_key(run, filename)
        object_metadata = {
            'run-id': str(metadata.get('run_id', '')),
            'sha256': str(metadata.get('checksum', '')),
        }

        try:
            if os.path.getsize(temp_path) > MULTIPART_THRESHOLD:
                self._multipart_upload(temp_path, key, object_metadata)
            else:
                self._simple_upload(temp_path, key, object_metadata)
        except ClientError as e:
            raise DestinationStoreError(f"S3 upload failed ({_error_code(e)}): {e}")
        except (BotoCoreError, OSError) as e:
            raise DestinationStoreError(f"S3 upload failed: {e}")

        return key

    def _simple_upload(self, local_path: str, key: str, object_metadata: dict):
        with open(local_path, 'rb') as f:
            body = f.read()
        self.s3_client.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=body,
            Metadata=object_metadata,
            ContentMD5=_content_md5(body)
        )

    def _multipart_upload(self, local_path: str, key: str, object_metadata: dict):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key,
            Metadata=object_metadata
        )
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def delete_stored_file(self, stored_path):
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=stored_path)
        except ClientError as e:
            raise DestinationStoreError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise DestinationStoreError(f"Failed to delete from S3: {e}")

    def download(self, record):
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=record.path)
        except ClientError as e:
            if _error_code(e) in ('404', 'NoSuchKey', 'NotFound'):
                raise FileNotFoundError(f"Object not found: s3://{self.bucket_name}/{record.path}")
            raise DestinationStoreError(f"S3 lookup failed ({_error_code(e)}): {e}")

        return self.s3_client.generate_presigned_url(
            'get_object',
            Params={'Bucket': self.bucket_name, 'Key': record.path},
            ExpiresIn=self.presign_expires
        )

    def test_connection(self) -> bool:
        """
        Test bucket access.

        Raises:
            DestinationStoreError: If the bucket is missing or not accessible
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '404':
                raise DestinationStoreError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise DestinationStoreError(f"Access denied to bucket: {self.bucket_name}")
            raise DestinationStoreError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise DestinationStoreError(f"Failed to connect to S3: {e}")


def _content_md5(body: bytes) -> str:
    return base64.b64encode(hashlib.md5(body).digest()).decode()
