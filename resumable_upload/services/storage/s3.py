import asyncio
import logging
import boto3
from typing import Optional
from .internal import InternalStorage
from resumable_upload.core.config import settings
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class S3StorageError(Exception):
    pass


class S3Storage(InternalStorage):
    """Chunks are staged on local disk; only the assembled file goes to S3."""

    def __init__(self, s3_client=None):
        self.s3_client = s3_client or boto3.client(
            's3',
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
            endpoint_url=settings.S3_ENDPOINT_URL or None,
            region_name=settings.S3_REGION_NAME
        )

    async def upload_file(self, file_path: str, object_key: str) -> str:
        await asyncio.to_thread(self._upload_to_s3, file_path, object_key)
        # The merged file is only a staging copy once S3 has it
        await asyncio.to_thread(self._delete_file, file_path)
        return object_key

    def _upload_to_s3(self, file_path, object_key):
        try:
            self.s3_client.upload_file(file_path, settings.S3_BUCKET_NAME, object_key)
        except (BotoCoreError, ClientError) as e:
            raise S3StorageError(f"S3 upload failed: {e}")
        logger.info(f"Uploaded {file_path} to s3://{settings.S3_BUCKET_NAME}/{object_key}")

    async def delete_file(self, file_path_or_key: str, storage_type: Optional[str] = None) -> None:
        if storage_type == "local":
            await super().delete_file(file_path_or_key)
            return
        await asyncio.to_thread(self._delete_from_s3, file_path_or_key)

    def _delete_from_s3(self, object_key):
        try:
            self.s3_client.delete_object(Bucket=settings.S3_BUCKET_NAME, Key=object_key)
        except (BotoCoreError, ClientError) as e:
            raise S3StorageError(f"S3 delete failed: {e}")

    def local_path(self, location: str) -> Optional[str]:
        return None

    def public_url(self, object_key: str) -> str:
        return f"{settings.S3_ENDPOINT_URL}/{settings.S3_BUCKET_NAME}/{object_key}"
