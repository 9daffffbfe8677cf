"""
Object Storage Service

Mints time-boxed signed download URLs for product artifacts held in an
S3-compatible bucket. The artifact's storage path never leaves the server.
"""
import asyncio
import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import settings
from ..exceptions import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage:
    """
    boto3 S3 client wrapper.

    Paths stored on products may carry the bucket name as a prefix
    ("products-pdfs/guide.pdf"); it is stripped before signing.
    """

    def __init__(self, bucket: Optional[str] = None):
        self.bucket = bucket or settings.storage_bucket
        try:
            self.client = boto3.client(
                "s3",
                region_name=settings.storage_region,
                endpoint_url=settings.storage_endpoint_url,
                aws_access_key_id=settings.storage_access_key_id,
                aws_secret_access_key=settings.storage_secret_access_key,
                config=Config(signature_version="s3v4"),
            )
            logger.info(f"Object storage client initialized: bucket={self.bucket}")
        except (BotoCoreError, ValueError) as e:
            logger.error(f"Failed to initialize storage client: {e}")
            raise StorageError(f"Storage initialization failed: {e}") from e

    def object_key(self, path: str) -> str:
        prefix = f"{self.bucket}/"
        path = path.lstrip("/")
        return path[len(prefix):] if path.startswith(prefix) else path

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        """
        Signed GET URL valid for ttl_seconds.

        Raises:
            StorageError: Signing failed
        """
        key = self.object_key(path)
        try:
            # boto3 is synchronous; keep the event loop free
            url = await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to sign {key}: {e}")
            raise StorageError("Could not generate download link", details={"key": key}) from e

        logger.debug(f"Signed {key} for {ttl_seconds}s")
        return url


_storage: Optional[ObjectStorage] = None


def get_storage() -> ObjectStorage:
    """FastAPI dependency returning the shared storage client."""
    global _storage
    if _storage is None:
        _storage = ObjectStorage()
    return _storage
