"""S3-backed storage for synchronized document bytes."""

import logging
import re
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from shared.errors import ItemPersistenceFailed

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def build_document_key(user_id: str, remote_id: str, file_name: str) -> str:
    """Build the object key for a synchronized file: documents/<user>/<remote id>/<name>."""
    safe_name = _UNSAFE_KEY_CHARS.sub("_", file_name).strip("_") or "file"
    return f"documents/{user_id}/{remote_id}/{safe_name}"


class DocumentStorage:
    """Stores document bytes in an S3 bucket."""

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None
    ):
        """
        Initialize document storage.

        Args:
            bucket_name: S3 bucket name
            region: AWS region
            access_key_id: AWS access key ID (optional, uses default credentials if not provided)
            secret_access_key: AWS secret access key (optional)
            client: Pre-built boto3 S3 client (tests)
        """
        self.bucket_name = bucket_name
        self.region = region

        if client is not None:
            self.s3_client = client
        elif access_key_id and secret_access_key:
            self.s3_client = boto3.client(
                's3',
                region_name=region,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key
            )
        else:
            self.s3_client = boto3.client('s3', region_name=region)

    async def store(self, data: bytes, key: str, content_type: str) -> str:
        """
        Upload document bytes (private object).

        Args:
            data: File contents
            key: S3 object key
            content_type: MIME type of the file

        Returns:
            S3 URL of the stored object

        Raises:
            ItemPersistenceFailed: If the upload is rejected
        """
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type
            )
        except ClientError as e:
            logger.error(f"Failed to store document in S3 at {key}: {e}", exc_info=True)
            raise ItemPersistenceFailed(f"Failed to store file: {e}") from e

        url = f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com/{key}"
        logger.info(f"Stored document in S3: {url}")
        return url
