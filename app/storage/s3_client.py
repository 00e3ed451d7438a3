"""
S3 client for the download bucket.

Existence checks (HEAD) and presigned GET URLs. boto3 is synchronous, so the
async callers run these methods in the default thread executor.

Dependencies: boto3
"""

import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.config import Settings

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def is_not_found(err: ClientError) -> bool:
    return err.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES


class S3ObjectStore:
    """S3 client for download bucket operations (HEAD + presigned GET)."""

    def __init__(self, bucket: str, client) -> None:
        """
        Args:
            bucket: S3 bucket holding the downloadable archives
            client: boto3 S3 client
        """
        self._bucket = bucket
        self._s3_client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ObjectStore":
        kwargs = {
            "region_name": settings.s3_region,
            "config": Config(s3={"addressing_style": "path" if settings.s3_force_path_style else "auto"}),
        }
        if settings.s3_endpoint:
            kwargs["endpoint_url"] = settings.s3_endpoint
        if settings.s3_access_key_id and settings.s3_secret_access_key:
            kwargs["aws_access_key_id"] = settings.s3_access_key_id
            kwargs["aws_secret_access_key"] = settings.s3_secret_access_key
        return cls(settings.s3_bucket_name, boto3.client("s3", **kwargs))

    def head_size(self, s3_key: str) -> Optional[int]:
        """
        Size in bytes of an existing object, or None if it does not exist.

        Raises:
            ClientError: for failures other than "not found"
        """
        try:
            response = self._s3_client.head_object(Bucket=self._bucket, Key=s3_key)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return response.get("ContentLength")

    def generate_presigned_download_url(self, s3_key: str, expires_in: int = 3600) -> str:
        """
        Generate presigned URL for downloading an S3 object.

        Raises:
            ClientError: If presigned URL generation fails
        """
        return self._s3_client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self._bucket, "Key": s3_key},
            ExpiresIn=expires_in,
        )

    def check_health(self) -> bool:
        """HEAD a marker key. Not found still proves the bucket is reachable."""
        try:
            self._s3_client.head_object(Bucket=self._bucket, Key="__health_check_marker__")
            return True
        except ClientError as e:
            if is_not_found(e):
                return True
            logger.warning("S3 health check failed: %s", e)
            return False
        except BotoCoreError as e:
            logger.warning("S3 health check failed: %s", e)
            return False

    def close(self) -> None:
        self._s3_client.close()
