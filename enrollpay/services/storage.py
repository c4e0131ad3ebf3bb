"""
Object storage for signature images and consent documents (S3).
"""
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from enrollpay.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class S3Storage:
    def __init__(self, bucket: Optional[str] = None, client=None):
        self.bucket = bucket or settings.S3_BUCKET
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=settings.S3_REGION,
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            )
        return self._client

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        if not self.bucket:
            raise StorageError("S3_BUCKET is not configured")
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Upload failed for {key}: {e}") from e
        logger.info("[STORAGE] Uploaded %s (%d bytes)", key, len(data))
        return key

    def get(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
            return obj["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(key) from e
            raise StorageError(f"Download failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Download failed for {key}: {e}") from e

    def signed_url(self, key: str, expires_in: Optional[int] = None) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in or settings.CONSENT_URL_TTL_SECONDS,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Could not sign URL for {key}: {e}") from e
