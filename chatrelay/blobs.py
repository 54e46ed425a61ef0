"""
S3 object store for relayed media.
"""

import logging
import re
import uuid
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from chatrelay.exceptions import BlobStoreError
from chatrelay.utils import utcnow

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def build_key(prefix: str, filename: str) -> str:
    """Object key of the form <prefix>/<YYYYMMDD>/<hex>_<filename>."""
    safe_name = _UNSAFE_KEY_CHARS.sub("_", filename).strip("_") or "blob"
    return f"{prefix}/{utcnow().strftime('%Y%m%d')}/{uuid.uuid4().hex}_{safe_name}"


class BlobStore:
    """Uploads raw bytes and returns a URL the forwarder can GET."""

    def __init__(self, bucket: str, region: str, client=None):
        self.bucket = bucket
        self.region = region
        self.client = client or boto3.client("s3", region_name=region)

    def url_for(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        """
        Store data under key.

        Returns:
            The object's URL.

        Raises:
            BlobStoreError: if the bucket is not configured or the upload fails.
        """
        if not self.bucket:
            raise BlobStoreError("AWS_S3_BUCKET_NAME is not configured")

        params = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        try:
            self.client.put_object(**params)
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"upload of {key} failed: {e}") from e

        logger.info(f"Uploaded blob {key} ({len(data)} bytes)")
        return self.url_for(key)
