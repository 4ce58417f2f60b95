import asyncio
import base64
import binascii
import logging
import re
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import (
    AWS_ACCESS_KEY_ID,
    AWS_MEDIA_BUCKET,
    AWS_MEDIA_PUBLIC_BASE_URL,
    AWS_REGION,
    AWS_SECRET_ACCESS_KEY,
)
from core.ports.blob_store import BlobStoreError, BlobStorePort

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=4)

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)
_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def decode_image_payload(raw_payload: str) -> Tuple[bytes, str]:
    """Split a data URI (or bare base64 string) into bytes and a content type.

    Raises ValueError for anything that is not decodable image data.
    """
    if not raw_payload or not raw_payload.strip():
        raise ValueError("Empty image payload")

    content_type = "image/jpeg"
    data = raw_payload.strip()
    match = _DATA_URI_RE.match(data)
    if match:
        content_type = match.group("mime").lower()
        data = match.group("data")
        if not content_type.startswith("image/"):
            raise ValueError(f"Unsupported content type {content_type}")

    try:
        body = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Image payload is not valid base64") from e
    if not body:
        raise ValueError("Empty image payload")
    return body, content_type


class S3BlobStore:
    """Blob store backed by a single S3 bucket with public-read objects."""

    def __init__(
        self,
        bucket: str = AWS_MEDIA_BUCKET,
        region: str = AWS_REGION,
        public_base_url: str = AWS_MEDIA_PUBLIC_BASE_URL,
    ):
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else ""
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not AWS_ACCESS_KEY_ID or not AWS_SECRET_ACCESS_KEY:
                raise BlobStoreError("AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY must be set")
            session = boto3.session.Session()
            self._client = session.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=AWS_ACCESS_KEY_ID,
                aws_secret_access_key=AWS_SECRET_ACCESS_KEY,
                config=Config(signature_version="s3v4", s3={"addressing_style": "virtual"}),
            )
            logger.debug(f"Created S3 client for region: {self.region}")
        return self._client

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def upload(self, raw_payload: str, folder: str) -> str:
        if not self.bucket:
            raise BlobStoreError("AWS_MEDIA_BUCKET is not configured")

        body, content_type = decode_image_payload(raw_payload)
        key = f"{folder}/{uuid.uuid4().hex}{_EXTENSIONS.get(content_type, '')}"
        try:
            self._get_client().put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed for bucket={self.bucket}, key={key}: {e}")
            raise BlobStoreError(str(e)) from e

        logger.info(f"Uploaded {len(body)} bytes to s3://{self.bucket}/{key}")
        return self.public_url(key)


_default_store: Optional[S3BlobStore] = None


def get_blob_store() -> BlobStorePort:
    """Dependency returning the process-wide S3 store."""
    global _default_store
    if _default_store is None:
        _default_store = S3BlobStore()
    return _default_store


async def upload_async(store: BlobStorePort, raw_payload: str, folder: str) -> str:
    """Run a blocking upload on the worker pool so the event loop keeps serving."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, store.upload, raw_payload, folder)
