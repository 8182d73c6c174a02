import logging
import uuid

import boto3
import httpx
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import DownstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

UPLOAD_TYPES = {
    "application/pdf": "pdf",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/heic": "heic",
}

MIME_BY_EXT = {ext: mime for mime, ext in UPLOAD_TYPES.items()}


def user_prefix(user_id: str) -> str:
    return f"uploads/{user_id}/"


def new_upload_key(user_id: str, content_type: str | None) -> str:
    content_type = (content_type or "application/pdf").lower().strip()
    ext = UPLOAD_TYPES.get(content_type)
    if not ext:
        raise ValidationError(f"Unsupported file type: {content_type}. Please upload a PDF or an image.")
    return f"{user_prefix(user_id)}{uuid.uuid4()}.{ext}"


def ensure_owned_key(user_id: str, key: str | None) -> str:
    key = (key or "").strip()
    if not key:
        raise ValidationError("fileId is required")
    if not key.startswith(user_prefix(user_id)) or ".." in key:
        raise ValidationError("Unknown file")
    return key


def guess_mime(key: str) -> str:
    return MIME_BY_EXT.get(key.rsplit(".", 1)[-1].lower(), "application/pdf")


class ObjectStorage:
    """Presigned URLs against an S3-compatible bucket. Bytes never pass through the API on upload."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str = "",
        access_key: str = "",
        secret_key: str = "",
        region: str = "us-east-1",
        upload_ttl: int = 3600,
        read_ttl: int = 600,
        timeout: float = 30,
        transport=None,
    ):
        self.bucket = bucket
        self.upload_ttl = upload_ttl
        self.read_ttl = read_ttl
        self.timeout = timeout
        self._transport = transport
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            config=Config(signature_version="s3v4"),
            region_name=region or None,
        )

    def presign_upload(self, key: str, content_type: str) -> str:
        try:
            return self.client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=self.upload_ttl,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Could not presign upload for %s: %s", key, e)
            raise DownstreamUnavailable("Could not prepare upload", retryable=True) from e

    def presign_read(self, key: str) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.read_ttl,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Could not presign read for %s: %s", key, e)
            raise DownstreamUnavailable("Could not access file", retryable=True) from e

    async def fetch(self, key: str) -> tuple[bytes, str]:
        """Download an uploaded object through a short-lived read URL. Returns (content, mime_type)."""
        url = self.presign_read(key)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.get(url)
        except httpx.TimeoutException as e:
            raise DownstreamUnavailable("Timed out reading the uploaded file", retryable=True) from e
        except httpx.HTTPError as e:
            raise DownstreamUnavailable("Could not access file", retryable=True) from e

        if r.status_code == 404:
            raise ValidationError("Uploaded file not found. Please upload it again.")
        if r.status_code >= 400:
            logger.error("Storage read for %s returned %s", key, r.status_code)
            raise DownstreamUnavailable("Could not access file", retryable=True)

        mime = (r.headers.get("content-type") or "").split(";")[0].strip()
        if mime not in UPLOAD_TYPES:
            mime = guess_mime(key)
        return r.content, mime
