import logging
import re
from urllib.parse import unquote, urlparse

import boto3

from coverscan.config import get_settings
from coverscan.services.collaborators import BlobStore

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_key(file_name: str) -> str:
    cleaned = _UNSAFE_KEY_CHARS.sub("_", file_name.strip())
    return cleaned or "upload"


class S3BlobStore(BlobStore):
    def __init__(self, client=None, bucket: str | None = None) -> None:
        settings = get_settings()
        self._bucket = bucket or settings.aws_bucket_name
        if not self._bucket:
            raise RuntimeError("S3 bucket name is not configured.")
        self._client = client or boto3.client("s3", region_name=settings.aws_region)
        self._logger = logging.getLogger(__name__)

    def put(self, key: str, data: bytes) -> str:
        self._client.put_object(Bucket=self._bucket, Key=key, Body=data)
        url = f"https://{self._bucket}.s3.amazonaws.com/{key}"
        self._logger.debug("Stored %d bytes at %s", len(data), url)
        return url

    def get(self, url: str) -> bytes:
        bucket, key = self._parse_url(url)
        response = self._client.get_object(Bucket=bucket, Key=key)
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    def presign(self, url: str, ttl: int) -> str:
        bucket, key = self._parse_url(url)
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=ttl,
        )

    def _parse_url(self, url: str) -> tuple[str, str]:
        parsed = urlparse(url)
        bucket = parsed.hostname.split(".")[0] if parsed.hostname else self._bucket
        key = unquote(parsed.path.lstrip("/"))
        if not key:
            raise ValueError(f"Blob url has no object key: {url}")
        return bucket, key
