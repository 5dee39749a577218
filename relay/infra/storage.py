from __future__ import annotations
import re
import threading
from typing import Dict, Optional, Tuple
import boto3
from botocore.client import Config
from relay.settings import settings

_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")
_PREVIEW_KEY = re.compile(r"^previews/([^/]+)/")


def is_valid_key(key: str) -> bool:
    """Reject empty keys, path traversal, absolute keys and control characters."""
    if not key or not key.strip():
        return False
    if ".." in key:
        return False
    if key.startswith("/"):
        return False
    if _CONTROL_CHARS.search(key):
        return False
    return True


def key_within_prefix(key: str, allowed_prefix: str) -> bool:
    if not is_valid_key(key) or not allowed_prefix:
        return False
    prefix = allowed_prefix.rstrip("/")
    return key == prefix or key.startswith(prefix + "/")


def extract_slide_id_from_key(key: str) -> Optional[str]:
    """``previews/<slide_id>/...`` -> ``<slide_id>``."""
    m = _PREVIEW_KEY.match(key or "")
    return m.group(1) if m else None


class InvalidKeyError(ValueError):
    pass


class PreviewSigner:
    """Time-limited GET URLs for preview objects.

    Preview assets may live on a different endpoint/region than the service
    default, so one client is kept per (endpoint, region) pair.
    """

    def __init__(self) -> None:
        self._clients: Dict[Tuple[str, str], object] = {}
        self._lock = threading.Lock()

    def _client(self, endpoint: Optional[str], region: Optional[str]):
        endpoint = endpoint or settings.S3_ENDPOINT_URL
        region = region or settings.S3_REGION
        cache_key = (endpoint, region)
        with self._lock:
            client = self._clients.get(cache_key)
            if client is None:
                client = boto3.client(
                    "s3",
                    endpoint_url=endpoint or None,
                    aws_access_key_id=settings.S3_ACCESS_KEY_ID,
                    aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
                    region_name=region,
                    config=Config(
                        signature_version="s3v4",
                        s3={"addressing_style": "path" if settings.S3_FORCE_PATH_STYLE else "auto"},
                    ),
                )
                self._clients[cache_key] = client
        return client

    def sign(
        self,
        key: str,
        expires_sec: Optional[int] = None,
        bucket: Optional[str] = None,
        *,
        endpoint: Optional[str] = None,
        region: Optional[str] = None,
    ) -> str:
        if not is_valid_key(key):
            raise InvalidKeyError(f"Invalid key: {key!r}")
        return self._client(endpoint, region).generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": bucket or settings.S3_BUCKET, "Key": key},
            ExpiresIn=int(expires_sec or settings.SIGNED_URL_TTL_SECONDS),
        )

    def sign_within_prefix(
        self,
        key: str,
        allowed_prefix: str,
        expires_sec: Optional[int] = None,
        bucket: Optional[str] = None,
        *,
        endpoint: Optional[str] = None,
        region: Optional[str] = None,
    ) -> str:
        if not key_within_prefix(key, allowed_prefix):
            raise InvalidKeyError(f"Key {key!r} is not within allowed prefix {allowed_prefix!r}")
        return self.sign(key, expires_sec, bucket, endpoint=endpoint, region=region)


_signer: Optional[PreviewSigner] = None


def make_signer() -> PreviewSigner:
    global _signer
    if _signer is None:
        _signer = PreviewSigner()
    return _signer
