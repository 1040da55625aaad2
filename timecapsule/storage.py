"""Object storage for uploaded files: local disk for development, S3 for production."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote

import aioboto3
import aiofiles
import aiofiles.os
from botocore.exceptions import BotoCoreError, ClientError

from .errors import NotFound, TransportError, ValidationError
from .logger import get_logger
from .models import utc_now


class ObjectStoreBase:
    """Interface implemented by concrete object stores."""

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store ``data`` under ``key`` and return the locator to persist."""
        raise NotImplementedError

    async def signed_url(self, locator: str, ttl_seconds: int) -> str:
        """Return a download URL valid for ``ttl_seconds``."""
        raise NotImplementedError

    async def remove(self, locator: str) -> None:
        """Delete the stored bytes. Removing a missing object is not an error."""
        raise NotImplementedError


class LocalObjectStore(ObjectStoreBase):
    """Keep files under a directory and sign download links with HMAC.

    Links point at ``{public_url}/files/{locator}`` and are checked by
    :meth:`verify` before the HTTP layer serves the bytes.
    """

    def __init__(
        self,
        directory: str,
        *,
        public_url: str = "http://localhost:8000",
        signing_key: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.base_path = Path(directory).expanduser()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_url = public_url.rstrip("/")
        if not signing_key:
            get_logger("storage").warning("No storage signing key configured; links will not survive a restart")
            signing_key = secrets.token_hex(32)
        self._signing_key = signing_key.encode()
        self.clock = clock

    def _path(self, locator: str) -> Path:
        path = (self.base_path / locator).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValidationError(f"Invalid storage locator: {locator}")
        return path

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError as exc:
            raise TransportError(f"Failed to store file: {exc}") from exc
        return key

    async def read(self, locator: str) -> bytes:
        """Return the bytes stored under ``locator``."""
        path = self._path(locator)
        if not path.exists():
            raise NotFound(f"Object '{locator}' not found")
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    def sign(self, locator: str, expires: int) -> str:
        """Return the signature authorising ``locator`` until ``expires``."""
        message = f"{locator}:{expires}".encode()
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def verify(self, locator: str, expires: int, signature: str) -> bool:
        """Check a link signature and its expiry."""
        if int(expires) < int(self.clock().timestamp()):
            return False
        return hmac.compare_digest(self.sign(locator, int(expires)), signature or "")

    async def signed_url(self, locator: str, ttl_seconds: int) -> str:
        if not self._path(locator).exists():
            raise TransportError(f"Object '{locator}' is missing from storage")
        expires = int(self.clock().timestamp()) + int(ttl_seconds)
        signature = self.sign(locator, expires)
        return f"{self.public_url}/files/{quote(locator)}?expires={expires}&signature={signature}"

    async def remove(self, locator: str) -> None:
        path = self._path(locator)
        if not path.exists():
            return
        try:
            await aiofiles.os.remove(path)
        except OSError as exc:
            raise TransportError(f"Failed to remove file: {exc}") from exc


class S3ObjectStore(ObjectStoreBase):
    """Store files in an S3 bucket and hand out presigned GET links."""

    def __init__(
        self,
        bucket: str,
        *,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        session: Optional[aioboto3.Session] = None,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self._session = session or aioboto3.Session()

    def _client(self):
        return self._session.client("s3", region_name=self.region, endpoint_url=self.endpoint_url)

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type or "application/octet-stream",
                )
        except (BotoCoreError, ClientError) as exc:
            raise TransportError(f"Failed to upload file: {exc}") from exc
        return key

    async def signed_url(self, locator: str, ttl_seconds: int) -> str:
        try:
            async with self._client() as s3:
                return await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self.bucket, "Key": locator},
                    ExpiresIn=int(ttl_seconds),
                )
        except (BotoCoreError, ClientError) as exc:
            raise TransportError(f"Failed to sign download link: {exc}") from exc

    async def remove(self, locator: str) -> None:
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self.bucket, Key=locator)
        except (BotoCoreError, ClientError) as exc:
            raise TransportError(f"Failed to remove file: {exc}") from exc
