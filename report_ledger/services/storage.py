"""
Object storage for rendered report artifacts.

Two backends:
- LocalObjectStorage: files under a root directory, HMAC-signed download URLs
- SupabaseObjectStorage: Supabase Storage REST API over httpx

Uploads go through put_with_retry, which retries with exponential backoff
and surfaces the last error once attempts are exhausted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlencode

import httpx

from ..core.config import Settings, get_settings
from ..core.security import hashes_match, sign_value
from .errors import StorageError, StorageTimeoutError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    """Where rendered artifacts live."""

    async def put(self, path: str, data: bytes, content_type: str = "application/pdf") -> None: ...

    async def get(self, path: str) -> bytes | None: ...

    async def sign_url(self, path: str, ttl_seconds: int) -> str: ...


# =============================================================================
# LOCAL FILESYSTEM
# =============================================================================


class LocalObjectStorage:
    """Stores objects on the local filesystem."""

    def __init__(self, root: str | Path, public_base_url: str):
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return target

    async def put(self, path: str, data: bytes, content_type: str = "application/pdf") -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    async def get(self, path: str) -> bytes | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    async def sign_url(self, path: str, ttl_seconds: int) -> str:
        expires = int(time.time()) + ttl_seconds
        query = urlencode({"expires": expires, "signature": _url_signature(path, expires)})
        return f"{self.public_base_url}/{quote(path)}?{query}"

    @staticmethod
    def verify_signed_url(path: str, expires: int, signature: str) -> bool:
        """Check a signature issued by sign_url and that it has not expired."""
        if expires < int(time.time()):
            return False
        return hashes_match(_url_signature(path, expires), signature)


def _url_signature(path: str, expires: int) -> str:
    return sign_value(f"{path}:{expires}")


# =============================================================================
# SUPABASE STORAGE
# =============================================================================


class SupabaseObjectStorage:
    """Supabase Storage REST client."""

    def __init__(
        self,
        url: str,
        service_key: str,
        bucket: str,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.bucket = bucket
        self.timeout_seconds = timeout_seconds
        self._service_key = service_key
        self._transport = transport

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            headers=self._headers,
            transport=self._transport,
        )

    def _object_url(self, path: str, prefix: str = "object") -> str:
        return f"{self.url}/storage/v1/{prefix}/{self.bucket}/{quote(path)}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise StorageTimeoutError(f"Storage request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise StorageError(f"Storage request failed: {method} {url}: {e}") from e

    async def put(self, path: str, data: bytes, content_type: str = "application/pdf") -> None:
        response = await self._request(
            "POST",
            self._object_url(path),
            content=data,
            # Same path always carries the same bytes, so a retried upload may overwrite
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )
        if response.status_code >= 400:
            raise StorageError(
                f"Upload of {path} failed: {response.status_code} {response.text[:200]}"
            )

    async def get(self, path: str) -> bytes | None:
        response = await self._request("GET", self._object_url(path))
        if response.status_code in (400, 404):
            return None
        if response.status_code >= 400:
            raise StorageError(
                f"Download of {path} failed: {response.status_code} {response.text[:200]}"
            )
        return response.content

    async def sign_url(self, path: str, ttl_seconds: int) -> str:
        response = await self._request(
            "POST",
            self._object_url(path, prefix="object/sign"),
            json={"expiresIn": ttl_seconds},
        )
        if response.status_code >= 400:
            raise StorageError(
                f"Signing URL for {path} failed: {response.status_code} {response.text[:200]}"
            )
        signed = response.json().get("signedURL")
        if not signed:
            raise StorageError(f"Storage returned no signed URL for {path}")
        return f"{self.url}/storage/v1{signed}"


# =============================================================================
# RETRY
# =============================================================================


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for storage uploads."""
    max_retries: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_retries=settings.storage_max_retries,
            base_delay_seconds=settings.storage_retry_base_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)


async def put_with_retry(
    storage: ObjectStorage,
    path: str,
    data: bytes,
    policy: RetryPolicy | None = None,
    content_type: str = "application/pdf",
) -> None:
    """Upload an object, retrying storage failures with exponential backoff."""
    policy = policy or RetryPolicy.from_settings()
    attempts = policy.max_retries + 1

    for attempt in range(attempts):
        try:
            await storage.put(path, data, content_type)
            if attempt:
                logger.info(f"Stored {path} after {attempt + 1} attempts")
            return
        except StorageError as e:
            if attempt + 1 >= attempts:
                logger.error(f"Giving up on storing {path} after {attempts} attempts: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Storing {path} failed (attempt {attempt + 1}/{attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)


def get_object_storage(settings: Settings | None = None) -> ObjectStorage:
    """Build the configured storage backend."""
    settings = settings or get_settings()
    if settings.storage_backend == "supabase":
        if not settings.supabase_enabled:
            raise StorageError(
                "Supabase storage selected but SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY are not set"
            )
        return SupabaseObjectStorage(
            url=settings.supabase_url,
            service_key=settings.supabase_service_key,
            bucket=settings.storage_bucket,
            timeout_seconds=settings.storage_timeout_seconds,
        )
    return LocalObjectStorage(
        root=settings.storage_local_root,
        public_base_url=settings.storage_public_base_url,
    )
