"""Tests for artifact storage backends and upload retry."""

import json
import time

import httpx
import pytest

from report_ledger.core.config import Settings
from report_ledger.services.errors import StorageError, StorageTimeoutError
from report_ledger.services.storage import (
    LocalObjectStorage,
    RetryPolicy,
    SupabaseObjectStorage,
    get_object_storage,
    put_with_retry,
)

from .conftest import FailingStorage


# =============================================================================
# LOCAL
# =============================================================================


class TestLocalObjectStorage:
    @pytest.fixture
    def local(self, tmp_path) -> LocalObjectStorage:
        return LocalObjectStorage(tmp_path, "http://localhost:8000/artifacts/")

    async def test_put_then_get(self, local, tmp_path):
        await local.put("org/job/run/insurance.pdf", b"%PDF-1.4 data")

        assert await local.get("org/job/run/insurance.pdf") == b"%PDF-1.4 data"
        assert (tmp_path / "org" / "job" / "run" / "insurance.pdf").is_file()

    async def test_missing_object(self, local):
        assert await local.get("nothing/here.pdf") is None

    async def test_path_escape_rejected(self, local):
        with pytest.raises(StorageError):
            await local.put("../outside.pdf", b"x")

    async def test_signed_url_round_trip(self, local):
        url = await local.sign_url("org/run.pdf", 600)
        parsed = httpx.URL(url)

        assert url.startswith("http://localhost:8000/artifacts/org/run.pdf?")
        expires = int(parsed.params["expires"])
        signature = parsed.params["signature"]
        assert LocalObjectStorage.verify_signed_url("org/run.pdf", expires, signature)
        assert not LocalObjectStorage.verify_signed_url("org/other.pdf", expires, signature)
        assert not LocalObjectStorage.verify_signed_url("org/run.pdf", expires, "0" * 64)

    def test_expired_url_rejected(self):
        expires = int(time.time()) - 10
        signature = "irrelevant"
        assert not LocalObjectStorage.verify_signed_url("org/run.pdf", expires, signature)


# =============================================================================
# SUPABASE
# =============================================================================


class TestSupabaseObjectStorage:
    def make_storage(self, handler) -> SupabaseObjectStorage:
        return SupabaseObjectStorage(
            url="https://project.supabase.co/",
            service_key="service-key",
            bucket="reports",
            transport=httpx.MockTransport(handler),
        )

    async def test_put_uploads_with_upsert(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"Key": "reports/org/run.pdf"})

        await self.make_storage(handler).put("org/run.pdf", b"%PDF", "application/pdf")

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://project.supabase.co/storage/v1/object/reports/org/run.pdf"
        assert request.headers["Authorization"] == "Bearer service-key"
        assert request.headers["x-upsert"] == "true"
        assert request.content == b"%PDF"

    async def test_put_error_status(self):
        storage = self.make_storage(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(StorageError):
            await storage.put("org/run.pdf", b"%PDF")

    async def test_get(self):
        storage = self.make_storage(lambda request: httpx.Response(200, content=b"%PDF body"))
        assert await storage.get("org/run.pdf") == b"%PDF body"

    async def test_get_missing(self):
        storage = self.make_storage(lambda request: httpx.Response(404, json={"error": "not_found"}))
        assert await storage.get("org/run.pdf") is None

    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(StorageTimeoutError):
            await self.make_storage(handler).get("org/run.pdf")

    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(StorageError):
            await self.make_storage(handler).put("org/run.pdf", b"%PDF")

    async def test_sign_url(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/storage/v1/object/sign/reports/org/run.pdf"
            assert json.loads(request.content) == {"expiresIn": 900}
            return httpx.Response(
                200, json={"signedURL": "/object/sign/reports/org/run.pdf?token=abc"}
            )

        url = await self.make_storage(handler).sign_url("org/run.pdf", 900)
        assert url == "https://project.supabase.co/storage/v1/object/sign/reports/org/run.pdf?token=abc"


# =============================================================================
# RETRY
# =============================================================================


class TestPutWithRetry:
    async def test_recovers_from_transient_failures(self):
        storage = FailingStorage(failures=2)
        await put_with_retry(
            storage, "org/run.pdf", b"%PDF", RetryPolicy(max_retries=3, base_delay_seconds=0)
        )
        assert storage.put_calls == 3
        assert storage.objects["org/run.pdf"] == b"%PDF"

    async def test_gives_up_after_max_retries(self):
        storage = FailingStorage(failures=100)
        with pytest.raises(StorageError):
            await put_with_retry(
                storage, "org/run.pdf", b"%PDF", RetryPolicy(max_retries=2, base_delay_seconds=0)
            )
        assert storage.put_calls == 3

    def test_backoff_is_exponential_and_capped(self):
        policy = RetryPolicy(max_retries=5, base_delay_seconds=0.5, max_delay_seconds=3.0)
        assert [policy.delay_for(i) for i in range(4)] == [0.5, 1.0, 2.0, 3.0]


class TestGetObjectStorage:
    def test_local_by_default(self, tmp_path):
        settings = Settings(storage_backend="local", storage_local_root=str(tmp_path))
        assert isinstance(get_object_storage(settings), LocalObjectStorage)

    def test_supabase_requires_credentials(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
        with pytest.raises(StorageError):
            get_object_storage(Settings(storage_backend="supabase", _env_file=None))

    def test_supabase(self):
        settings = Settings(
            storage_backend="supabase",
            SUPABASE_URL="https://project.supabase.co",
            SUPABASE_SERVICE_ROLE_KEY="service-key",
        )
        storage = get_object_storage(settings)
        assert isinstance(storage, SupabaseObjectStorage)
        assert storage.bucket == "reports"
