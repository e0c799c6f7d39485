"""Unit tests for the B2 API client."""

import asyncio
import base64

import httpx
import pytest

from assetsync.api import B2Client, B2File, UploadTarget
from assetsync.exceptions import (
    AssetSyncAPIError,
    AuthError,
    NetworkError,
    RateLimitError,
    TransientIOError,
)


def _client(handler) -> B2Client:
    return B2Client(transport=httpx.MockTransport(handler), retry_delay=0)


def _authorized(handler) -> B2Client:
    client = _client(handler)
    asyncio.run(client.authorize("key-id", "app-key"))
    return client


class TestAuthorize:
    """Tests for account authorization."""

    def test_authorize_sends_basic_auth(self, fake_b2):
        """Test that credentials are sent as HTTP basic auth."""
        client = _client(fake_b2.handler)
        auth = asyncio.run(client.authorize("key-id", "app-key"))

        request = fake_b2.requests[0]
        expected = base64.b64encode(b"key-id:app-key").decode()
        assert request.method == "GET"
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert auth.account_id == "account-1"
        assert auth.api_url == "https://api.b2.test"
        assert client.is_authorized

    def test_rejected_credentials_raise_auth_error(self, fake_b2):
        """Test that a 401 from authorization raises AuthError."""
        fake_b2.reject_authorization = True
        client = _client(fake_b2.handler)
        with pytest.raises(AuthError, match="bad key"):
            asyncio.run(client.authorize("key-id", "wrong"))
        assert not client.is_authorized

    def test_malformed_authorization_response(self):
        """Test that a response without required fields raises AuthError."""
        client = _client(lambda request: httpx.Response(200, json={"accountId": "a"}))
        with pytest.raises(AuthError, match="Invalid authorization response"):
            asyncio.run(client.authorize("key-id", "app-key"))

    def test_calls_before_authorize_fail(self, fake_b2):
        """Test that API calls require authorization first."""
        client = _client(fake_b2.handler)
        with pytest.raises(AuthError):
            asyncio.run(client.find_bucket_id("assets-bucket"))
        assert fake_b2.requests == []


class TestErrorMapping:
    """Tests for translating HTTP errors into exceptions."""

    @pytest.mark.parametrize(
        "status,code,expected",
        [
            (401, "unauthorized", AuthError),
            (401, "expired_auth_token", TransientIOError),
            (429, "too_many_requests", RateLimitError),
            (408, "request_timeout", NetworkError),
            (500, "internal_error", NetworkError),
            (503, "service_unavailable", NetworkError),
            (400, "bad_request", AssetSyncAPIError),
            (404, "not_found", AssetSyncAPIError),
        ],
    )
    def test_status_mapping(self, status, code, expected):
        """Test the exception type chosen for each status."""
        response = httpx.Response(status, json={"code": code, "message": "boom"})
        error = B2Client()._map_http_error(response)
        assert isinstance(error, expected)
        assert str(status) in str(error)
        assert code in str(error)

    def test_api_error_keeps_status_code(self):
        """Test that non-transient API errors carry the status code."""
        error = B2Client()._map_http_error(httpx.Response(400, text="nope"))
        assert error.status_code == 400
        assert "nope" in str(error)

    def test_rate_limit_is_transient(self):
        """Test that rate limits are retried like other transient errors."""
        assert issubclass(RateLimitError, TransientIOError)
        assert issubclass(NetworkError, TransientIOError)


class TestApiCallRetries:
    """Tests for metadata call retries and token refresh."""

    def test_expired_token_reauthorizes_once(self, fake_b2):
        """Test that an expired account token is refreshed and the call repeated."""
        state = {"expired": True}

        def handler(request):
            if request.url.path.endswith("b2_list_buckets") and state["expired"]:
                state["expired"] = False
                fake_b2.requests.append(request)
                return httpx.Response(
                    401, json={"code": "expired_auth_token", "message": "expired"}
                )
            return fake_b2.handler(request)

        client = _authorized(handler)
        bucket_id = asyncio.run(client.find_bucket_id("assets-bucket"))

        assert bucket_id == "bucket-1"
        assert fake_b2.calls("b2_authorize_account") == 2
        assert fake_b2.calls("b2_list_buckets") == 2

    def test_rate_limit_retried_with_retry_after(self, fake_b2):
        """Test that a 429 is retried after the advertised delay."""
        state = {"limited": 1}

        def handler(request):
            if request.url.path.endswith("b2_get_upload_url") and state["limited"]:
                state["limited"] -= 1
                return httpx.Response(
                    429,
                    json={"code": "too_many_requests", "message": "slow down"},
                    headers={"Retry-After": "0"},
                )
            return fake_b2.handler(request)

        client = _authorized(handler)
        target = asyncio.run(client.get_upload_url("bucket-1"))
        assert target.upload_url == "https://upload.b2.test/upload"

    def test_gives_up_after_max_retries(self, fake_b2):
        """Test that persistent 5xx errors are raised after the retries."""
        calls = []

        def handler(request):
            if request.url.path.endswith("b2_list_buckets"):
                calls.append(request)
                return httpx.Response(500, json={"code": "internal_error"})
            return fake_b2.handler(request)

        client = _authorized(handler)
        with pytest.raises(NetworkError):
            asyncio.run(client.find_bucket_id("assets-bucket"))
        assert len(calls) == client.max_retries + 1

    def test_client_errors_not_retried(self, fake_b2):
        """Test that a 400 is raised immediately."""
        calls = []

        def handler(request):
            if request.url.path.endswith("b2_list_buckets"):
                calls.append(request)
                return httpx.Response(400, json={"code": "bad_request"})
            return fake_b2.handler(request)

        client = _authorized(handler)
        with pytest.raises(AssetSyncAPIError):
            asyncio.run(client.find_bucket_id("assets-bucket"))
        assert len(calls) == 1

    def test_unknown_bucket(self, fake_b2):
        """Test that a bucket missing from the listing raises an API error."""
        client = _authorized(fake_b2.handler)
        with pytest.raises(AssetSyncAPIError, match="Bucket not found"):
            asyncio.run(client.find_bucket_id("other-bucket"))


class TestFileOperations:
    """Tests for upload, listing and deletion calls."""

    def test_upload_headers(self, fake_b2):
        """Test that the file name is URL-encoded and the hash is sent."""
        client = _authorized(fake_b2.handler)
        target = UploadTarget("https://upload.b2.test/upload", "upload-token")

        uploaded = asyncio.run(
            client.upload_bytes(
                target, "proj/assets/content/my chair.glb", b"data", "a" * 40
            )
        )

        request = fake_b2.requests[-1]
        assert request.headers["X-Bz-File-Name"] == "proj/assets/content/my%20chair.glb"
        assert request.headers["X-Bz-Content-Sha1"] == "a" * 40
        assert request.headers["Authorization"] == "upload-token"
        assert uploaded.file_name == "proj/assets/content/my chair.glb"

    def test_expired_upload_token_is_transient(self):
        """Test that a 401 on an upload URL asks for a fresh URL."""
        client = _client(
            lambda request: httpx.Response(401, json={"code": "bad_auth_token"})
        )
        target = UploadTarget("https://upload.b2.test/upload", "stale")
        with pytest.raises(TransientIOError):
            asyncio.run(client.upload_bytes(target, "a.glb", b"x", "b" * 40))

    def test_non_json_upload_response(self, fake_b2):
        """Test that a 200 upload answer without JSON raises an API error."""
        fake_b2.garbled_uploads.add("proj/a.glb")
        client = _authorized(fake_b2.handler)
        target = UploadTarget("https://upload.b2.test/upload", "upload-token")

        with pytest.raises(AssetSyncAPIError, match="Invalid upload response"):
            asyncio.run(client.upload_bytes(target, "proj/a.glb", b"a", "c" * 40))

    def test_malformed_upload_url_response(self, fake_b2):
        """Test that a get_upload_url answer missing fields raises an API error."""

        def handler(request):
            if request.url.path.endswith("/b2_get_upload_url"):
                return httpx.Response(200, json={"bucketId": "bucket-1"})
            return fake_b2.handler(request)

        client = _authorized(handler)
        with pytest.raises(AssetSyncAPIError, match="b2_get_upload_url"):
            asyncio.run(client.get_upload_url("bucket-1"))

    def test_list_all_follows_pagination(self, fake_b2):
        """Test that listings longer than one page are fully collected."""
        for i in range(2500):
            fake_b2.put_object(f"proj/file_{i:04d}.ktx2", b"x")
        fake_b2.put_object("other/file.ktx2", b"x")
        client = _authorized(fake_b2.handler)

        files = asyncio.run(client.list_all_file_names("bucket-1", prefix="proj/"))

        assert len(files) == 2500
        assert files[0].file_name == "proj/file_0000.ktx2"
        assert files[-1].file_name == "proj/file_2499.ktx2"
        assert fake_b2.calls("b2_list_file_names") == 3

    def test_get_file_info(self, fake_b2):
        """Test exact-name lookup of the latest file version."""
        fake_b2.put_object("proj/a.glb", b"a")
        fake_b2.put_object("proj/a.glb.bak", b"b")
        client = _authorized(fake_b2.handler)

        found = asyncio.run(client.get_file_info("bucket-1", "proj/a.glb"))
        missing = asyncio.run(client.get_file_info("bucket-1", "proj/a"))

        assert found.file_name == "proj/a.glb"
        assert found.upload_timestamp.year == 2023
        assert missing is None

    def test_delete_file_version(self, fake_b2):
        """Test deleting a file version by name and ID."""
        entry = fake_b2.put_object("proj/a.glb", b"a")
        client = _authorized(fake_b2.handler)

        asyncio.run(client.delete_file_version("proj/a.glb", entry["fileId"]))

        assert "proj/a.glb" not in fake_b2.objects


class TestB2File:
    """Tests for parsing file entries."""

    def test_unverified_prefix_stripped(self):
        """Test that the unverified marker is removed from the hash."""
        info = B2File.from_api(
            {"fileName": "a", "fileId": "1", "contentSha1": "unverified:abc"}
        )
        assert info.content_sha1 == "abc"

    def test_none_hash_is_unknown(self):
        """Test that large files without a whole-file hash report None."""
        info = B2File.from_api({"fileName": "a", "fileId": "1", "contentSha1": "none"})
        assert info.content_sha1 is None

    def test_missing_fields_default(self):
        """Test parsing a sparse entry."""
        info = B2File.from_api({"fileName": "a"})
        assert info.file_id == ""
        assert info.content_length == 0
        assert info.upload_timestamp is None
