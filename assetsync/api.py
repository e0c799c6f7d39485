"""Async client for the Backblaze B2 native API."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import httpx

from .exceptions import (
    AssetSyncAPIError,
    AuthError,
    NetworkError,
    RateLimitError,
    TransientIOError,
)
from .utils import DEFAULT_LIST_PAGE_SIZE, parse_b2_timestamp

logger = logging.getLogger(__name__)

B2_AUTHORIZE_URL = "https://api.backblazeb2.com/b2api/v2/b2_authorize_account"
B2_API_VERSION = "b2api/v2"


@dataclass
class B2Authorization:
    """Result of ``b2_authorize_account``."""

    account_id: str
    authorization_token: str
    api_url: str
    download_url: str
    allowed_bucket_id: Optional[str] = None


@dataclass
class UploadTarget:
    """Upload URL and token from ``b2_get_upload_url``.

    A target must not be used by two uploads at the same time.
    """

    upload_url: str
    authorization_token: str


@dataclass
class B2File:
    """A file version as listed by the B2 API."""

    file_name: str
    file_id: str
    content_length: int = 0
    content_sha1: Optional[str] = None
    content_type: Optional[str] = None
    upload_timestamp: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> B2File:
        sha1 = data.get("contentSha1")
        # Large files report "none"; unverified uploads carry a prefix
        if sha1 == "none":
            sha1 = None
        elif sha1 and sha1.startswith("unverified:"):
            sha1 = sha1[len("unverified:") :]
        return cls(
            file_name=data.get("fileName", ""),
            file_id=data.get("fileId", ""),
            content_length=int(data.get("contentLength") or 0),
            content_sha1=sha1,
            content_type=data.get("contentType"),
            upload_timestamp=parse_b2_timestamp(data.get("uploadTimestamp")),
        )


class B2Client:
    """Client for the B2 native API over ``httpx.AsyncClient``.

    Example:
        async with B2Client(timeout=300) as client:
            await client.authorize(key_id, application_key)
            bucket_id = await client.find_bucket_id("my-bucket")
            target = await client.get_upload_url(bucket_id)
            await client.upload_bytes(target, "proj/mapping.json", data, sha1)
    """

    def __init__(
        self,
        timeout: float = 300.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        authorize_url: str = B2_AUTHORIZE_URL,
    ):
        """Initialize the client.

        Args:
            timeout: Request timeout in seconds
            max_retries: Retries for metadata calls on transient failures
            retry_delay: Initial delay between metadata retries in seconds
            transport: Optional httpx transport (used by tests)
            authorize_url: Account authorization endpoint
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.authorize_url = authorize_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._auth: Optional[B2Authorization] = None
        self._credentials: Optional[tuple[str, str]] = None

    async def __aenter__(self) -> B2Client:
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    @property
    def is_authorized(self) -> bool:
        return self._auth is not None

    @property
    def authorization(self) -> B2Authorization:
        if self._auth is None:
            raise AuthError("Not authorized. Call authorize() first.")
        return self._auth

    # =========================
    # Error handling
    # =========================

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[str, str]:
        """Extract B2's ``code`` and ``message`` from an error response."""
        try:
            data = response.json()
        except ValueError:
            return "", response.text[:200]
        if not isinstance(data, dict):
            return "", ""
        return str(data.get("code") or ""), str(data.get("message") or "")

    def _map_http_error(self, response: httpx.Response) -> Exception:
        """Translate an error response into the pipeline's exception taxonomy."""
        status_code = response.status_code
        code, message = self._error_details(response)
        detail = f"{code}: {message}" if code else message
        error_msg = f"B2 request failed with status {status_code}"
        if detail:
            error_msg = f"{error_msg} ({detail})"

        if status_code == 401:
            if code == "expired_auth_token":
                return TransientIOError(error_msg)
            return AuthError(error_msg)
        if status_code == 429:
            return RateLimitError(error_msg)
        if status_code == 408 or 500 <= status_code < 600:
            return NetworkError(error_msg)
        return AssetSyncAPIError(error_msg, status_code=status_code)

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with +/- 25% jitter."""
        base_delay = self.retry_delay * (2**attempt)
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    async def _api_call(self, operation: str, payload: dict[str, Any]) -> Any:
        """POST to a B2 API operation with retry on transient failures.

        An expired account token is refreshed once using the cached
        credentials.
        """
        auth = self.authorization
        client = self._get_client()
        reauthorized = False
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            url = f"{auth.api_url}/{B2_API_VERSION}/{operation}"
            try:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Authorization": auth.authorization_token},
                )
            except httpx.RequestError as e:
                last_exception = NetworkError(f"Network error calling {operation}: {e}")
                if attempt < self.max_retries:
                    await asyncio.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise last_exception from e

            if response.is_success:
                try:
                    return response.json()
                except ValueError as e:
                    raise AssetSyncAPIError(
                        f"Invalid JSON response from {operation}"
                    ) from e

            error = self._map_http_error(response)
            last_exception = error
            if (
                response.status_code == 401
                and isinstance(error, TransientIOError)
                and not reauthorized
                and self._credentials is not None
            ):
                logger.info("B2 account token expired, re-authorizing")
                reauthorized = True
                auth = await self.authorize(*self._credentials)
                continue
            if isinstance(error, TransientIOError) and attempt < self.max_retries:
                retry_after = response.headers.get("Retry-After")
                if retry_after and retry_after.isdigit():
                    delay = float(retry_after)
                else:
                    delay = self._calculate_retry_delay(attempt)
                await asyncio.sleep(delay)
                continue
            raise error

        if last_exception:
            raise last_exception
        raise AssetSyncAPIError(f"{operation} failed after all retry attempts")

    # =========================
    # Account and bucket operations
    # =========================

    async def authorize(self, key_id: str, application_key: str) -> B2Authorization:
        """Authorize the account and cache the session token.

        Raises:
            AuthError: If the credentials are rejected or the call fails
        """
        client = self._get_client()
        try:
            response = await client.get(
                self.authorize_url, auth=(key_id, application_key)
            )
        except httpx.RequestError as e:
            raise AuthError(f"Authorization request failed: {e}") from e

        if not response.is_success:
            code, message = self._error_details(response)
            raise AuthError(
                f"B2 authorization failed with status {response.status_code}"
                + (f": {message or code}" if (message or code) else "")
            )
        try:
            data = response.json()
            self._auth = B2Authorization(
                account_id=data["accountId"],
                authorization_token=data["authorizationToken"],
                api_url=data["apiUrl"].rstrip("/"),
                download_url=data["downloadUrl"].rstrip("/"),
                allowed_bucket_id=(data.get("allowed") or {}).get("bucketId"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise AuthError(f"Invalid authorization response: {e}") from e

        self._credentials = (key_id, application_key)
        logger.info(f"Authorized B2 account {self._auth.account_id}")
        return self._auth

    async def find_bucket_id(self, bucket_name: str) -> str:
        """Resolve a bucket name to its ID.

        Raises:
            AssetSyncAPIError: If no bucket with that name is visible
        """
        data = await self._api_call(
            "b2_list_buckets",
            {"accountId": self.authorization.account_id, "bucketName": bucket_name},
        )
        for bucket in data.get("buckets", []):
            if bucket.get("bucketName") == bucket_name:
                return bucket["bucketId"]
        raise AssetSyncAPIError(f"Bucket not found: {bucket_name}", status_code=404)

    async def get_upload_url(self, bucket_id: str) -> UploadTarget:
        data = await self._api_call("b2_get_upload_url", {"bucketId": bucket_id})
        try:
            return UploadTarget(
                upload_url=data["uploadUrl"],
                authorization_token=data["authorizationToken"],
            )
        except (KeyError, TypeError) as e:
            raise AssetSyncAPIError(f"Invalid b2_get_upload_url response: {e}") from e

    # =========================
    # File operations
    # =========================

    async def upload_bytes(
        self,
        target: UploadTarget,
        file_name: str,
        data: bytes,
        content_sha1: str,
        content_type: str = "b2/x-auto",
    ) -> B2File:
        """Upload a whole file to an upload target.

        No retry happens here: a failed upload URL must be replaced, which
        the caller does.

        Raises:
            TransientIOError: On network failures, 401/408/429 and 5xx
            AssetSyncAPIError: On other rejections
        """
        client = self._get_client()
        headers = {
            "Authorization": target.authorization_token,
            "X-Bz-File-Name": quote(file_name, safe="/"),
            "Content-Type": content_type,
            "X-Bz-Content-Sha1": content_sha1,
        }
        try:
            response = await client.post(target.upload_url, content=data, headers=headers)
        except httpx.RequestError as e:
            raise NetworkError(f"Network error uploading {file_name}: {e}") from e

        if not response.is_success:
            error = self._map_http_error(response)
            if isinstance(error, AuthError):
                # Upload tokens expire independently of the account token
                raise TransientIOError(str(error)) from None
            raise error
        try:
            return B2File.from_api(response.json())
        except (ValueError, TypeError, AttributeError) as e:
            raise AssetSyncAPIError(
                f"Invalid upload response for {file_name}: {e}",
                status_code=response.status_code,
            ) from e

    async def list_file_names(
        self,
        bucket_id: str,
        prefix: str = "",
        start_file_name: Optional[str] = None,
        max_file_count: int = DEFAULT_LIST_PAGE_SIZE,
    ) -> tuple[list[B2File], Optional[str]]:
        """List one page of file names.

        Returns:
            Tuple of (files, next file name or None when the listing is done)
        """
        payload: dict[str, Any] = {
            "bucketId": bucket_id,
            "maxFileCount": max_file_count,
        }
        if prefix:
            payload["prefix"] = prefix
        if start_file_name:
            payload["startFileName"] = start_file_name
        data = await self._api_call("b2_list_file_names", payload)
        files = [
            B2File.from_api(item)
            for item in data.get("files", [])
            if item.get("action", "upload") == "upload"
        ]
        return files, data.get("nextFileName")

    async def list_all_file_names(self, bucket_id: str, prefix: str = "") -> list[B2File]:
        """List every file under a prefix, following pagination."""
        result: list[B2File] = []
        start: Optional[str] = None
        while True:
            files, start = await self.list_file_names(
                bucket_id, prefix=prefix, start_file_name=start
            )
            result.extend(files)
            if not start:
                return result

    async def get_file_info(self, bucket_id: str, file_name: str) -> Optional[B2File]:
        """Return the latest version of ``file_name``, or None if absent."""
        files, _ = await self.list_file_names(
            bucket_id, prefix=file_name, start_file_name=file_name, max_file_count=1
        )
        if files and files[0].file_name == file_name:
            return files[0]
        return None

    async def delete_file_version(self, file_name: str, file_id: str) -> None:
        await self._api_call(
            "b2_delete_file_version", {"fileName": file_name, "fileId": file_id}
        )
