"""Low-level client for the Backblaze B2 native API (version 2).

``B2Api`` knows how to phrase each call, which credentials it needs and how
to classify the answer. It does not know about ``StoragePath`` or streams;
that mapping lives in ``B2Backend``.

Request lifecycle:
    1. Fetch the current authorization from the session (single-flight
       refresh when missing or expired).
    2. Send the request through the transport.
    3. Classify a failure response into the error taxonomy.
    4. An ``expired_auth_token`` / ``bad_auth_token`` rejection invalidates
       the token and the request is sent once more with a fresh one. A
       second rejection is fatal.
    5. Transient failures are retried with backoff, each attempt starting
       again at step 1.

Error mapping:
    ======  ==========================================  =====================
    Status  Code                                        Result
    ======  ==========================================  =====================
    400     bad_request                                 FatalError
    400     invalid_bucket_id, file_not_present         NotFoundError
    400     message mentions sha1 (uploads, finish)     IntegrityError
    401     bad_auth_token, expired_auth_token          refresh and retry once
    401     unauthorized (and authorize failures)       PermissionDeniedError
    403     any                                         PermissionDeniedError
    404     any                                         NotFoundError
    408     any                                         TransientError
    429     any                                         TransientError
    5xx     any                                         TransientError
    ======  ==========================================  =====================

"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import quote

from .errors import (
    FatalError,
    FileStoreError,
    IntegrityError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
)
from .retry import retry_async
from .session import AccountAuthorization, B2Session, UploadEndpoint

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from .config import B2Config
    from .transport import Transport, TransportResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

B2_API_VERSION = "v2"

_TOKEN_CODES = frozenset({"bad_auth_token", "expired_auth_token"})
_NOT_FOUND_CODES = frozenset({"invalid_bucket_id", "file_not_present", "not_found", "no_such_file"})
_CHECKSUM_OPERATIONS = frozenset({"b2_upload_file", "b2_upload_part", "b2_finish_large_file"})


class TokenRejectedError(FatalError):
    """Authorization token refused by the service; refreshing may help."""


def classify_error(
    operation: str,
    status_code: int,
    body: bytes,
    *,
    path: Any | None = None,
) -> FileStoreError:
    """Translate a failed B2 response into the error taxonomy.

    Args:
        operation: API method name, used in messages and for
            operation-specific rules.
        status_code: HTTP status of the response.
        body: Raw response body (a JSON error document when well formed).
        path: Storage path attached to the returned error.

    Returns:
        The error to raise. ``TokenRejectedError`` signals that the caller
        should refresh the authorization.

    """
    try:
        payload = json.loads(body) if body else {}
        code = str(payload.get("code", ""))
        message = str(payload.get("message", "")) or code
        parsed = True
    except (ValueError, AttributeError):
        code = ""
        message = body[:200].decode("utf-8", errors="replace")
        parsed = False

    detail = f"{operation}: {message}" if message else operation

    if status_code in (408, 429) or status_code >= 500:
        return TransientError.unexpected_status(status_code, detail, path=path)
    if not parsed:
        return FatalError.malformed_response(operation, path=path)
    if status_code == 401:
        if operation == "b2_authorize_account":
            return PermissionDeniedError("The application key id or key were not recognized")
        if code in _TOKEN_CODES:
            return TokenRejectedError(f"Authorization token rejected ({code})", path=path)
        return PermissionDeniedError(message or "Unauthorized", path=path)
    if status_code == 403:
        return PermissionDeniedError(message or "Forbidden", path=path)
    if status_code == 404 or (status_code == 400 and code in _NOT_FOUND_CODES):
        return NotFoundError(path if path is not None else operation, reason=message or None)
    if status_code == 400 and operation in _CHECKSUM_OPERATIONS and "sha1" in message.lower():
        return IntegrityError(f"{operation} rejected content checksum: {message}", path=path)
    return FatalError.unexpected_status(status_code, detail, path=path)


class B2Api:
    """Authorized, retried access to the B2 API for one bucket."""

    def __init__(
        self,
        config: B2Config,
        transport: Transport,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._transport = transport
        self._policy = config.retry_policy
        self._sleep = sleep
        session_options: dict[str, Any] = {"token_ttl": config.token_ttl}
        if clock is not None:
            session_options["clock"] = clock
        self.session = B2Session(self._authorize_account, **session_options)

    @property
    def bucket_name(self) -> str:
        return self._config.bucket

    async def _retrying(self, operation: str, attempt: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(attempt, policy=self._policy, description=operation, sleep=self._sleep)

    async def _authorize_account(self) -> AccountAuthorization:
        credentials = f"{self._config.key_id}:{self._config.key}".encode()
        headers = {"Authorization": "Basic " + base64.b64encode(credentials).decode("ascii")}
        url = f"{self._config.host}/b2api/{B2_API_VERSION}/b2_authorize_account"

        async def attempt() -> AccountAuthorization:
            response = await self._transport.request("GET", url, headers=headers)
            payload = await self._read_json("b2_authorize_account", response)
            try:
                return AccountAuthorization.from_response(payload)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                raise FatalError.malformed_response("b2_authorize_account") from exc

        return await self._retrying("b2_authorize_account", attempt)

    async def _read_json(
        self,
        operation: str,
        response: TransportResponse,
        *,
        path: Any | None = None,
    ) -> dict[str, Any]:
        body = await response.read()
        if not response.is_success:
            raise classify_error(operation, response.status_code, body, path=path)
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise FatalError.malformed_response(operation, path=path) from exc
        if not isinstance(payload, dict):
            raise FatalError.malformed_response(operation, path=path)
        return payload

    async def _authorized(
        self,
        operation: str,
        send: Callable[[AccountAuthorization], Awaitable[T]],
    ) -> T:
        """Run ``send`` with the current authorization, refreshing once on rejection."""
        authorization = await self.session.get()
        try:
            return await send(authorization)
        except TokenRejectedError:
            logger.info("%s rejected the authorization token, refreshing", operation)
            self.session.invalidate(authorization.token)

        authorization = await self.session.get()
        try:
            return await send(authorization)
        except TokenRejectedError as exc:
            raise FatalError.auth_rejected(f"{operation}: authorization rejected after refresh") from exc

    async def call(
        self,
        operation: str,
        body: Mapping[str, Any],
        *,
        path: Any | None = None,
        retry: bool = True,
    ) -> dict[str, Any]:
        """POST a JSON request to an API method and return the decoded answer."""
        content = json.dumps(body).encode("utf-8")

        async def send(authorization: AccountAuthorization) -> dict[str, Any]:
            logger.debug("B2 %s", operation)
            response = await self._transport.request(
                "POST",
                f"{authorization.api_url}/b2api/{B2_API_VERSION}/{operation}",
                headers={"Authorization": authorization.token, "Content-Type": "application/json"},
                content=content,
            )
            return await self._read_json(operation, response, path=path)

        if not retry:
            return await self._authorized(operation, send)
        return await self._retrying(operation, lambda: self._authorized(operation, send))

    async def bucket_id(self) -> str:
        """Resolve and cache the id of the configured bucket."""
        if self.session.bucket_id is not None:
            return self.session.bucket_id

        authorization = await self.session.get()
        if authorization.allowed_bucket_id and authorization.allowed_bucket_name == self.bucket_name:
            bucket_id = authorization.allowed_bucket_id
        else:
            payload = await self.call(
                "b2_list_buckets",
                {"accountId": authorization.account_id, "bucketName": self.bucket_name},
            )
            buckets = payload.get("buckets") or []
            matches = [bucket for bucket in buckets if bucket.get("bucketName") == self.bucket_name]
            if not matches:
                raise NotFoundError(self.bucket_name, reason="Bucket not found")
            bucket_id = str(matches[0]["bucketId"])

        self.session.bucket_id = bucket_id
        return bucket_id

    async def list_file_names(
        self,
        *,
        prefix: str = "",
        start_file_name: str | None = None,
        max_file_count: int = 1000,
        path: Any | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "bucketId": await self.bucket_id(),
            "maxFileCount": max_file_count,
            "prefix": prefix,
        }
        if start_file_name is not None:
            body["startFileName"] = start_file_name
        return await self.call("b2_list_file_names", body, path=path)

    async def list_file_versions(
        self,
        *,
        prefix: str,
        start_file_name: str | None = None,
        start_file_id: str | None = None,
        max_file_count: int = 1000,
        path: Any | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "bucketId": await self.bucket_id(),
            "maxFileCount": max_file_count,
            "prefix": prefix,
        }
        if start_file_name is not None:
            body["startFileName"] = start_file_name
        if start_file_id is not None:
            body["startFileId"] = start_file_id
        return await self.call("b2_list_file_versions", body, path=path)

    async def delete_file_version(self, file_name: str, file_id: str, *, path: Any | None = None) -> None:
        await self.call("b2_delete_file_version", {"fileName": file_name, "fileId": file_id}, path=path)

    async def copy_file(self, source_file_id: str, file_name: str, *, path: Any | None = None) -> dict[str, Any]:
        return await self.call(
            "b2_copy_file",
            {"sourceFileId": source_file_id, "fileName": file_name, "metadataDirective": "COPY"},
            path=path,
        )

    async def start_large_file(self, file_name: str, *, path: Any | None = None) -> str:
        payload = await self.call(
            "b2_start_large_file",
            {"bucketId": await self.bucket_id(), "fileName": file_name, "contentType": "b2/x-auto"},
            path=path,
        )
        try:
            return str(payload["fileId"])
        except KeyError as exc:
            raise FatalError.malformed_response("b2_start_large_file", path=path) from exc

    async def finish_large_file(
        self,
        file_id: str,
        part_sha1s: Sequence[str],
        *,
        path: Any | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            "b2_finish_large_file",
            {"fileId": file_id, "partSha1Array": list(part_sha1s)},
            path=path,
        )

    async def cancel_large_file(self, file_id: str, *, path: Any | None = None) -> None:
        await self.call("b2_cancel_large_file", {"fileId": file_id}, path=path)

    async def _get_upload_endpoint(self, file_id: str | None, *, path: Any | None) -> UploadEndpoint:
        pooled = self.session.take_upload_endpoint(file_id)
        if pooled is not None:
            return pooled
        if file_id is None:
            payload = await self.call("b2_get_upload_url", {"bucketId": await self.bucket_id()}, path=path, retry=False)
            operation = "b2_get_upload_url"
        else:
            payload = await self.call("b2_get_upload_part_url", {"fileId": file_id}, path=path, retry=False)
            operation = "b2_get_upload_part_url"
        try:
            return UploadEndpoint(
                upload_url=str(payload["uploadUrl"]),
                token=str(payload["authorizationToken"]),
                file_id=file_id,
            )
        except KeyError as exc:
            raise FatalError.malformed_response(operation, path=path) from exc

    async def _upload(
        self,
        operation: str,
        file_id: str | None,
        headers: Mapping[str, str],
        data: bytes,
        *,
        path: Any | None,
    ) -> dict[str, Any]:
        """Send one upload request, drawing an endpoint from the pool per attempt.

        An endpoint that saw any failure is dropped, so the next attempt asks
        for a fresh upload URL.
        """

        async def attempt() -> dict[str, Any]:
            endpoint = await self._get_upload_endpoint(file_id, path=path)
            request_headers = {"Authorization": endpoint.token, **headers}
            try:
                response = await self._transport.request(
                    "POST",
                    endpoint.upload_url,
                    headers=request_headers,
                    content=data,
                )
                result = await self._read_json(operation, response, path=path)
            except TokenRejectedError as exc:
                message = f"{operation}: upload authorization expired"
                raise TransientError(message, path=path) from exc
            self.session.release_upload_endpoint(endpoint)
            return result

        return await self._retrying(operation, attempt)

    async def upload_file(self, file_name: str, data: bytes, sha1: str, *, path: Any | None = None) -> dict[str, Any]:
        """Upload a whole file in one request."""
        headers = {
            "X-Bz-File-Name": quote(file_name, safe="/"),
            "Content-Type": "b2/x-auto",
            "X-Bz-Content-Sha1": sha1,
        }
        return await self._upload("b2_upload_file", None, headers, data, path=path)

    async def upload_part(
        self,
        file_id: str,
        part_number: int,
        data: bytes,
        sha1: str,
        *,
        path: Any | None = None,
    ) -> dict[str, Any]:
        """Upload one part of a large file."""
        headers = {"X-Bz-Part-Number": str(part_number), "X-Bz-Content-Sha1": sha1}
        return await self._upload("b2_upload_part", file_id, headers, data, path=path)

    async def download(self, file_name: str, *, offset: int = 0, path: Any | None = None) -> TransportResponse:
        """Open a streaming download, optionally starting at ``offset``.

        Returns:
            The open response (status 200 or 206). The caller must close it.

        """
        operation = "b2_download_file_by_name"

        async def send(authorization: AccountAuthorization) -> TransportResponse:
            url = "/".join(
                (
                    authorization.download_url,
                    "file",
                    quote(self.bucket_name, safe=""),
                    quote(file_name, safe="/"),
                ),
            )
            headers = {"Authorization": authorization.token}
            if offset:
                headers["Range"] = f"bytes={offset}-"
            response = await self._transport.request("GET", url, headers=headers)
            if response.is_success:
                return response
            body = await response.read()
            raise classify_error(operation, response.status_code, body, path=path)

        return await self._retrying(operation, lambda: self._authorized(operation, send))

    async def aclose(self) -> None:
        await self.session.aclose()
