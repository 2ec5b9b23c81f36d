"""Shared session state for one remote backend instance.

``B2Session`` owns everything that concurrent operations on the same backend
share: the account authorization, the resolved bucket id and the pool of
upload endpoints. It is created lazily, refreshed when the authorization
expires or is rejected, and torn down by ``aclose()``.

Refresh is single-flight: the first caller that needs a new authorization
starts one ``asyncio.Task`` and every concurrent caller awaits that same task.
Waiters are shielded from each other, so cancelling one caller never aborts a
refresh that others depend on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import FatalError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountAuthorization:
    """Result of ``b2_authorize_account``."""

    account_id: str
    token: str = field(repr=False)
    api_url: str
    download_url: str
    recommended_part_size: int | None = None
    absolute_minimum_part_size: int | None = None
    allowed_bucket_id: str | None = None
    allowed_bucket_name: str | None = None

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> AccountAuthorization:
        """Build an authorization from the decoded JSON response.

        Raises:
            KeyError: If a required field is missing.
            TypeError: If the payload is not a mapping of the expected shape.

        """
        allowed = payload.get("allowed") or {}
        return cls(
            account_id=str(payload["accountId"]),
            token=str(payload["authorizationToken"]),
            api_url=str(payload["apiUrl"]).rstrip("/"),
            download_url=str(payload["downloadUrl"]).rstrip("/"),
            recommended_part_size=_optional_int(payload.get("recommendedPartSize")),
            absolute_minimum_part_size=_optional_int(payload.get("absoluteMinimumPartSize")),
            allowed_bucket_id=allowed.get("bucketId"),
            allowed_bucket_name=allowed.get("bucketName"),
        )


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None


@dataclass
class UploadEndpoint:
    """Upload URL plus its dedicated token.

    Endpoints for large-file parts are bound to one ``file_id``; endpoints for
    single uploads have ``file_id`` set to None.
    """

    upload_url: str
    token: str = field(repr=False)
    file_id: str | None = None


class B2Session:
    """Authorization cache, bucket id and upload endpoint pool."""

    def __init__(
        self,
        authorizer: Callable[[], Awaitable[AccountAuthorization]],
        *,
        token_ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create an empty session.

        Args:
            authorizer: Coroutine function performing ``b2_authorize_account``.
            token_ttl: Seconds an authorization is reused before renewal.
            clock: Monotonic clock, replaceable in tests.

        """
        self._authorizer = authorizer
        self._token_ttl = token_ttl
        self._clock = clock
        self._authorization: AccountAuthorization | None = None
        self._expires_at = 0.0
        self._refresh_task: asyncio.Task[AccountAuthorization] | None = None
        self._upload_endpoints: list[UploadEndpoint] = []
        self._closed = False
        self.bucket_id: str | None = None
        self.refresh_count = 0

    @property
    def authorization(self) -> AccountAuthorization | None:
        """Currently cached authorization, if any."""
        return self._authorization

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self) -> AccountAuthorization:
        """Return a usable authorization, refreshing it when missing or expired."""
        authorization = self._authorization
        if authorization is not None and self._clock() < self._expires_at:
            return authorization
        return await self.refresh()

    async def refresh(self) -> AccountAuthorization:
        """Join the in-flight refresh or start a new one."""
        if self._closed:
            message = "B2 session is closed"
            raise FatalError(message)
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._authorize())
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _authorize(self) -> AccountAuthorization:
        authorization = await self._authorizer()
        self._authorization = authorization
        self._expires_at = self._clock() + self._token_ttl
        self.refresh_count += 1
        logger.info("Authorized B2 account %s (refresh #%d)", authorization.account_id, self.refresh_count)
        return authorization

    def _refresh_finished(self, task: asyncio.Task[AccountAuthorization]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Marks the exception as retrieved when no waiter is left.
            task.exception()

    def invalidate(self, token: str) -> None:
        """Drop the cached authorization if it still carries ``token``.

        A token that was already replaced by a concurrent refresh is ignored,
        so late rejections never discard a fresh authorization.
        """
        current = self._authorization
        if current is not None and current.token == token:
            logger.debug("Invalidating rejected B2 authorization token")
            self._authorization = None

    def take_upload_endpoint(self, file_id: str | None = None) -> UploadEndpoint | None:
        """Remove and return a pooled endpoint for ``file_id``.

        A taken endpoint is used by exactly one request at a time. Callers
        return it with ``release_upload_endpoint`` after a successful upload
        and simply drop it after a failure.
        """
        for index, endpoint in enumerate(self._upload_endpoints):
            if endpoint.file_id == file_id:
                return self._upload_endpoints.pop(index)
        return None

    def release_upload_endpoint(self, endpoint: UploadEndpoint) -> None:
        if not self._closed:
            self._upload_endpoints.append(endpoint)

    def discard_upload_endpoints(self, file_id: str) -> None:
        """Forget every part endpoint bound to a finished or cancelled file."""
        self._upload_endpoints = [
            endpoint for endpoint in self._upload_endpoints if endpoint.file_id != file_id
        ]

    async def aclose(self) -> None:
        """Cancel any pending refresh and drop all cached state."""
        self._closed = True
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._refresh_task = None
        self._authorization = None
        self._upload_endpoints.clear()
        self.bucket_id = None
