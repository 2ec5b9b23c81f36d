"""Large-file (multipart) uploads for the B2 backend.

A large upload is a small state machine:

    start ──> upload part 1..n ──> finish
      │              │                │
      └──────────────┴────────────────┴──> cancel (on any failure)

``UploadState`` records the server-side file id, the SHA-1 of every part the
service has committed, the next part number and the number of bytes
committed. Parts are uploaded sequentially, so memory use is bounded by one
part. Failed parts are retried by ``B2Api.upload_part`` under the backend's
retry policy; anything that still fails (including caller cancellation and
errors raised by the source stream) cancels the large file on the server
before the error propagates, so no orphaned parts are left behind.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import IntegrityError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .b2_api import B2Api

logger = logging.getLogger(__name__)


@dataclass
class UploadState:
    """Progress of one large upload."""

    file_id: str
    file_name: str
    part_sha1s: list[str] = field(default_factory=list)
    next_part_number: int = 1
    bytes_committed: int = 0

    def commit(self, sha1: str, size: int) -> None:
        """Record a part acknowledged by the service."""
        self.part_sha1s.append(sha1)
        self.next_part_number += 1
        self.bytes_committed += size


async def upload_large_file(
    api: B2Api,
    file_name: str,
    parts: AsyncIterator[bytes],
    *,
    path: Any | None = None,
) -> dict[str, Any]:
    """Upload ``parts`` as one large file and return the finished file info.

    Args:
        api: Client used for every request.
        file_name: Object key of the new file.
        parts: Parts in order. All but the last must meet the service's
            minimum part size.
        path: Storage path attached to errors.

    Raises:
        IntegrityError: If the service reports a different part checksum or
            a different total length than what was sent.

    """
    file_id = await api.start_large_file(file_name, path=path)
    state = UploadState(file_id=file_id, file_name=file_name)
    logger.info("Started large upload %s for %s", file_id, file_name)

    try:
        async for part in parts:
            sha1 = hashlib.sha1(part).hexdigest()
            result = await api.upload_part(state.file_id, state.next_part_number, part, sha1, path=path)
            returned = result.get("contentSha1")
            if returned != sha1:
                raise IntegrityError.checksum_mismatch(path, expected=sha1, actual=str(returned))
            state.commit(sha1, len(part))
            logger.debug(
                "Committed part %d of %s (%d bytes total)",
                state.next_part_number - 1,
                file_name,
                state.bytes_committed,
            )

        info = await api.finish_large_file(state.file_id, state.part_sha1s, path=path)
    except BaseException:
        await _cancel(api, state, path=path)
        raise
    finally:
        api.session.discard_upload_endpoints(file_id)

    length = info.get("contentLength")
    if length != state.bytes_committed:
        # Finished files cannot be cancelled; remove the bad version instead.
        await _delete_finished(api, state, path=path)
        raise IntegrityError.size_mismatch(path, expected=state.bytes_committed, actual=length)

    logger.info(
        "Finished large upload %s for %s (%d parts, %d bytes)",
        file_id,
        file_name,
        len(state.part_sha1s),
        state.bytes_committed,
    )
    return info


async def _cancel(api: B2Api, state: UploadState, *, path: Any | None) -> None:
    """Cancel the large file server side, even while the caller is being cancelled."""
    try:
        await asyncio.shield(api.cancel_large_file(state.file_id, path=path))
    except Exception as exc:
        logger.warning(
            "Failed to cancel large upload %s for %s: %s",
            state.file_id,
            state.file_name,
            exc,
        )
    else:
        logger.info(
            "Cancelled large upload %s for %s after %d committed parts",
            state.file_id,
            state.file_name,
            len(state.part_sha1s),
        )


async def _delete_finished(api: B2Api, state: UploadState, *, path: Any | None) -> None:
    try:
        await asyncio.shield(api.delete_file_version(state.file_name, state.file_id, path=path))
    except Exception as exc:
        logger.warning("Failed to delete unverified upload %s for %s: %s", state.file_id, state.file_name, exc)
