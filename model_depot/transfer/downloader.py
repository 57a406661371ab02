"""
Handles the low-level downloading of files over HTTP with adaptive chunk sizing,
ranged resumption and cooperative pause/cancel.

Resumption caveat: a paused transfer continues from its partial file only when
the server honours the `Range` header. A server that answers a ranged request
with a full `200` response forces the transfer to restart from byte zero; the
handle then reports `restarted=True`, and `ResumeToken.supports_ranges` tells
callers in advance whether the server advertised range support.
"""

import asyncio
import errno
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiohttp

from model_depot.exceptions import (
    StorageFullError,
    TransferError,
    TransferFailedError,
    TransferStopped,
    WriteFailedError,
)

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

PART_SUFFIX = ".part"
_DISK_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}

_connection_pool: aiohttp.ClientSession | None = None
_pool_lock = asyncio.Lock()


async def get_connection_pool(
    max_transfers: int = 2, connect_timeout: float = 15, read_timeout: float = 90
) -> aiohttp.ClientSession:
    """
    Gets or creates a shared aiohttp ClientSession for transfers.

    This function ensures that only one connection pool is created for the
    lifetime of the application run.

    Args:
        max_transfers: Maximum concurrent transfers (should match
            config.max_concurrent_transfers).
    """
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            return _connection_pool

        connector = aiohttp.TCPConnector(
            limit=max_transfers * 2,  # Total connections
            limit_per_host=max_transfers,  # Per-host (model CDN)
            ttl_dns_cache=600,  # 10 minutes
            keepalive_timeout=30,
            enable_cleanup_closed=True,
            force_close=False,
        )
        timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=connect_timeout, sock_read=read_timeout
        )
        # Model files are already compressed; ranged requests need identity encoding.
        _connection_pool = aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            headers={"Accept-Encoding": "identity"},
        )
        log.debug(f"Created transfer pool with limit_per_host={max_transfers}")

    return _connection_pool


async def close_connection_pool() -> None:
    """Closes the shared global connection pool."""
    global _connection_pool
    async with _pool_lock:
        if _connection_pool and not _connection_pool.closed:
            await _connection_pool.close()
            _connection_pool = None
            log.debug("Shared transfer connection pool closed.")


def partial_path_for(destination: Path) -> Path:
    """Returns the path bytes are written to before a transfer completes."""
    return destination.with_name(destination.name + PART_SUFFIX)


@dataclass(frozen=True)
class ResumeToken:
    """
    Everything needed to continue a paused transfer.

    Attributes:
        url: Remote URL of the artifact.
        destination: Final path of the artifact once complete.
        bytes_written: Bytes on disk when the transfer stopped.
        bytes_expected: Total size reported by the server (0 if unknown).
        validator: ETag or Last-Modified of the first response, sent as If-Range.
        supports_ranges: Whether the server advertised `Accept-Ranges: bytes`.
    """

    url: str
    destination: Path
    bytes_written: int
    bytes_expected: int
    validator: str | None = None
    supports_ranges: bool = False

    @property
    def partial_path(self) -> Path:
        return partial_path_for(self.destination)


class ProgressThrottle:
    """Forwards progress to a callback no more often than once per interval."""

    def __init__(self, callback: ProgressCallback | None, interval: float):
        self._callback = callback
        self._interval = interval
        self._last_emit = float("-inf")

    def __call__(self, written: int, expected: int, force: bool = False) -> None:
        if self._callback is None:
            return
        now = time.monotonic()
        if force or now - self._last_emit >= self._interval:
            self._last_emit = now
            self._callback(written, expected)


class TransferHandle:
    """A single running transfer. Await `wait()` for the final local path."""

    def __init__(
        self,
        url: str,
        destination: Path,
        bytes_expected: int = 0,
        validator: str | None = None,
        resuming: bool = False,
    ):
        self.url = url
        self.destination = destination
        self.bytes_expected = bytes_expected
        self.bytes_written = 0
        self.validator = validator
        self.supports_ranges = False
        self.restarted = False
        self.resuming = resuming
        self._task: asyncio.Task | None = None
        self._stop_reason: str | None = None

    @property
    def partial_path(self) -> Path:
        return partial_path_for(self.destination)

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def wait(self) -> Path:
        """
        Waits for the transfer to finish and returns the final path.

        Raises:
            TransferStopped: The transfer was paused or cancelled.
            TransferError: The transfer failed.
        """
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            # Stopped before the transfer coroutine ever ran.
            if self._task.cancelled() and self._stop_reason:
                raise TransferStopped(self._stop_reason) from None
            raise

    def to_token(self) -> ResumeToken:
        return ResumeToken(
            url=self.url,
            destination=self.destination,
            bytes_written=self.bytes_written,
            bytes_expected=self.bytes_expected,
            validator=self.validator,
            supports_ranges=self.supports_ranges,
        )


class Downloader:
    """A low-level resumable file downloader with adaptive chunk sizing."""

    MIN_CHUNK_SIZE = 131072  # 128 KB
    MAX_CHUNK_SIZE = 1048576  # 1 MB
    _shared_chunk_size = MIN_CHUNK_SIZE
    _chunk_lock = asyncio.Lock()

    def __init__(
        self,
        max_concurrent: int = 2,
        progress_interval: float = 0.25,
        connect_timeout: float = 15,
        read_timeout: float = 90,
        session: aiohttp.ClientSession | None = None,
    ):
        self.max_concurrent = max_concurrent
        self.progress_interval = progress_interval
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self._session = session
        self._slots = asyncio.Semaphore(max_concurrent)

    @classmethod
    async def _adapt_chunk_size_shared(cls, current_speed_bps: float) -> int:
        """Adapts the shared chunk size based on current network speed."""
        async with cls._chunk_lock:
            if current_speed_bps > 10 * 1024 * 1024:  # > 10 MB/s
                cls._shared_chunk_size = cls.MAX_CHUNK_SIZE
            elif current_speed_bps > 5 * 1024 * 1024:  # > 5 MB/s
                cls._shared_chunk_size = 524288  # 512 KB
            elif current_speed_bps > 1 * 1024 * 1024:  # > 1 MB/s
                cls._shared_chunk_size = 262144  # 256 KB
            else:
                cls._shared_chunk_size = cls.MIN_CHUNK_SIZE
            return cls._shared_chunk_size

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is not None:
            return self._session
        return await get_connection_pool(
            self.max_concurrent, self.connect_timeout, self.read_timeout
        )

    def start(
        self,
        url: str,
        destination: Path,
        on_progress: ProgressCallback | None = None,
    ) -> TransferHandle:
        """
        Starts a fresh transfer, discarding any stale partial file.

        `on_progress` receives `(bytes_written, bytes_expected)`, where
        `bytes_expected` is 0 until the server reports a size.
        """
        handle = TransferHandle(url, Path(destination))
        handle._task = asyncio.create_task(self._run(handle, on_progress))
        return handle

    def resume(
        self, token: ResumeToken, on_progress: ProgressCallback | None = None
    ) -> TransferHandle:
        """Continues a transfer from the partial file described by `token`."""
        handle = TransferHandle(
            token.url,
            token.destination,
            bytes_expected=token.bytes_expected,
            validator=token.validator,
            resuming=True,
        )
        handle.supports_ranges = token.supports_ranges
        handle._task = asyncio.create_task(self._run(handle, on_progress))
        return handle

    async def pause(self, handle: TransferHandle) -> ResumeToken | None:
        """
        Stops writing and returns a token for `resume()`.

        Returns None when the transfer had already finished or failed before the
        pause landed; the outcome is then available from `handle.wait()`.
        """
        if handle._task is None or handle.done():
            return None
        handle._stop_reason = "paused"
        handle._task.cancel()
        if not isinstance(await _settle(handle._task), TransferStopped):
            return None
        log.debug(
            f"Paused '{handle.destination.name}' at {handle.bytes_written} bytes."
        )
        return handle.to_token()

    async def cancel(self, target: TransferHandle | ResumeToken) -> None:
        """
        Aborts a transfer and deletes its partial file. Safe to call repeatedly,
        and on handles that already finished.
        """
        if isinstance(target, TransferHandle) and target._task is not None:
            if not target.done():
                target._stop_reason = "cancelled"
                target._task.cancel()
            await _settle(target._task)
        await asyncio.to_thread(target.partial_path.unlink, missing_ok=True)

    async def _run(
        self, handle: TransferHandle, on_progress: ProgressCallback | None
    ) -> Path:
        throttle = ProgressThrottle(on_progress, self.progress_interval)
        try:
            async with self._slots:
                return await self._transfer(handle, throttle)
        except asyncio.CancelledError:
            if handle._stop_reason:
                raise TransferStopped(handle._stop_reason) from None
            raise

    async def _transfer(self, handle: TransferHandle, throttle: ProgressThrottle) -> Path:
        part_path = handle.partial_path
        offset = 0
        if handle.resuming:
            offset = await asyncio.to_thread(_file_size, part_path)

        headers = {}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"
            if handle.validator:
                headers["If-Range"] = handle.validator

        try:
            await asyncio.to_thread(part_path.parent.mkdir, parents=True, exist_ok=True)
            session = await self._get_session()
            async with session.get(
                handle.url, headers=headers, allow_redirects=True
            ) as response:
                if response.status == 416 and offset > 0:
                    return await self._finish_satisfied_range(
                        handle, response, offset, throttle
                    )
                response.raise_for_status()

                if offset > 0 and response.status != 206:
                    log.warning(
                        f"Server ignored the range request for "
                        f"'{handle.destination.name}'; restarting from zero."
                    )
                    handle.restarted = True
                    offset = 0
                if response.status != 206:
                    handle.validator = response.headers.get(
                        "ETag"
                    ) or response.headers.get("Last-Modified")
                handle.supports_ranges = (
                    response.status == 206
                    or response.headers.get("Accept-Ranges", "").lower() == "bytes"
                )
                handle.bytes_expected = _reported_total(response, offset)

                handle.bytes_written = offset
                throttle(handle.bytes_written, handle.bytes_expected, force=True)
                await self._stream_to_disk(
                    response, part_path, "ab" if offset > 0 else "wb", handle, throttle
                )

            if handle.bytes_expected and handle.bytes_written < handle.bytes_expected:
                raise TransferFailedError(
                    f"Connection closed after {handle.bytes_written} of "
                    f"{handle.bytes_expected} bytes.",
                    resumable=True,
                )
            # Without a reported size, a clean end of stream is the only signal.
            handle.bytes_expected = handle.bytes_expected or handle.bytes_written
            await asyncio.to_thread(os.replace, part_path, handle.destination)
        except aiohttp.ClientResponseError as e:
            raise TransferFailedError(
                f"Server responded with HTTP {e.status} for {handle.url}",
                resumable=handle.bytes_written > 0,
            ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransferFailedError(
                f"Network error while downloading '{handle.destination.name}': "
                f"{e or type(e).__name__}",
                resumable=handle.bytes_written > 0,
            ) from e
        except OSError as e:
            raise _classify_os_error(e, handle) from e

        throttle(handle.bytes_written, handle.bytes_expected, force=True)
        return handle.destination

    async def _stream_to_disk(
        self,
        response: aiohttp.ClientResponse,
        part_path: Path,
        mode: str,
        handle: TransferHandle,
        throttle: ProgressThrottle,
    ) -> None:
        loop = asyncio.get_running_loop()
        last_speed_check = loop.time()
        bytes_at_check = handle.bytes_written
        chunk_size = self._shared_chunk_size

        async with aiofiles.open(part_path, mode) as f:
            while chunk := await response.content.read(chunk_size):
                await f.write(chunk)
                handle.bytes_written += len(chunk)
                throttle(handle.bytes_written, handle.bytes_expected)

                now = loop.time()
                if now - last_speed_check > 2.0:
                    speed = (handle.bytes_written - bytes_at_check) / (
                        now - last_speed_check
                    )
                    chunk_size = await self._adapt_chunk_size_shared(speed)
                    last_speed_check = now
                    bytes_at_check = handle.bytes_written

    async def _finish_satisfied_range(
        self,
        handle: TransferHandle,
        response: aiohttp.ClientResponse,
        offset: int,
        throttle: ProgressThrottle,
    ) -> Path:
        """Handles `416`: the partial file may already hold every byte."""
        total = _content_range_total(response.headers.get("Content-Range", ""))
        if total is not None and total == offset:
            handle.bytes_written = handle.bytes_expected = offset
            await asyncio.to_thread(os.replace, handle.partial_path, handle.destination)
            throttle(offset, offset, force=True)
            return handle.destination
        await asyncio.to_thread(handle.partial_path.unlink, missing_ok=True)
        raise TransferFailedError(
            f"Partial file for '{handle.destination.name}' no longer matches the "
            "remote file; the transfer must restart from zero.",
            resumable=False,
        )


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


def _content_range_total(header_value: str) -> int | None:
    """Parses the total out of `bytes */1234` or `bytes 0-9/1234`."""
    _, _, total = header_value.rpartition("/")
    return int(total) if total.strip().isdigit() else None


def _reported_total(response: aiohttp.ClientResponse, offset: int) -> int:
    """
    Returns the full size of the remote file as the server reported it, or 0
    when it did not (e.g. a chunked response). Catalog size estimates never
    feed this value.
    """
    if response.status == 206:
        total = _content_range_total(response.headers.get("Content-Range", ""))
        if total is not None:
            return total
        if response.content_length is not None:
            return offset + response.content_length
        return 0
    return response.content_length or 0


def _classify_os_error(error: OSError, handle: TransferHandle) -> TransferError:
    resumable = handle.bytes_written > 0
    if error.errno in _DISK_FULL_ERRNOS:
        return StorageFullError(
            f"No space left on device while writing '{handle.destination.name}'.",
            resumable=resumable,
        )
    return WriteFailedError(
        f"Could not write '{handle.destination.name}': {error}", resumable=resumable
    )


async def _settle(task: asyncio.Task) -> BaseException | None:
    """Waits for `task` without raising and returns how it ended."""
    await asyncio.wait({task})
    if task.cancelled():
        return TransferStopped("cancelled")
    return task.exception()
