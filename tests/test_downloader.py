import errno

import pytest

from conftest import PAYLOAD, wait_until
from model_depot.exceptions import (
    StorageFullError,
    TransferFailedError,
    TransferStopped,
    WriteFailedError,
)
from model_depot.transfer.downloader import (
    Downloader,
    ProgressThrottle,
    ResumeToken,
    TransferHandle,
    _classify_os_error,
    _content_range_total,
    partial_path_for,
)

pytestmark = pytest.mark.usefixtures("shared_pool")


@pytest.fixture
def downloader():
    return Downloader(max_concurrent=2, progress_interval=0.01)


@pytest.mark.asyncio
async def test_start_writes_complete_file(downloader, file_server, tmp_path):
    destination = tmp_path / "tiny.bin"
    calls = []

    handle = downloader.start(
        file_server.url("/files/tiny.bin"), destination, lambda w, e: calls.append((w, e))
    )
    path = await handle.wait()

    assert path == destination
    assert destination.read_bytes() == PAYLOAD
    assert not partial_path_for(destination).exists()
    assert calls[-1] == (len(PAYLOAD), len(PAYLOAD))
    assert handle.supports_ranges is True
    assert handle.restarted is False


@pytest.mark.asyncio
async def test_progress_is_rate_limited(file_server, tmp_path):
    downloader = Downloader(progress_interval=5)
    calls = []

    handle = downloader.start(
        file_server.url("/files/tiny.bin"),
        tmp_path / "tiny.bin",
        lambda w, e: calls.append((w, e)),
    )
    await handle.wait()

    # Only the forced first and last reports get through a long interval.
    assert calls == [(0, len(PAYLOAD)), (len(PAYLOAD), len(PAYLOAD))]


@pytest.mark.asyncio
async def test_pause_and_resume_continues_from_partial(downloader, file_server, tmp_path):
    file_server.delay = 0.02
    destination = tmp_path / "base.bin"

    handle = downloader.start(file_server.url("/files/base.bin"), destination)
    await wait_until(lambda: handle.bytes_written > 0)
    token = await downloader.pause(handle)

    assert isinstance(token, ResumeToken)
    assert 0 < token.bytes_written < len(PAYLOAD)
    assert token.supports_ranges is True
    assert token.partial_path.exists()
    with pytest.raises(TransferStopped):
        await handle.wait()

    offset = token.partial_path.stat().st_size
    file_server.delay = 0
    resumed = downloader.resume(token)
    await resumed.wait()

    assert destination.read_bytes() == PAYLOAD
    assert resumed.restarted is False
    assert file_server.requests_for("base.bin") == [None, f"bytes={offset}-"]


@pytest.mark.asyncio
async def test_resume_restarts_when_server_ignores_ranges(downloader, file_server, tmp_path):
    file_server.delay = 0.02
    destination = tmp_path / "plain.bin"

    handle = downloader.start(file_server.url("/plain/plain.bin"), destination)
    await wait_until(lambda: handle.bytes_written > 0)
    token = await downloader.pause(handle)
    assert token.supports_ranges is False

    file_server.delay = 0
    resumed = downloader.resume(token)
    await resumed.wait()

    assert resumed.restarted is True
    assert destination.read_bytes() == PAYLOAD


@pytest.mark.asyncio
async def test_cancel_removes_partial_and_is_idempotent(downloader, file_server, tmp_path):
    file_server.delay = 0.02
    destination = tmp_path / "base.bin"

    handle = downloader.start(file_server.url("/files/base.bin"), destination)
    await wait_until(lambda: handle.bytes_written > 0)
    await downloader.cancel(handle)
    await downloader.cancel(handle)

    assert not partial_path_for(destination).exists()
    assert not destination.exists()
    with pytest.raises(TransferStopped) as exc_info:
        await handle.wait()
    assert exc_info.value.reason == "cancelled"


@pytest.mark.asyncio
async def test_cancel_with_token_deletes_partial(downloader, tmp_path):
    destination = tmp_path / "base.bin"
    partial_path_for(destination).write_bytes(b"x" * 10)
    token = ResumeToken(url="http://unused", destination=destination, bytes_written=10, bytes_expected=20)

    await downloader.cancel(token)

    assert not token.partial_path.exists()


@pytest.mark.asyncio
async def test_pause_after_completion_returns_none(downloader, file_server, tmp_path):
    handle = downloader.start(file_server.url("/files/tiny.bin"), tmp_path / "tiny.bin")
    await handle.wait()

    assert await downloader.pause(handle) is None


@pytest.mark.asyncio
async def test_http_error_is_not_resumable(downloader, file_server, tmp_path):
    handle = downloader.start(file_server.url("/missing/broken.bin"), tmp_path / "broken.bin")

    with pytest.raises(TransferFailedError) as exc_info:
        await handle.wait()

    assert exc_info.value.resumable is False
    assert "404" in str(exc_info.value)
    assert len(file_server.requests_for("broken.bin")) == 1


@pytest.mark.asyncio
async def test_complete_partial_finishes_on_416(downloader, file_server, tmp_path):
    destination = tmp_path / "tiny.bin"
    partial_path_for(destination).write_bytes(PAYLOAD)
    token = ResumeToken(
        url=file_server.url("/files/tiny.bin"),
        destination=destination,
        bytes_written=len(PAYLOAD),
        bytes_expected=len(PAYLOAD),
        supports_ranges=True,
    )

    await downloader.resume(token).wait()

    assert destination.read_bytes() == PAYLOAD
    assert not token.partial_path.exists()


@pytest.mark.asyncio
async def test_resume_without_partial_starts_from_zero(downloader, file_server, tmp_path):
    destination = tmp_path / "tiny.bin"
    token = ResumeToken(
        url=file_server.url("/files/tiny.bin"),
        destination=destination,
        bytes_written=1000,
        bytes_expected=len(PAYLOAD),
    )

    await downloader.resume(token).wait()

    assert destination.read_bytes() == PAYLOAD
    assert file_server.requests_for("tiny.bin") == [None]


@pytest.mark.asyncio
async def test_unknown_length_completes_on_clean_end_of_stream(downloader, file_server, tmp_path):
    destination = tmp_path / "chunked.bin"
    calls = []

    handle = downloader.start(
        file_server.url("/chunked/chunked.bin"), destination, lambda w, e: calls.append((w, e))
    )
    await handle.wait()

    assert destination.read_bytes() == PAYLOAD
    assert calls[0] == (0, 0)
    assert calls[-1] == (len(PAYLOAD), len(PAYLOAD))


@pytest.mark.asyncio
async def test_dropped_connection_is_resumable(downloader, file_server, tmp_path):
    destination = tmp_path / "dropping.bin"

    handle = downloader.start(file_server.url("/dropping/dropping.bin"), destination)
    with pytest.raises(TransferFailedError) as exc_info:
        await handle.wait()

    assert exc_info.value.resumable is True
    token = handle.to_token()
    assert token.bytes_expected == len(PAYLOAD)
    assert 0 < token.bytes_written < len(PAYLOAD)

    await downloader.resume(token).wait()

    assert destination.read_bytes() == PAYLOAD
    assert file_server.requests_for("dropping.bin") == [None, f"bytes={token.bytes_written}-"]


def test_progress_throttle_forces_and_limits():
    calls = []
    throttle = ProgressThrottle(lambda w, e: calls.append(w), interval=60)

    throttle(0, 10, force=True)
    throttle(5, 10)
    throttle(10, 10, force=True)

    assert calls == [0, 10]


def test_content_range_total_parsing():
    assert _content_range_total("bytes */1234") == 1234
    assert _content_range_total("bytes 0-9/1234") == 1234
    assert _content_range_total("bytes 0-9/*") is None
    assert _content_range_total("") is None


def test_disk_full_is_classified_separately(tmp_path):
    handle = TransferHandle("http://unused", tmp_path / "x.bin")
    handle.bytes_written = 10

    full = _classify_os_error(OSError(errno.ENOSPC, "No space left on device"), handle)
    denied = _classify_os_error(OSError(errno.EACCES, "Permission denied"), handle)

    assert isinstance(full, StorageFullError)
    assert full.resumable is True
    assert isinstance(denied, WriteFailedError)
