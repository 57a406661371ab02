import asyncio
from dataclasses import dataclass, field

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from model_depot.catalog.registry import ArtifactCatalog, FamilySpec
from model_depot.models.artifact import ArtifactDescriptor
from model_depot.network.policy import NetworkClass
from model_depot.transfer.downloader import close_connection_pool

PAYLOAD = bytes(range(256)) * 1024  # 256 KB
ETAG = '"payload-v1"'
SERVE_CHUNK = 16 * 1024

TEST_FAMILY = FamilySpec(
    name="speech", directory="models", record_filename="models_metadata.json"
)


@dataclass
class FileServer:
    """State shared between the test server's handlers and the tests."""

    payload: bytes = PAYLOAD
    delay: float = 0.0
    base_url: str = ""
    requests: list[tuple[str, str | None]] = field(default_factory=list)

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def requests_for(self, name: str) -> list[str | None]:
        return [range_header for n, range_header in self.requests if n == name]


async def _stream(
    request: web.Request, body: bytes, status: int, headers: dict, chunked: bool = False
) -> web.StreamResponse:
    state: FileServer = request.app["state"]
    response = web.StreamResponse(status=status, headers=headers)
    if chunked:
        response.enable_chunked_encoding()
    else:
        response.content_length = len(body)
    await response.prepare(request)
    for start in range(0, len(body), SERVE_CHUNK):
        await response.write(body[start : start + SERVE_CHUNK])
        if state.delay:
            await asyncio.sleep(state.delay)
    await response.write_eof()
    return response


async def ranged_file(request: web.Request) -> web.StreamResponse:
    state: FileServer = request.app["state"]
    name = request.match_info["name"]
    range_header = request.headers.get("Range")
    state.requests.append((name, range_header))
    payload = state.payload
    headers = {"Accept-Ranges": "bytes", "ETag": ETAG}

    if_range = request.headers.get("If-Range")
    if range_header and (if_range is None or if_range == ETAG):
        offset = int(range_header.removeprefix("bytes=").split("-")[0])
        if offset >= len(payload):
            return web.Response(
                status=416, headers={"Content-Range": f"bytes */{len(payload)}"}
            )
        headers["Content-Range"] = f"bytes {offset}-{len(payload) - 1}/{len(payload)}"
        return await _stream(request, payload[offset:], 206, headers)

    return await _stream(request, payload, 200, headers)


async def plain_file(request: web.Request) -> web.StreamResponse:
    state: FileServer = request.app["state"]
    state.requests.append((request.match_info["name"], request.headers.get("Range")))
    return await _stream(request, state.payload, 200, {})


async def chunked_file(request: web.Request) -> web.StreamResponse:
    """Full payload with chunked encoding, so no Content-Length."""
    state: FileServer = request.app["state"]
    state.requests.append((request.match_info["name"], request.headers.get("Range")))
    return await _stream(request, state.payload, 200, {}, chunked=True)


async def dropping_file(request: web.Request) -> web.StreamResponse:
    """Closes the connection halfway through unranged requests; ranged ones succeed."""
    if request.headers.get("Range"):
        return await ranged_file(request)
    state: FileServer = request.app["state"]
    state.requests.append((request.match_info["name"], None))
    response = web.StreamResponse(
        status=200, headers={"Accept-Ranges": "bytes", "ETag": ETAG}
    )
    response.content_length = len(state.payload)
    await response.prepare(request)
    half = len(state.payload) // 2
    for start in range(0, half, SERVE_CHUNK):
        await response.write(state.payload[start : min(start + SERVE_CHUNK, half)])
    # Let the client drain what was sent before the connection goes away.
    await asyncio.sleep(0.2)
    request.transport.close()
    return response


async def missing_file(request: web.Request) -> web.Response:
    state: FileServer = request.app["state"]
    state.requests.append((request.match_info["name"], request.headers.get("Range")))
    return web.Response(status=404, text="not found")


async def probe(request: web.Request) -> web.Response:
    return web.Response(text="ok")


@pytest.fixture
async def file_server():
    state = FileServer()
    app = web.Application()
    app["state"] = state
    app.router.add_get("/files/{name}", ranged_file)
    app.router.add_get("/plain/{name}", plain_file)
    app.router.add_get("/chunked/{name}", chunked_file)
    app.router.add_get("/dropping/{name}", dropping_file)
    app.router.add_get("/missing/{name}", missing_file)
    app.router.add_route("HEAD", "/probe", probe)

    server = TestServer(app)
    await server.start_server()
    state.base_url = str(server.make_url("")).rstrip("/")
    yield state
    await server.close()


@pytest.fixture
async def shared_pool():
    """Closes the process-wide transfer pool after the test."""
    yield
    await close_connection_pool()


class FakeClassifier:
    """A network classifier the tests can switch between network classes."""

    def __init__(self, network_class: NetworkClass = NetworkClass.UNMETERED):
        self.network_class = network_class
        self.calls = 0

    async def classify(self) -> NetworkClass:
        self.calls += 1
        return self.network_class


@pytest.fixture
def classifier():
    return FakeClassifier()


def make_descriptor(key: str, url: str, size_mb: int = 1, family: str = "speech") -> ArtifactDescriptor:
    return ArtifactDescriptor(
        key=key,
        display_name=key.title(),
        remote_url=url,
        destination_filename=f"{key}.bin",
        expected_size_mb=size_mb,
        family=family,
    )


@pytest.fixture
def catalog(file_server):
    return ArtifactCatalog(
        TEST_FAMILY,
        [
            make_descriptor("tiny", file_server.url("/files/tiny.bin")),
            make_descriptor("base", file_server.url("/files/base.bin")),
            make_descriptor("medium", file_server.url("/files/medium.bin"), size_mb=1500),
            make_descriptor("plain", file_server.url("/plain/plain.bin")),
            make_descriptor("chunked", file_server.url("/chunked/chunked.bin")),
            make_descriptor("dropping", file_server.url("/dropping/dropping.bin")),
            make_descriptor("broken", file_server.url("/missing/broken.bin")),
        ],
    )


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Polls `predicate` until it is true or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
