"""
Pytest configuration and fixtures for the mirror tests.

Provides:
- A local aiohttp artifact server with per-path bodies and hit counters
- A Config pointed at tmp_path with fast timeouts and no retries
"""

import asyncio
from collections import Counter
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from mirror_common import Config, new_session


class ArtifactServer:
    """Serve ``files`` by request path and record what was asked for."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.hits: Counter = Counter()
        self.fail_first: Counter = Counter()
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.app = web.Application()
        self.app.router.add_get("/chunked/{name}", self.handle_chunked)
        self.app.router.add_get("/truncated/{name}", self.handle_truncated)
        self.app.router.add_get("/moved/{tail:.*}", self.handle_moved)
        self.app.router.add_get("/{tail:.*}", self.handle_file)
        self.server = TestServer(self.app)

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    async def handle_file(self, request: web.Request) -> web.StreamResponse:
        path = request.path
        self.hits[path] += 1
        if self.fail_first[path] > 0:
            self.fail_first[path] -= 1
            raise web.HTTPServiceUnavailable()
        body = self.files.get(path)
        if body is None:
            raise web.HTTPNotFound()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        return web.Response(body=body)

    async def handle_chunked(self, request: web.Request) -> web.StreamResponse:
        self.hits[request.path] += 1
        resp = web.StreamResponse()
        resp.enable_chunked_encoding()
        await resp.prepare(request)
        await resp.write(b"no length here")
        await resp.write_eof()
        return resp

    async def handle_truncated(self, request: web.Request) -> web.StreamResponse:
        self.hits[request.path] += 1
        resp = web.StreamResponse()
        resp.content_length = 1000
        await resp.prepare(request)
        await resp.write(b"x" * 10)
        # hang up before the declared length is reached
        request.transport.close()
        return resp

    async def handle_moved(self, request: web.Request) -> web.StreamResponse:
        self.hits[request.path] += 1
        raise web.HTTPFound("/" + request.match_info["tail"])


@pytest.fixture
async def artifact_server():
    server = ArtifactServer()
    await server.server.start_server()
    yield server
    await server.server.close()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        update_center_url="http://127.0.0.1:1/update-center.json",
        modified_json_path=str(tmp_path / "out" / "update-center.json"),
        url_list_path=str(tmp_path / "out" / "urls.json"),
        sync_root_dir=str(tmp_path / "mirror"),
        concurrency=4,
        timeout_sec=2.0,
        max_retries=0,
        retry_backoff_sec=0.0,
    )


@pytest.fixture
async def session(config):
    async with new_session(config) as session:
        yield session
