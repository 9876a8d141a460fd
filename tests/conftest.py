# ---------------------------------------------------------------------
# tests/conftest.py - Shared fixtures: mock library service, executor
# ---------------------------------------------------------------------
"""
Fixtures available to all tests.

`library_server` runs an in-process aiohttp app that speaks the library
service's JSON API, so scenarios can be run end to end without a real
backend.
"""
import asyncio
import logging
import socket
import uuid
from collections import Counter
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from http_executor import HttpExecutor
from load_metrics import MetricsCollector

logging.getLogger("aiohttp").setLevel(logging.WARNING)


class MockLibrary:
    """In-memory library service with knobs for latency and forced errors."""

    def __init__(self):
        self.authors: Dict[str, str] = {}
        self.books: Dict[str, Dict] = {}
        self.hits: Counter = Counter()
        self.delay = 0.0
        self.force_status: Optional[int] = None
        self.base_url = ""

    @web.middleware
    async def _middleware(self, request: web.Request, handler):
        resource = request.match_info.route.resource
        self.hits[(request.method, resource.canonical if resource else request.path)] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.force_status is not None:
            return web.json_response({"error": "forced"}, status=self.force_status)
        return await handler(request)

    async def register_author(self, request: web.Request):
        body = await request.json()
        if not body.get("name"):
            return web.json_response({"error": "name required"}, status=400)
        author_id = str(uuid.uuid4())
        self.authors[author_id] = body["name"]
        return web.json_response({"id": author_id})

    async def add_book(self, request: web.Request):
        body = await request.json()
        author_ids: List[str] = body.get("author_ids") or []
        if not body.get("name") or any(a not in self.authors for a in author_ids):
            return web.json_response({"error": "invalid book"}, status=400)
        book = {"id": str(uuid.uuid4()), "name": body["name"], "author_ids": author_ids}
        self.books[book["id"]] = book
        return web.json_response({"book": book})

    async def update_book(self, request: web.Request):
        body = await request.json()
        book = self.books.get(body.get("id"))
        if book is None:
            return web.json_response({"error": "not found"}, status=404)
        book.update(name=body.get("name", book["name"]), author_ids=body.get("author_ids", book["author_ids"]))
        return web.json_response({})

    async def get_book(self, request: web.Request):
        book = self.books.get(request.match_info["id"])
        if book is None:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response({"book": book})

    async def get_author(self, request: web.Request):
        author_id = request.match_info["id"]
        if author_id not in self.authors:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response({"id": author_id, "name": self.authors[author_id]})

    async def get_author_books(self, request: web.Request):
        author_id = request.match_info["id"]
        books = [b for b in self.books.values() if author_id in b["author_ids"]]
        return web.json_response({"books": books})

    async def slow(self, request: web.Request):
        await asyncio.sleep(2)
        return web.json_response({})

    def make_app(self) -> web.Application:
        app = web.Application(middlewares=[self._middleware])
        app.router.add_post("/v1/library/author", self.register_author)
        app.router.add_post("/v1/library/book", self.add_book)
        app.router.add_put("/v1/library/book", self.update_book)
        app.router.add_get("/v1/library/book/{id}", self.get_book)
        app.router.add_get("/v1/library/author/{id}", self.get_author)
        app.router.add_get("/v1/library/author_books/{id}", self.get_author_books)
        app.router.add_get("/slow", self.slow)
        return app


@pytest_asyncio.fixture
async def library_server():
    library = MockLibrary()
    server = TestServer(library.make_app(), host="127.0.0.1")
    await server.start_server()
    library.base_url = f"http://127.0.0.1:{server.port}"
    yield library
    await server.close()


@pytest_asyncio.fixture
async def executor():
    async with HttpExecutor(timeout=5.0, connect_timeout=2.0) as ex:
        yield ex


@pytest.fixture
def collector():
    return MetricsCollector(seed=42)


@pytest.fixture
def closed_port() -> int:
    """A localhost port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
