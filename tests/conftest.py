"""Shared fixtures: an in-memory index server behind httpx.MockTransport."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
import pytest

from gsync import IndexClient

AUTH_KEY = "secret-key"
BASE_URL = "http://127.0.0.1:6776"


class FakeIndexServer:
    """Serves /time, /dirs, /files, /file_parts and /download from dicts."""

    def __init__(self) -> None:
        self.time = 100
        self.dirs: list[dict[str, Any]] = []
        self.files: dict[str, list[dict[str, Any]]] = {}
        self.parts: dict[str, list[dict[str, Any]]] = {}
        self.contents: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.fail: set[str] = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("AUTH_KEY") != AUTH_KEY:
            return httpx.Response(403, text="bad key")

        path = request.url.path
        if path in self.fail:
            return httpx.Response(500, text="boom")

        params = request.url.params
        if path == "/time":
            return httpx.Response(200, text=json.dumps({"current_time": self.time}))
        if path == "/dirs":
            return httpx.Response(200, text=json.dumps(self.dirs))
        if path == "/files":
            return httpx.Response(200, text=json.dumps(self.files.get(params["file_path"], [])))
        if path == "/file_parts":
            return httpx.Response(200, text=json.dumps(self.parts.get(params["file_path"], [])))
        if path == "/download":
            data = self.contents.get(params["file_path"], b"")
            start = int(params["start"])
            length = int(params["length"])
            return httpx.Response(200, content=data[start : start + length])
        return httpx.Response(404)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @property
    def downloads(self) -> list[tuple[str, int, int]]:
        return [
            (r.url.params["file_path"], int(r.url.params["start"]), int(r.url.params["length"]))
            for r in self.calls("/download")
        ]


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("gsync.tests")


@pytest.fixture
def server() -> FakeIndexServer:
    return FakeIndexServer()


@pytest.fixture
def index(server: FakeIndexServer, logger: logging.Logger):
    client = IndexClient(BASE_URL, AUTH_KEY, logger, transport=httpx.MockTransport(server.handler))
    yield client
    client.close()


@pytest.fixture
def make_client(server: FakeIndexServer, logger: logging.Logger):
    """Build an IndexClient with a custom key or transport handler."""
    clients: list[IndexClient] = []

    def _make(key: str = AUTH_KEY, handler=None) -> IndexClient:
        transport = httpx.MockTransport(handler or server.handler)
        client = IndexClient(BASE_URL, key, logger, transport=transport)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()
