"""Pytest configuration and shared fixtures.

Every test gets its own in-memory SQLite database and talks to a stubbed
Graph API through httpx.MockTransport, so nothing leaves the process.
"""

import os

# Settings are read at import time; pin them before metasync is imported
os.environ["META_ACCESS_TOKEN"] = "test-token"
os.environ["META_AD_ACCOUNT_ID"] = ""
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import Any, Dict, List, Union

import httpx
import pytest
from sqlmodel import Session

from metasync.connectors.meta.client import MetaClient
from metasync.database import build_engine, init_db

GRAPH = "https://graph.facebook.com/v21.0"

Reply = Union[Dict[str, Any], httpx.Response, Exception]


class GraphStub:
    """Callable MockTransport handler keyed on the Graph object path.

    Each route holds a queue of replies; the last reply repeats once the
    queue is drained. A reply may be a JSON dict, a prepared
    httpx.Response, or an exception to raise.
    """

    def __init__(self):
        self.routes: Dict[str, List[Reply]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, path: str, *replies: Reply) -> "GraphStub":
        self.routes.setdefault(path, []).extend(replies)
        return self

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if self._key(r) == path]

    @staticmethod
    def _key(request: httpx.Request) -> str:
        # /v21.0/act_1/campaigns -> /act_1/campaigns
        return "/" + request.url.path.split("/", 2)[2]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(self._key(request))
        if not queue:
            return httpx.Response(404, json={"error": {"message": "Unknown path", "code": 803}})
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)


def make_client(handler, **kwargs) -> MetaClient:
    kwargs.setdefault("retry_base_delay", 0)
    return MetaClient(
        access_token="test-token",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


@pytest.fixture
def graph() -> GraphStub:
    return GraphStub()


@pytest.fixture
def client_for():
    """Factory: MetaClient wired to an arbitrary MockTransport handler."""
    return make_client


@pytest.fixture
def meta_client(graph) -> MetaClient:
    return make_client(graph)


@pytest.fixture
def db_engine():
    """Fresh in-memory database with all tables."""
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as session:
        yield session
