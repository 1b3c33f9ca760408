import os
from collections import defaultdict
from typing import Dict, List, Optional, Union

os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402


class FakeResponse:
    """Just enough of aiohttp.ClientResponse for the fetcher, extractor and classifier."""

    def __init__(self, status: int = 200, body: Union[str, bytes] = "", url: Optional[str] = None,
                 content_type: str = "text/html"):
        self.status = status
        self._body = body.encode("utf-8") if isinstance(body, str) else body
        self.url = url
        self.headers = {"Content-Type": content_type}

    async def read(self) -> bytes:
        return self._body

    async def text(self) -> str:
        return self._body.decode("utf-8")


class _RequestContext:
    def __init__(self, outcome):
        self._outcome = outcome

    async def __aenter__(self):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Serves canned responses per URL and counts every request.

    A route may be a single response (served forever) or a list consumed in
    order, with the last item repeated. Exceptions in a route are raised when
    the request is entered. Unknown URLs get a 404.
    """

    def __init__(self, routes: Optional[Dict[str, object]] = None,
                 head_routes: Optional[Dict[str, object]] = None):
        self.routes = dict(routes or {})
        self.head_routes = dict(head_routes or {})
        self.calls: Dict[str, int] = defaultdict(int)
        self.head_calls: Dict[str, int] = defaultdict(int)
        self.requests: List[dict] = []

    def _next(self, routes, url):
        route = routes.get(url)
        if route is None:
            return FakeResponse(status=404, url=url)
        if isinstance(route, list):
            outcome = route.pop(0) if len(route) > 1 else route[0]
        else:
            outcome = route
        if isinstance(outcome, FakeResponse) and outcome.url is None:
            outcome.url = url
        return outcome

    def get(self, url, **kwargs):
        self.calls[url] += 1
        self.requests.append({"method": "GET", "url": url, **kwargs})
        return _RequestContext(self._next(self.routes, url))

    def head(self, url, **kwargs):
        self.head_calls[url] += 1
        self.requests.append({"method": "HEAD", "url": url, **kwargs})
        return _RequestContext(self._next(self.head_routes, url))

    async def close(self):
        pass


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest_asyncio.fixture
async def db(tmp_path):
    from models import DatabaseQueue

    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    yield queue
    await queue.stop()
