import json
from collections.abc import Callable

import httpx
import pytest

from tradebook.config import Settings


def json_response(payload, status_code: int = 200, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(status_code, json=payload, headers=headers)


class FakeExchange:
    """httpx transport that answers from a (method, path) route table.

    Route values are either a payload (served as JSON with status 200) or a
    callable taking the request and returning an httpx.Response. Every
    request is recorded for assertions.
    """

    def __init__(self, routes: dict | None = None):
        self.routes = dict(routes or {})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": f"no route for {request.url.path}"})
        if callable(route):
            return route(request)
        return json_response(route)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    respond = staticmethod(json_response)

    @staticmethod
    def body(request: httpx.Request) -> dict:
        return json.loads(request.content)


@pytest.fixture
def broker_settings() -> Settings:
    return Settings(
        http_timeout_seconds=2.0,
        recv_window_ms=5000,
        ibkr_client_id="ibkr-client",
        tda_client_id="tda-client",
        health_check_timeout_seconds=0.2,
    )


@pytest.fixture
def exchange() -> Callable[..., FakeExchange]:
    return FakeExchange
