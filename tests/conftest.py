"""
Shared fixtures: an in-memory HTTP client for executor tests and an aiohttp
application imitating the Pickup Service API for end-to-end runs.
"""

import asyncio
import itertools
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from aiohttp import web

from pickup_workflow import HttpResponse

BASE_URL = "http://pickup.test/api/v1"


def json_response(status: int, body: Any, duration_ms: float = 10.0) -> HttpResponse:
    return HttpResponse(status=status, duration_ms=duration_ms, body=json.dumps(body).encode())


def happy_route(method: str, path: str, payload: Optional[Dict[str, Any]]) -> HttpResponse:
    """Responses of a healthy Pickup Service."""
    if path == "/health":
        return json_response(200, {"status": "ok"})
    if method == "POST" and path == "/registrations":
        return json_response(201, {"code": 0, "data": {"id": 42}})
    if method == "GET" and path == "/registrations":
        return json_response(200, {"code": 0, "data": {"items": [], "total": 0}})
    if path.startswith("/registrations/"):
        return json_response(200, {"code": 0, "data": {"id": int(path.rsplit("/", 1)[1])}})
    if method == "POST" and path == "/orders":
        return json_response(201, {"code": 0, "data": {"id": 7}})
    if method == "GET" and path == "/orders":
        return json_response(200, {"code": 0, "data": {"items": []}})
    if method == "GET" and path == "/notices":
        return json_response(200, {"code": 0, "data": {"items": []}})
    if method == "POST" and path == "/admin/notices":
        return json_response(201, {"code": 0, "data": {"id": 1}})
    return json_response(404, {"code": 404})


def failing_registration_route(method: str, path: str, payload: Optional[Dict[str, Any]]) -> HttpResponse:
    """Healthy service whose registration endpoint returns 500."""
    if method == "POST" and path == "/registrations":
        return json_response(500, {"code": 500, "message": "db down"})
    return happy_route(method, path, payload)


Route = Callable[[str, str, Optional[Dict[str, Any]]], HttpResponse]


class FakeClient:
    """Records every request and answers through ``route``."""

    def __init__(self, route: Route = happy_route):
        self.route = route
        self.calls: List[Dict[str, Any]] = []

    async def request(self, method, url, headers=None, json=None, params=None) -> HttpResponse:
        path = url[len(BASE_URL):] if url.startswith(BASE_URL) else url
        self.calls.append({"method": method, "path": path, "headers": headers or {}, "json": json, "params": params})
        await asyncio.sleep(0)
        return self.route(method, path, json)

    @property
    def paths(self) -> List[Tuple[str, str]]:
        return [(c["method"], c["path"]) for c in self.calls]


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def make_client():
    return FakeClient


# =============================================================================
# In-process Pickup API
# =============================================================================

def build_pickup_app(fail_registrations: bool = False) -> web.Application:
    ids = itertools.count(1)

    async def health(request):
        return web.json_response({"status": "ok"})

    async def create_registration(request):
        await request.json()
        if fail_registrations:
            return web.json_response({"code": 500, "message": "db down"}, status=500)
        return web.json_response({"code": 0, "data": {"id": next(ids)}}, status=201)

    async def list_registrations(request):
        return web.json_response({"code": 0, "data": {"items": [], "page": int(request.query["page"])}})

    async def registration_detail(request):
        return web.json_response({"code": 0, "data": {"id": int(request.match_info["id"])}})

    async def create_order(request):
        body = await request.json()
        return web.json_response({"code": 0, "data": {"registration_id": body["registration_id"]}}, status=201)

    async def list_orders(request):
        return web.json_response({"code": 0, "data": {"items": []}})

    async def list_notices(request):
        return web.json_response({"code": 0, "data": {"items": []}})

    async def create_notice(request):
        await request.json()
        return web.json_response({"code": 0, "data": {"id": next(ids)}}, status=201)

    app = web.Application()
    app.router.add_get("/api/v1/health", health)
    app.router.add_post("/api/v1/registrations", create_registration)
    app.router.add_get("/api/v1/registrations", list_registrations)
    app.router.add_get("/api/v1/registrations/{id}", registration_detail)
    app.router.add_put("/api/v1/registrations/{id}", registration_detail)
    app.router.add_post("/api/v1/orders", create_order)
    app.router.add_get("/api/v1/orders", list_orders)
    app.router.add_get("/api/v1/notices", list_notices)
    app.router.add_post("/api/v1/admin/notices", create_notice)
    return app


@pytest.fixture
def pickup_app():
    return build_pickup_app


@pytest.fixture
def tokens_file(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text(json.dumps(["token-a", "token-b", "token-c"]), encoding="utf-8")
    return path
