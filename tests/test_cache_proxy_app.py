from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest
import uvicorn
from fastapi.testclient import TestClient

from nixlru.cache_proxy.app import CacheService, create_app
from nixlru.cache_proxy.store import Category

from tests.utils.upstream import NAR_KEY, NARINFO_HASH, ORIGIN_A, ORIGIN_B, FakeUpstream


DIVERSION = '\n<script>window.location.href = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"</script>\n'


@pytest.fixture
def client_for(make_settings, upstream: FakeUpstream):
    clients: list[TestClient] = []

    def _build(**overrides) -> TestClient:
        app = create_app(make_settings(**overrides), upstream_transport=upstream.transport())
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _build
    for client in clients:
        client.__exit__(None, None, None)


def _assert_diversion(response: httpx.Response) -> None:
    assert response.status_code == 404
    assert response.text == DIVERSION


def test_cache_info_is_byte_exact(client_for) -> None:
    client = client_for()

    response = client.get("/nix-cache-info")

    assert response.status_code == 200
    assert response.content == b"StoreDir: /nix/store\nWantMassQuery: 1\nPriority: 1\n"
    assert response.headers["content-type"].startswith("text/x-nix-cache-info")


@pytest.mark.parametrize(
    "method, path",
    [
        ("GET", "/"),
        ("GET", "/some/unknown/path"),
        ("POST", "/nix-cache-info"),
        ("DELETE", f"/{NARINFO_HASH}.narinfo"),
        ("GET", "/tooshort.narinfo"),
        ("GET", f"/{NARINFO_HASH.upper()}.narinfo"),
        ("GET", "/nar/not-a-nar-key"),
        ("GET", f"/nar/{NAR_KEY}/extra"),
    ],
)
def test_unroutable_requests_get_the_diversion(client_for, upstream: FakeUpstream, method: str, path: str) -> None:
    client = client_for()

    _assert_diversion(client.request(method, path))
    assert upstream.calls == []


def test_narinfo_missing_everywhere_is_a_diversion(client_for, upstream: FakeUpstream) -> None:
    client = client_for()

    _assert_diversion(client.get(f"/{NARINFO_HASH}.narinfo"))
    assert upstream.calls == [
        f"{ORIGIN_A}/{NARINFO_HASH}.narinfo",
        f"{ORIGIN_B}/{NARINFO_HASH}.narinfo",
    ]


def test_narinfo_fetched_once_then_served_from_disk(client_for, upstream: FakeUpstream, tmp_path: Path) -> None:
    body = b"StorePath: /nix/store/example\nURL: nar/example.nar.xz\n"
    upstream.add(f"{ORIGIN_B}/{NARINFO_HASH}.narinfo", content=body)
    client = client_for()

    first = client.get(f"/{NARINFO_HASH}.narinfo")
    second = client.get(f"/{NARINFO_HASH}.narinfo")

    for response in (first, second):
        assert response.status_code == 200
        assert response.content == body
        assert response.headers["content-type"].startswith("text/x-nix-narinfo")
    assert len(upstream.calls) == 2
    assert (tmp_path / "state" / "narinfo" / f"{NARINFO_HASH}.narinfo").read_bytes() == body


def test_nar_served_with_length_and_media_type(client_for, upstream: FakeUpstream) -> None:
    body = bytes(range(256)) * 64
    upstream.add(f"{ORIGIN_A}/nar/{NAR_KEY}", content=body)
    client = client_for()

    response = client.get(f"/nar/{NAR_KEY}")

    assert response.status_code == 200
    assert response.content == body
    assert response.headers["content-type"] == "application/x-nix-nar"
    assert response.headers["content-length"] == str(len(body))


def test_head_returns_headers_without_body(client_for, upstream: FakeUpstream) -> None:
    upstream.add(f"{ORIGIN_A}/{NARINFO_HASH}.narinfo", content=b"narinfo body")
    client = client_for()

    response = client.head(f"/{NARINFO_HASH}.narinfo")

    assert response.status_code == 200
    assert response.content == b""
    assert response.headers["content-length"] == str(len(b"narinfo body"))


def test_upstream_transport_error_is_a_server_error(client_for, upstream: FakeUpstream) -> None:
    upstream.fail(f"{ORIGIN_A}/{NARINFO_HASH}.narinfo", httpx.ConnectError("connection refused"))
    upstream.add(f"{ORIGIN_B}/{NARINFO_HASH}.narinfo", content=b"unreachable")
    client = client_for()

    response = client.get(f"/{NARINFO_HASH}.narinfo")

    assert response.status_code == 500
    assert upstream.calls == [f"{ORIGIN_A}/{NARINFO_HASH}.narinfo"]


def test_local_read_failure_is_a_server_error(client_for, monkeypatch: pytest.MonkeyPatch) -> None:
    client = client_for()
    service: CacheService = client.app.state.cache_service
    service.store.locate(Category.NARINFO, NARINFO_HASH).write_bytes(b"cached")

    def broken_open(_path):
        raise PermissionError("denied")

    monkeypatch.setattr(service.store, "open", broken_open)

    response = client.get(f"/{NARINFO_HASH}.narinfo")

    assert response.status_code == 500


def test_lock_route_disabled_by_default(client_for) -> None:
    client = client_for()

    _assert_diversion(client.get("/lock"))


def test_status_reports_store_and_guard(client_for) -> None:
    client = client_for()

    payload = client.get("/status").json()

    assert payload["retention"] == "unbounded"
    assert payload["upstreams"] == [ORIGIN_A, ORIGIN_B]
    assert payload["store"]["writable"] is True
    assert payload["guard"]["active_fetches"] == 0
    assert payload["fetches_in_flight"] == 0
    assert "stats" not in payload


def test_status_includes_access_stats_when_enabled(client_for, upstream: FakeUpstream, tmp_path: Path) -> None:
    upstream.add(f"{ORIGIN_A}/{NARINFO_HASH}.narinfo", content=b"narinfo")
    client = client_for(stats_database_url=str(tmp_path / "stats.db"))

    client.get(f"/{NARINFO_HASH}.narinfo")
    client.get(f"/{NARINFO_HASH}.narinfo")
    payload = client.get("/status").json()

    assert payload["stats"]["total_entries"] == 1
    top = payload["stats"]["top_entries"][0]
    assert top["cache_key"] == NARINFO_HASH
    assert top["total_hits"] == 1
    assert top["total_misses"] == 1


def test_metrics_endpoint_exposes_counters(client_for) -> None:
    client = client_for()
    client.get("/nix-cache-info")

    body = client.get("/metrics").text

    assert "nixlru_requests_total" in body
    assert "nixlru_cache_hits_total" in body
    assert "nixlru_guard_active_fetches" in body


def test_healthz_reports_healthy(client_for) -> None:
    client = client_for()

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_state_folders_created_at_startup(make_settings, tmp_path: Path) -> None:
    create_app(make_settings())

    for name in ("narinfo", "nar", "tmp"):
        assert (tmp_path / "state" / name).is_dir()


@pytest.mark.anyio
async def test_freeze_holds_fetches_until_client_disconnects(make_settings, upstream: FakeUpstream) -> None:
    upstream.add(f"{ORIGIN_A}/{NARINFO_HASH}.narinfo", content=b"narinfo")
    service = CacheService(make_settings(enable_lock_route=True), upstream_transport=upstream.transport())
    service.prepare()
    disconnected = False

    async def is_disconnected() -> bool:
        return disconnected

    try:
        freeze = asyncio.create_task(service.hold_freeze(is_disconnected, 0.01))
        while not service.guard.frozen_now:
            await asyncio.sleep(0.01)

        fetch = asyncio.create_task(service.fetcher.ensure(Category.NARINFO, NARINFO_HASH))
        await asyncio.sleep(0.05)
        assert not fetch.done()
        assert upstream.calls == []

        disconnected = True
        held = await asyncio.wait_for(freeze, timeout=2)
        path = await asyncio.wait_for(fetch, timeout=2)
    finally:
        await service.close()

    assert held > 0
    assert path is not None and path.read_bytes() == b"narinfo"


@pytest.mark.anyio
async def test_concurrent_requests_share_one_upstream_call(make_settings, upstream: FakeUpstream) -> None:
    upstream.add(f"{ORIGIN_A}/{NARINFO_HASH}.narinfo", content=b"shared")
    app = create_app(make_settings(), upstream_transport=upstream.transport())
    service: CacheService = app.state.cache_service

    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://proxy") as client:
            responses = await asyncio.gather(*(client.get(f"/{NARINFO_HASH}.narinfo") for _ in range(8)))
        published = list(service.store.narinfo_dir.iterdir())
        leftovers = list(service.store.scratch_dir.iterdir())
    finally:
        await service.close()

    assert [response.status_code for response in responses] == [200] * 8
    assert {response.content for response in responses} == {b"shared"}
    assert upstream.calls == [f"{ORIGIN_A}/{NARINFO_HASH}.narinfo"]
    assert [path.name for path in published] == [f"{NARINFO_HASH}.narinfo"]
    assert leftovers == []


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.anyio
async def test_lock_route_releases_freeze_when_client_disconnects(make_settings, upstream: FakeUpstream) -> None:
    upstream.add(f"{ORIGIN_A}/{NARINFO_HASH}.narinfo", content=b"narinfo")
    settings = make_settings(enable_lock_route=True, lock_poll_interval_seconds=0.05)
    app = create_app(settings, upstream_transport=upstream.transport())
    service: CacheService = app.state.cache_service
    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=0, log_config=None, lifespan="on"))
    serving = asyncio.create_task(server.serve())

    try:
        await _wait_until(lambda: server.started)
        port = server.servers[0].sockets[0].getsockname()[1]
        _reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"GET /lock HTTP/1.1\r\nHost: proxy\r\n\r\n")
        await writer.drain()
        await _wait_until(lambda: service.guard.frozen_now)

        fetch = asyncio.create_task(service.fetcher.ensure(Category.NARINFO, NARINFO_HASH))
        await asyncio.sleep(0.1)
        assert not fetch.done()
        assert upstream.calls == []

        writer.close()
        await writer.wait_closed()
        await _wait_until(lambda: not service.guard.frozen_now)
        path = await asyncio.wait_for(fetch, timeout=2)
    finally:
        server.should_exit = True
        await serving

    assert path is not None and path.read_bytes() == b"narinfo"
