"""Tests for the proxy pool: selection, health transitions, revalidation."""

from __future__ import annotations

import httpx
import pytest

from flexscrape.exceptions import ProxyError
from flexscrape.proxies.pool import ProxyHealth, ProxyPool, is_proxy_error


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _client_factory(healthy: set[str], probed: list[str]):
    """Build probe clients whose transport answers 200 only for *healthy* proxies."""

    def factory(address: str) -> httpx.AsyncClient:
        def handler(request: httpx.Request) -> httpx.Response:
            probed.append(address)
            if address in healthy:
                return httpx.Response(200, json={"ip": "203.0.113.7"})
            return httpx.Response(502)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


class TestSelection:
    """Round-robin over healthy endpoints."""

    def test_round_robin(self) -> None:
        pool = ProxyPool(["http://a:1", "http://b:1", "http://c:1"])
        assert [pool.next() for _ in range(4)] == ["http://a:1", "http://b:1", "http://c:1", "http://a:1"]

    def test_duplicates_and_blanks_dropped(self) -> None:
        pool = ProxyPool(["http://a:1", " http://a:1 ", "", "http://b:1"])
        assert len(pool) == 2

    def test_skips_unhealthy(self) -> None:
        pool = ProxyPool(["http://a:1", "http://b:1", "http://c:1"])
        pool.mark_unhealthy("http://b:1")
        assert [pool.next() for _ in range(3)] == ["http://a:1", "http://c:1", "http://a:1"]

    def test_none_when_all_unhealthy(self) -> None:
        pool = ProxyPool(["http://a:1"])
        pool.mark_unhealthy("http://a:1")
        assert pool.next() is None
        assert not pool.available

    def test_empty_pool(self) -> None:
        assert ProxyPool([]).next() is None

    def test_unknown_address_ignored(self) -> None:
        pool = ProxyPool(["http://a:1"])
        pool.mark_unhealthy("http://zzz:1")
        assert pool.available

    def test_failure_time_recorded(self) -> None:
        clock = FakeClock(50.0)
        pool = ProxyPool(["http://a:1"], clock=clock)
        pool.mark_unhealthy("http://a:1")
        ep = pool.endpoints()[0]
        assert ep.health == ProxyHealth.UNHEALTHY
        assert ep.last_failure_at == 50.0


class TestRevalidation:
    """Probing unhealthy endpoints back into rotation."""

    @pytest.mark.anyio
    async def test_cooldown_respected(self) -> None:
        clock = FakeClock()
        probed: list[str] = []
        pool = ProxyPool(
            ["http://a:1"],
            revalidate_interval=60,
            clock=clock,
            client_factory=_client_factory({"http://a:1"}, probed),
        )
        pool.mark_unhealthy("http://a:1")

        clock.now += 30
        assert await pool.revalidate() == 0
        assert probed == []

        clock.now += 30
        assert await pool.revalidate() == 1
        assert pool.next() == "http://a:1"

    @pytest.mark.anyio
    async def test_failed_probe_stays_unhealthy(self) -> None:
        clock = FakeClock()
        probed: list[str] = []
        pool = ProxyPool(
            ["http://a:1"], cooldown=0, clock=clock, client_factory=_client_factory(set(), probed)
        )
        pool.mark_unhealthy("http://a:1")
        assert await pool.revalidate() == 0
        assert probed == ["http://a:1"]
        assert pool.next() is None

    @pytest.mark.anyio
    async def test_probe_transport_error_is_false(self) -> None:
        def factory(address: str) -> httpx.AsyncClient:
            def handler(request: httpx.Request) -> httpx.Response:
                raise httpx.ConnectError("refused", request=request)

            return httpx.AsyncClient(transport=httpx.MockTransport(handler))

        pool = ProxyPool(["http://a:1"], client_factory=factory)
        assert await pool.probe("http://a:1") is False

    @pytest.mark.anyio
    async def test_check_all_updates_every_endpoint(self) -> None:
        probed: list[str] = []
        pool = ProxyPool(
            ["http://a:1", "http://b:1"], client_factory=_client_factory({"http://b:1"}, probed)
        )
        results = await pool.check_all()
        assert results == {"http://a:1": False, "http://b:1": True}
        assert [pool.next() for _ in range(2)] == ["http://b:1", "http://b:1"]

    @pytest.mark.anyio
    async def test_start_and_stop(self) -> None:
        pool = ProxyPool(["http://a:1"], revalidate_interval=3600)
        pool.start()
        assert pool._task is not None
        await pool.stop()
        assert pool._task is None

    @pytest.mark.anyio
    async def test_start_disabled_without_interval(self) -> None:
        pool = ProxyPool(["http://a:1"], revalidate_interval=0)
        pool.start()
        assert pool._task is None


class TestIsProxyError:
    """Classification of proxy-attributable failures."""

    @pytest.mark.parametrize(
        "exc",
        [
            RuntimeError("net::ERR_PROXY_CONNECTION_FAILED at https://x"),
            RuntimeError("read ECONNRESET"),
            RuntimeError("socket hang up"),
            ConnectionResetError(),
            ProxyError("http://a:1", "tunnel failed"),
        ],
    )
    def test_proxy_failures(self, exc: BaseException) -> None:
        assert is_proxy_error(exc)

    @pytest.mark.parametrize(
        "exc",
        [RuntimeError("404 Not Found"), TimeoutError("Timeout 30000ms exceeded"), ValueError("bad")],
    )
    def test_other_failures(self, exc: BaseException) -> None:
        assert not is_proxy_error(exc)

    def test_from_settings(self) -> None:
        from flexscrape.settings.config import ProxySettings

        pool = ProxyPool.from_settings(ProxySettings(proxy_urls=["http://a:1"], revalidate_interval_sec=5))
        assert len(pool) == 1
        assert pool.revalidate_interval == 5
        assert pool.cooldown == 5
