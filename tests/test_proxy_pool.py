import asyncio

import pytest

from catalog_crawler.errors import NoAvailableProxyError
from catalog_crawler.worker import ProxyPool


def test_empty_pool_means_direct_egress():
    pool = ProxyPool()

    async def main():
        assert await pool.acquire() is None
        await pool.report_outcome(None, False)

    asyncio.run(main())


def test_rotation_prefers_least_recently_used(clock):
    pool = ProxyPool.from_addresses(["http://p1", "http://p2", "http://p3"], clock=clock.monotonic)

    async def main():
        picked = []
        for _ in range(4):
            clock.advance(1.0)
            picked.append(await pool.acquire())
        return picked

    assert asyncio.run(main()) == ["http://p1", "http://p2", "http://p3", "http://p1"]


def test_proxy_disabled_after_consecutive_failures(clock):
    pool = ProxyPool.from_addresses(["http://p1", "http://p2"], failure_threshold=3, clock=clock.monotonic)

    async def main():
        for _ in range(3):
            await pool.report_outcome("http://p1", False)
        assert pool.proxies["http://p1"].disabled
        for _ in range(3):
            clock.advance(1.0)
            assert await pool.acquire() == "http://p2"

    asyncio.run(main())


def test_success_resets_failure_streak(clock):
    pool = ProxyPool.from_addresses(["http://p1"], failure_threshold=5, clock=clock.monotonic)

    async def main():
        for _ in range(4):
            await pool.report_outcome("http://p1", False)
        await pool.report_outcome("http://p1", True)
        for _ in range(4):
            await pool.report_outcome("http://p1", False)

    asyncio.run(main())
    record = pool.proxies["http://p1"]
    assert record.consecutive_failures == 4
    assert not record.disabled


def test_all_disabled_raises_until_reenabled(clock):
    pool = ProxyPool.from_addresses(["http://p1"], failure_threshold=1, clock=clock.monotonic)

    async def main():
        await pool.report_outcome("http://p1", False)
        with pytest.raises(NoAvailableProxyError):
            await pool.acquire()
        assert await pool.enable("http://p1")
        assert await pool.acquire() == "http://p1"
        assert not await pool.enable("http://unknown")

    asyncio.run(main())


def test_load_from_file_skips_blank_lines_and_duplicates(tmp_path):
    proxy_file = tmp_path / "proxies.txt"
    proxy_file.write_text("http://p1\n\nhttp://p2\nhttp://p1\n")
    pool = ProxyPool()
    pool.load_from_file(proxy_file)
    assert [record["address"] for record in pool.snapshot()] == ["http://p1", "http://p2"]


def test_added_proxy_joins_rotation_and_removed_one_leaves(clock):
    pool = ProxyPool.from_addresses(["http://p1"], clock=clock.monotonic)

    async def main():
        clock.advance(1.0)
        first = await pool.acquire()
        await pool.add("http://p2")
        await pool.add("http://p2")
        clock.advance(1.0)
        second = await pool.acquire()
        removed = await pool.remove("http://p1")
        clock.advance(1.0)
        return first, second, removed, await pool.acquire(), await pool.remove("http://p1")

    first, second, removed, third, removed_again = asyncio.run(main())
    assert (first, second, third) == ("http://p1", "http://p2", "http://p2")
    assert removed
    assert not removed_again
    assert list(pool.proxies) == ["http://p2"]
