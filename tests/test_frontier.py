import asyncio

from catalog_crawler.worker import Frontier, FrontierItem


def test_deduplicates_and_caps_pages():
    async def main():
        frontier = Frontier(max_pages=2)
        assert await frontier.add("https://shop.test/p1")
        assert not await frontier.add("https://shop.test/p1")
        assert await frontier.add("https://shop.test/p2")
        assert not await frontier.add("https://shop.test/p3")
        first, second = await frontier.get(), await frontier.get()
        return frontier, [first.url, second.url]

    frontier, urls = asyncio.run(main())
    assert frontier.total_enqueued == 2
    assert urls == ["https://shop.test/p1", "https://shop.test/p2"]
    assert len(frontier) == 0


def test_get_returns_none_once_drained():
    async def main():
        frontier = Frontier(max_pages=10)
        await frontier.add("https://shop.test/p1")
        item = await frontier.get()
        assert item == FrontierItem(url="https://shop.test/p1")
        assert frontier.in_flight == 1
        await frontier.task_done()
        assert await frontier.get() is None

    asyncio.run(main())


def test_waiting_worker_receives_item_put_by_in_flight_worker():
    async def main():
        frontier = Frontier(max_pages=10)
        await frontier.add("https://shop.test/p1")
        first = await frontier.get()
        waiter = asyncio.create_task(frontier.get())
        await asyncio.sleep(0)
        assert not waiter.done()

        await frontier.put(FrontierItem(url=first.url, retry_count=1))
        await frontier.task_done()
        retried = await waiter
        assert retried.retry_count == 1

    asyncio.run(main())


def test_close_releases_waiters_and_refuses_new_urls():
    async def main():
        frontier = Frontier(max_pages=10)
        await frontier.add("https://shop.test/p1")
        await frontier.get()
        waiter = asyncio.create_task(frontier.get())
        await asyncio.sleep(0)
        await frontier.close()
        assert await waiter is None
        assert not frontier.reserve("https://shop.test/p2")
        assert frontier.closed

    asyncio.run(main())
