import asyncio

from catalog_crawler.worker import RateLimiter


def test_admits_up_to_budget_then_reports_wait(clock):
    limiter = RateLimiter(window_seconds=60.0, clock=clock.monotonic, sleep=clock.sleep)

    async def main():
        assert await limiter.try_acquire("shop.test", 2) == 0.0
        assert await limiter.try_acquire("shop.test", 2) == 0.0
        assert await limiter.try_acquire("shop.test", 2) == 60.0
        clock.advance(60.0)
        assert await limiter.try_acquire("shop.test", 2) == 0.0

    asyncio.run(main())


def test_window_slides_with_oldest_admission(clock):
    limiter = RateLimiter(window_seconds=60.0, clock=clock.monotonic, sleep=clock.sleep)

    async def main():
        await limiter.try_acquire("shop.test", 2)
        clock.advance(30.0)
        await limiter.try_acquire("shop.test", 2)
        clock.advance(15.0)
        assert await limiter.try_acquire("shop.test", 2) == 15.0
        clock.advance(15.0)
        assert await limiter.try_acquire("shop.test", 2) == 0.0
        assert limiter.window("shop.test").count == 2

    asyncio.run(main())


def test_acquire_delays_instead_of_rejecting(clock):
    limiter = RateLimiter(window_seconds=60.0, clock=clock.monotonic, sleep=clock.sleep)

    async def main():
        waits = [await limiter.acquire("shop.test", 2) for _ in range(3)]
        assert waits[:2] == [0.0, 0.0]
        assert waits[2] >= 60.0
        assert clock.now >= 60.0

    asyncio.run(main())


def test_concurrent_callers_never_exceed_budget(clock):
    limiter = RateLimiter(window_seconds=60.0, clock=clock.monotonic, sleep=clock.sleep)
    admitted = []

    async def request():
        await limiter.acquire("shop.test", 3)
        admitted.append(clock.now)

    async def main():
        await asyncio.gather(*(request() for _ in range(10)))

    asyncio.run(main())

    assert len(admitted) == 10
    for start in admitted:
        in_window = [moment for moment in admitted if start <= moment < start + 60.0]
        assert len(in_window) <= 3


def test_domains_have_independent_budgets(clock):
    limiter = RateLimiter(window_seconds=60.0, clock=clock.monotonic, sleep=clock.sleep)

    async def main():
        assert await limiter.try_acquire("a.test", 1) == 0.0
        assert await limiter.try_acquire("b.test", 1) == 0.0
        assert await limiter.try_acquire("a.test", 1) > 0.0

    asyncio.run(main())


def test_default_limit_applies_when_none_given(clock):
    limiter = RateLimiter(window_seconds=60.0, default_limit=1, clock=clock.monotonic, sleep=clock.sleep)

    async def main():
        assert await limiter.try_acquire("shop.test") == 0.0
        assert await limiter.try_acquire("shop.test") == 60.0
        limiter.reset("shop.test")
        assert await limiter.try_acquire("shop.test") == 0.0

    asyncio.run(main())


def test_stopped_acquire_returns_without_admission(clock):
    async def main():
        sleeping = asyncio.Event()

        async def blocked_sleep(seconds):
            sleeping.set()
            await asyncio.Event().wait()

        limiter = RateLimiter(window_seconds=60.0, clock=clock.monotonic, sleep=blocked_sleep)
        stopped = asyncio.Event()
        await limiter.acquire("shop.test", 1, stopped=stopped)
        waiter = asyncio.create_task(limiter.acquire("shop.test", 1, stopped=stopped))
        await sleeping.wait()
        stopped.set()
        await asyncio.wait_for(waiter, timeout=5)
        assert limiter.window("shop.test").count == 1
        assert await limiter.acquire("shop.test", 1, stopped=stopped) == 0.0
        assert limiter.window("shop.test").count == 1

    asyncio.run(main())
