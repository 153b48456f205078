import asyncio

from catalog_crawler.jobs import QuarantineStore
from catalog_crawler.store import MemoryCrawlerStore

URL = "https://shop.test/broken"


def test_failures_accumulate_on_one_entry(clock):
    quarantine = QuarantineStore(MemoryCrawlerStore(), now=clock.utcnow)

    async def main():
        first = await quarantine.record_failure("shop", URL, "404")
        clock.advance(3600)
        second = await quarantine.record_failure("shop", URL, "410")
        return first, second

    first, second = asyncio.run(main())
    assert first.failure_count == 1
    assert second.failure_count == 2
    assert second.first_failure == first.first_failure
    assert second.last_failure > second.first_failure
    assert second.last_error == "410"


def test_entries_are_scoped_to_their_config(clock):
    quarantine = QuarantineStore(MemoryCrawlerStore(), now=clock.utcnow)

    async def main():
        await quarantine.record_failure("shop", URL, "404")
        return await quarantine.is_quarantined("shop", URL), await quarantine.is_quarantined("other", URL)

    assert asyncio.run(main()) == (True, False)


def test_skip_flag_and_explicit_removal(clock):
    quarantine = QuarantineStore(MemoryCrawlerStore(), now=clock.utcnow)

    async def main():
        await quarantine.record_failure("shop", URL, "404")
        await quarantine.set_skip("shop", URL, False)
        assert not await quarantine.is_quarantined("shop", URL)
        assert len(await quarantine.list("shop")) == 1

        assert await quarantine.remove("shop", URL)
        assert not await quarantine.remove("shop", URL)
        assert await quarantine.list() == []

    asyncio.run(main())


def test_operator_can_quarantine_a_fresh_url(clock):
    quarantine = QuarantineStore(MemoryCrawlerStore(), now=clock.utcnow)

    async def main():
        assert await quarantine.set_skip("shop", URL, False) is None
        entry = await quarantine.set_skip("shop", URL, True)
        return entry, await quarantine.is_quarantined("shop", URL)

    entry, quarantined = asyncio.run(main())
    assert entry.failure_count == 0
    assert quarantined
