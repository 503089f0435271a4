import asyncio

import pytest

import scraper
from catalog import CatalogStore
from conftest import (
    BASE,
    CENTRE_PATH,
    JURMALA_PATH,
    RIGA_PATH,
    ROOT_PATH,
    TEIKA_PATH,
    FakeSite,
    category_page,
    site_pages,
)
from errors import CrawlSelectorFailed, FetchError, RootFetchFailed
from models import DealType
from scraper import CatalogCrawler, clean_deal_type, gather_or_cancel, refresh_catalog


def crawl(site: FakeSite):
    async def run():
        async with site.client() as client:
            return await CatalogCrawler(BASE, client=client, request_delay=0).crawl()

    return asyncio.run(run())


def test_crawl_builds_three_level_catalog():
    catalog, report = crawl(FakeSite(site_pages()))

    assert catalog.city_names() == ["Jurmala", "Riga"]
    riga = catalog.city("Riga")
    assert riga.path == RIGA_PATH
    assert riga.district_names() == ["Centre", "Teika"]

    centre = riga.district("Centre")
    assert centre.deal_types == frozenset({
        DealType(name="Sell", path=CENTRE_PATH + "sell/"),
        DealType(name="Rent out", path=CENTRE_PATH + "hand_over/"),
    })

    # раздел без выпадающего списка сделок — пустое множество, не ошибка
    majori = catalog.city("Jurmala").district("Majori")
    assert majori.deal_types == frozenset()

    assert report.cities == 2
    assert report.districts == 3
    assert report.deal_types == 3
    assert report.omitted == []


def test_crawl_is_idempotent_for_same_markup():
    first, _ = crawl(FakeSite(site_pages()))
    second, _ = crawl(FakeSite(site_pages()))
    assert first == second
    assert hash(first) == hash(second)


def test_failed_city_is_skipped_entirely():
    pages = site_pages()
    pages[JURMALA_PATH] = 500
    site = FakeSite(pages)

    catalog, report = crawl(site)

    assert catalog.city_names() == ["Riga"]
    assert catalog.city("Riga").district_names() == ["Centre", "Teika"]
    assert report.omitted == [JURMALA_PATH]
    # 5xx повторяется ровно до лимита попыток
    assert site.calls[JURMALA_PATH] == scraper.SCRAPER_MAX_RETRIES


def test_failed_district_is_skipped_and_crawl_continues():
    pages = site_pages()
    pages[TEIKA_PATH] = 404
    site = FakeSite(pages)

    catalog, report = crawl(site)

    assert catalog.city("Riga").district_names() == ["Centre"]
    assert catalog.city("Jurmala") is not None
    assert report.omitted == [TEIKA_PATH]
    # 4xx не повторяется
    assert site.calls[TEIKA_PATH] == 1


def test_root_fetch_failure_is_fatal():
    pages = site_pages()
    pages[ROOT_PATH] = 503
    with pytest.raises(RootFetchFailed):
        crawl(FakeSite(pages))


def test_root_without_city_links_is_fatal():
    pages = site_pages()
    pages[ROOT_PATH] = "<html><body><p>maintenance</p></body></html>"
    with pytest.raises(CrawlSelectorFailed):
        crawl(FakeSite(pages))


def test_invalid_selector_is_fatal(monkeypatch):
    monkeypatch.setattr(scraper, "DISTRICT_LINK_SELECTOR", "h4[")
    with pytest.raises(CrawlSelectorFailed):
        crawl(FakeSite(site_pages()))


def test_transient_root_error_is_retried():
    pages = site_pages()
    pages[ROOT_PATH] = [502, pages[ROOT_PATH]]
    site = FakeSite(pages)

    catalog, _ = crawl(site)

    assert site.calls[ROOT_PATH] == 2
    assert catalog.city_names() == ["Jurmala", "Riga"]


def test_city_name_keeps_part_before_and():
    pages = site_pages()
    pages[ROOT_PATH] = category_page([("Riga and Pieriga", RIGA_PATH)])

    catalog, _ = crawl(FakeSite(pages))

    assert catalog.city_names() == ["Riga"]
    assert catalog.city("Riga").path == RIGA_PATH


def test_duplicate_city_names_keep_last_link():
    pages = site_pages()
    pages[ROOT_PATH] = category_page([("Riga", "/old/riga/"), ("Riga", RIGA_PATH)])

    catalog, _ = crawl(FakeSite(pages))

    assert [c.path for c in catalog.cities] == [RIGA_PATH]


def test_clean_deal_type_strips_nbsp():
    assert clean_deal_type("Sell\u00a0") == "Sell"
    assert clean_deal_type("  Rent  out ") == "Rent out"
    assert clean_deal_type(None) == ""


def test_fetch_error_carries_status():
    async def run():
        async with FakeSite({}).client() as client:
            await scraper.fetch_document(client, BASE, "/missing/")

    with pytest.raises(FetchError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status == 404
    assert not exc_info.value.retryable


def test_refresh_catalog_replaces_store():
    async def run():
        store = CatalogStore()
        assert not store.is_ready
        async with FakeSite(site_pages()).client() as client:
            report = await refresh_catalog(store, CatalogCrawler(BASE, client=client, request_delay=0))
        return store, report, await store.snapshot()

    store, report, catalog = asyncio.run(run())

    assert store.is_ready
    assert report.cities == 2
    assert catalog.city("Jurmala") is not None


def test_gather_or_cancel_stops_siblings_on_error():
    cancelled: list[str] = []

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append("slow")
            raise

    async def broken():
        await asyncio.sleep(0)
        raise CrawlSelectorFailed("bad markup")

    async def run():
        await gather_or_cancel([slow(), broken()])

    with pytest.raises(CrawlSelectorFailed):
        asyncio.run(run())
    assert cancelled == ["slow"]


def test_gather_or_cancel_keeps_order():
    async def value(n, delay):
        await asyncio.sleep(delay)
        return n

    assert asyncio.run(gather_or_cancel([value(1, 0.02), value(2, 0)])) == [1, 2]
