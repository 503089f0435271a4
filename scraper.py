"""
Парсер раздела «Квартиры» ss.com.

- Обходит три уровня каталога: города → районы → типы сделок.
- Ошибка на корневой странице фатальна; ошибка на городе или районе —
  город/район пропускается и попадает в отчёт обхода.
- Загружает первую страницу объявлений района и разбирает строки таблицы
  в модели Flat (первая и последняя строки — заголовок и пагинация).
"""

from __future__ import annotations

import asyncio
import random
import re
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Iterable, Optional, TypeVar

import httpx
from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from catalog import CatalogStore
from config import (
    BASE_SITE_URL,
    CITY_LINK_SELECTOR,
    DEAL_TYPE_IGNORED,
    DEAL_TYPE_SELECTOR,
    DISTRICT_LINK_SELECTOR,
    LISTING_PAGE_TEMPLATE,
    LISTING_ROW_SELECTOR,
    LISTING_TABLE_SELECTOR,
    ROOT_CATEGORY_PATH,
    SCRAPER_CONCURRENCY,
    SCRAPER_MAX_RETRIES,
    SCRAPER_REQUEST_DELAY,
    SCRAPER_TIMEOUT,
)
from errors import (
    CrawlSelectorFailed,
    ExtractionError,
    FetchError,
    ListingNotFound,
    ParseError,
    RootFetchFailed,
    SelectorFailed,
)
from logger import get_logger
from models import (
    Catalog,
    City,
    CrawlReport,
    DealType,
    District,
    Flat,
    FlatCriteria,
    city_display_name,
    clean_text,
)

log = get_logger(__name__)

T = TypeVar("T")

# ─── HTTP-клиент ────────────────────────────────────────────────────────────────

_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.9",
}


def _is_retryable(exc: BaseException) -> bool:
    """Повторяем только таймауты, сетевые ошибки и 5xx."""
    return isinstance(exc, FetchError) and exc.retryable


@retry(
    stop=stop_after_attempt(SCRAPER_MAX_RETRIES),
    wait=wait_exponential(min=1, max=10),
    retry=retry_if_exception(_is_retryable),
    reraise=True,
)
async def _fetch(client: httpx.AsyncClient, url: str) -> str:
    """Загружает HTML-страницу с повторами при временных ошибках."""
    try:
        resp = await client.get(url, headers=_HEADERS, timeout=SCRAPER_TIMEOUT, follow_redirects=True)
    except httpx.TimeoutException as exc:
        raise FetchError(url, f"timeout ({exc.__class__.__name__})", retryable=True) from exc
    except httpx.TransportError as exc:
        raise FetchError(url, str(exc) or exc.__class__.__name__, retryable=True) from exc
    except httpx.HTTPError as exc:
        raise FetchError(url, str(exc) or exc.__class__.__name__) from exc

    if resp.status_code >= 400:
        raise FetchError(
            url,
            f"HTTP {resp.status_code}",
            status=resp.status_code,
            retryable=resp.status_code >= 500,
        )
    return resp.text


def abs_url(base_url: str, href: str) -> str:
    """Преобразует относительную ссылку в абсолютную."""
    if href.startswith("http"):
        return href
    return base_url.rstrip("/") + "/" + href.lstrip("/")


async def fetch_document(client: httpx.AsyncClient, base_url: str, path: str) -> str:
    return await _fetch(client, abs_url(base_url, path))


# ─── Извлечение узлов ──────────────────────────────────────────────────────────

def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def select_nodes(root: BeautifulSoup | Tag, selector: str, url: str, required: bool = False) -> list[Tag]:
    """
    CSS-выборка с явными ошибками.

    Невалидный селектор — всегда SelectorFailed. Пустая выборка — ошибка
    только для обязательных узлов (required=True), иначе просто пустой список.
    """
    try:
        nodes = root.select(selector)
    except SelectorSyntaxError as exc:
        raise SelectorFailed(url, selector, f"invalid selector: {exc}") from exc
    if required and not nodes:
        raise SelectorFailed(url, selector, "no matches")
    return nodes


def _links(nodes: list[Tag], normalize=clean_text) -> dict[str, str]:
    """
    Имя → ссылка для списка <a>.

    При повторе имени побеждает последняя ссылка в порядке документа.
    """
    links: dict[str, str] = {}
    for node in nodes:
        name = normalize(node.get_text())
        href = (node.get("href") or "").strip()
        if name and href:
            links[name] = href
    return links


def clean_deal_type(text: str | None) -> str:
    """Текст варианта сделки без неразрывных пробелов (U+00A0)."""
    return clean_text((text or "").replace("\u00a0", ""))


def _deal_types(nodes: list[Tag]) -> frozenset[DealType]:
    deal_types: set[DealType] = set()
    for option in nodes:
        name = clean_deal_type(option.get_text())
        if not name or name.casefold() in DEAL_TYPE_IGNORED:
            continue
        value = (option.get("value") or "").strip()
        deal_types.add(DealType(name=name, path=value if value.startswith("/") else ""))
    return frozenset(deal_types)


# ─── Базовый клиент сайта ──────────────────────────────────────────────────────

class _SiteClient:
    def __init__(self, base_url: str = BASE_SITE_URL, client: Optional[httpx.AsyncClient] = None) -> None:
        self._base_url = base_url
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        """Внешний клиент не закрываем, собственный — закрываем по выходу."""
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient() as client:
            yield client


# ─── Обход каталога ────────────────────────────────────────────────────────────

async def gather_or_cancel(coros: Iterable[Awaitable[T]]) -> list[T]:
    """
    asyncio.gather, который при первой ошибке отменяет остальные задачи
    и дожидается их завершения до того, как ошибка уйдёт выше.
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class CatalogCrawler(_SiteClient):
    """Строит Catalog обходом трёх уровней раздела квартир."""

    def __init__(
        self,
        base_url: str = BASE_SITE_URL,
        client: Optional[httpx.AsyncClient] = None,
        request_delay: float = SCRAPER_REQUEST_DELAY,
        concurrency: int = SCRAPER_CONCURRENCY,
    ) -> None:
        super().__init__(base_url, client)
        self._request_delay = request_delay
        self._concurrency = concurrency

    async def crawl(self) -> tuple[Catalog, CrawlReport]:
        """
        Полный обход:
        1. Корневая страница → ссылки на города (ошибка фатальна).
        2. Страница города → ссылки на районы (ошибка — город пропускается).
        3. Страница района → типы сделок (ошибка — район пропускается).
        """
        report = CrawlReport()
        semaphore = asyncio.Semaphore(self._concurrency)

        async with self._session() as client:
            city_links = await self._crawl_root(client)
            log.info("Найдено городов: %d", len(city_links))

            try:
                results = await gather_or_cancel(
                    self._crawl_city(client, semaphore, report, name, path)
                    for name, path in city_links.items()
                )
            except ExtractionError as exc:
                raise CrawlSelectorFailed(str(exc)) from exc

        catalog = Catalog(cities=frozenset(city for city in results if city is not None))
        stats = catalog.stats()
        report.cities = stats["cities"]
        report.districts = stats["districts"]
        report.deal_types = stats["deal_types"]
        report.omitted.sort()

        log.info(
            "Обход завершён: городов=%d, районов=%d, типов сделок=%d, пропущено=%d",
            report.cities,
            report.districts,
            report.deal_types,
            len(report.omitted),
        )
        return catalog, report

    async def _get(self, client: httpx.AsyncClient, semaphore: asyncio.Semaphore, path: str) -> str:
        async with semaphore:
            if self._request_delay > 0:
                await asyncio.sleep(random.uniform(0, self._request_delay))
            return await fetch_document(client, self._base_url, path)

    async def _crawl_root(self, client: httpx.AsyncClient) -> dict[str, str]:
        url = abs_url(self._base_url, ROOT_CATEGORY_PATH)
        try:
            html = await _fetch(client, url)
        except FetchError as exc:
            log.critical("Не удалось загрузить корневую страницу %s: %s", url, exc)
            raise RootFetchFailed(str(exc)) from exc

        try:
            nodes = select_nodes(parse_html(html), CITY_LINK_SELECTOR, url, required=True)
        except ExtractionError as exc:
            log.critical("Разметка корневой страницы не распознана: %s", exc)
            raise CrawlSelectorFailed(str(exc)) from exc

        return _links(nodes, normalize=city_display_name)

    async def _crawl_city(
        self,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        report: CrawlReport,
        name: str,
        path: str,
    ) -> Optional[City]:
        try:
            html = await self._get(client, semaphore, path)
        except FetchError as exc:
            log.warning("Город %s пропущен: %s", name, exc)
            report.omitted.append(path)
            return None

        url = abs_url(self._base_url, path)
        district_links = _links(select_nodes(parse_html(html), DISTRICT_LINK_SELECTOR, url))
        log.info("  %s: найдено районов %d", name, len(district_links))

        districts = await gather_or_cancel(
            self._crawl_district(client, semaphore, report, district_name, district_path)
            for district_name, district_path in district_links.items()
        )
        return City(
            name=name,
            path=path,
            districts=frozenset(d for d in districts if d is not None),
        )

    async def _crawl_district(
        self,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        report: CrawlReport,
        name: str,
        path: str,
    ) -> Optional[District]:
        try:
            html = await self._get(client, semaphore, path)
        except FetchError as exc:
            log.warning("Район %s пропущен: %s", name, exc)
            report.omitted.append(path)
            return None

        url = abs_url(self._base_url, path)
        deal_types = _deal_types(select_nodes(parse_html(html), DEAL_TYPE_SELECTOR, url))
        log.debug("    %s: типы сделок %s", name, sorted(d.name for d in deal_types))
        return District(name=name, path=path, deal_types=deal_types)


async def refresh_catalog(store: CatalogStore, crawler: Optional[CatalogCrawler] = None) -> CrawlReport:
    """Обходит сайт и подменяет каталог в хранилище. Ошибки обхода пробрасываются."""
    crawler = crawler or CatalogCrawler()
    catalog, report = await crawler.crawl()
    await store.replace(catalog)
    if report.omitted:
        log.warning("Пропущены разделы: %s", ", ".join(report.omitted))
    return report


# ─── Объявления ────────────────────────────────────────────────────────────────

_UINT_RE = re.compile(r"\d+")
_PRICE_RE = re.compile(r"\d[\d,\s]*")

_MIN_ROW_CELLS = 9


def build_listing_url(criteria: FlatCriteria, base_url: str = BASE_SITE_URL, page: int = 1) -> str:
    """Адрес страницы выдачи: ссылка типа сделки, если есть, иначе ссылка района."""
    path = criteria.deal_type_path or criteria.district_path
    return abs_url(base_url, LISTING_PAGE_TEMPLATE.format(path=path.rstrip("/"), page=page))


def _uint(cell: Tag, field: str) -> int:
    """Первое целое в ячейке: «3/5» → 3, «54 m²» → 54."""
    text = clean_text(cell.get_text())
    m = _UINT_RE.search(text)
    if not m:
        raise ParseError(f"{field}: no number in {text!r}")
    return int(m.group())


def price_value(price: str) -> Optional[int]:
    """Числовая часть цены: «85,000 €» → 85000, «350 €/mon.» → 350."""
    m = _PRICE_RE.search(price)
    if not m:
        return None
    digits = re.sub(r"\D", "", m.group())
    return int(digits) if digits else None


def _parse_flat_row(row: Tag, base_url: str) -> Flat:
    """
    Строка таблицы ss.com:
    [чекбокс, фото, описание, улица, комнаты, м², этаж, серия, …, цена]
    """
    cells = row.find_all("td")
    if len(cells) < _MIN_ROW_CELLS:
        raise ParseError(f"expected at least {_MIN_ROW_CELLS} cells, got {len(cells)}")

    link = cells[2].find("a", href=True) or cells[1].find("a", href=True)
    if link is None:
        raise ParseError("listing link not found")
    img = cells[1].find("img")

    return Flat(
        street_name=clean_text(cells[3].get_text(" ")),
        price=clean_text(cells[-1].get_text()),
        url=abs_url(base_url, link["href"]),
        image_url=(img.get("src") or "") if img else "",
        rooms=_uint(cells[4], "rooms"),
        square_meters=_uint(cells[5], "square_meters"),
        floor=_uint(cells[6], "floor"),
        series=clean_text(cells[7].get_text()),
    )


def parse_listing_rows(rows: list[Tag], base_url: str = BASE_SITE_URL) -> list[Flat]:
    """
    Строки выдачи → Flat.

    Первая (заголовок) и последняя (пагинация) строки пропускаются всегда;
    при менее чем двух строках результат пуст. Битая строка пропускается.
    """
    if len(rows) < 2:
        return []
    flats: list[Flat] = []
    for row in rows[1:-1]:
        try:
            flats.append(_parse_flat_row(row, base_url))
        except ParseError as exc:
            log.warning("Строка объявления пропущена: %s", exc)
    return flats


def _in_price_range(flat: Flat, criteria: FlatCriteria) -> bool:
    value = price_value(flat.price)
    return value is not None and criteria.price_from <= value <= criteria.price_to


class ListingFetcher(_SiteClient):
    """Загружает первую страницу объявлений по итогам воронки."""

    async def fetch(self, criteria: FlatCriteria) -> list[Flat]:
        url = build_listing_url(criteria, self._base_url)
        async with self._session() as client:
            html = await _fetch(client, url)

        tables = select_nodes(parse_html(html), LISTING_TABLE_SELECTOR, url)
        if not tables:
            raise ListingNotFound(url)
        rows = select_nodes(tables[0], LISTING_ROW_SELECTOR, url)
        flats = parse_listing_rows(rows, self._base_url)
        matched = [flat for flat in flats if _in_price_range(flat, criteria)]

        log.info(
            "Выдача %s: строк=%d, в диапазоне %d–%d: %d",
            url,
            len(flats),
            criteria.price_from,
            criteria.price_to,
            len(matched),
        )
        return matched
