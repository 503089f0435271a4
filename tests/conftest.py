from __future__ import annotations

import httpx
import pytest
from tenacity import wait_none

import scraper
from models import Catalog, City, DealType, District

BASE = "https://ss.test"

ROOT_PATH = "/en/real-estate/flats/"
RIGA_PATH = "/en/real-estate/flats/riga/"
JURMALA_PATH = "/en/real-estate/flats/jurmala/"
CENTRE_PATH = "/en/real-estate/flats/riga/centre/"
TEIKA_PATH = "/en/real-estate/flats/riga/teika/"
MAJORI_PATH = "/en/real-estate/flats/jurmala/majori/"


def category_page(links: list[tuple[str, str]]) -> str:
    items = "\n".join(
        f'<h4 class="category"><a class="a_category" href="{href}" title="{name}">{name}</a></h4>'
        for name, href in links
    )
    return f"<html><body><div class='top_head'></div>{items}</body></html>"


def deal_type_page(options: list[tuple[str, str]]) -> str:
    items = "".join(f'<option value="{value}">{text}</option>' for text, value in options)
    return f'<html><body><select class="filter_second_line_dv">{items}</select></body></html>'


def flat_row(n: int, price: str = "85,000 €", street: str = "Brivibas 10") -> str:
    href = f"/msg/en/real-estate/flats/riga/centre/flat{n}.html"
    return (
        f'<tr id="tr_{n}">'
        '<td><input type="checkbox"></td>'
        f'<td><a href="{href}"><img src="https://i.ss.test/{n}.th2.jpg"></a></td>'
        f'<td><a href="{href}">Flat number {n}</a></td>'
        f"<td>{street}</td><td>2</td><td>54</td><td>3/5</td><td>Stalin</td>"
        f"<td>1,574 €</td><td>{price}</td>"
        "</tr>"
    )


def listing_page(rows: list[str], header: bool = True, footer: bool = True) -> str:
    body = []
    if header:
        body.append('<tr id="head_line"><td>Ad</td><td>Street</td><td>Price</td></tr>')
    body.extend(rows)
    if footer:
        body.append('<tr><td colspan="10"><a href="page2.html">Next</a></td></tr>')
    return (
        '<html><body><form id="filter_frm">'
        '<table><tr><td>filters</td></tr></table>'
        f'<table align="center">{"".join(body)}</table>'
        "</form></body></html>"
    )


def site_pages() -> dict[str, object]:
    """Два города, в Риге два района, у Центра два типа сделок."""
    return {
        ROOT_PATH: category_page([("Riga", RIGA_PATH), ("Jurmala", JURMALA_PATH)]),
        RIGA_PATH: category_page([("Centre", CENTRE_PATH), ("Teika", TEIKA_PATH)]),
        JURMALA_PATH: category_page([("Majori", MAJORI_PATH)]),
        CENTRE_PATH: deal_type_page([
            ("All", CENTRE_PATH),
            ("Sell\u00a0", CENTRE_PATH + "sell/"),
            ("Rent out", CENTRE_PATH + "hand_over/"),
        ]),
        TEIKA_PATH: deal_type_page([("Sell", TEIKA_PATH + "sell/")]),
        MAJORI_PATH: "<html><body>no filters here</body></html>",
    }


class FakeSite:
    """Ответы по пути запроса: str — HTML, int — код ошибки; счётчик запросов."""

    def __init__(self, pages: dict[str, object]):
        self.pages = pages
        self.calls: dict[str, int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] = self.calls.get(path, 0) + 1
        page = self.pages.get(path)
        if page is None:
            return httpx.Response(404)
        if isinstance(page, int):
            return httpx.Response(page)
        if isinstance(page, list):
            step = page[min(self.calls[path], len(page)) - 1]
            if isinstance(step, int):
                return httpx.Response(step)
            return httpx.Response(200, text=step)
        return httpx.Response(200, text=page)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(scraper._fetch.retry, "wait", wait_none())


@pytest.fixture
def riga_catalog() -> Catalog:
    centre = District(
        name="Centre",
        path=CENTRE_PATH,
        deal_types=frozenset({DealType(name="Sell"), DealType(name="Rent")}),
    )
    return Catalog(cities=frozenset({City(name="Riga", path=RIGA_PATH, districts=frozenset({centre}))}))
