"""
Иерархия ошибок проекта.

FetchError      — сеть / HTTP-статус
ExtractionError — селектор не компилируется или нужный узел не найден
CrawlError      — фатальная ошибка обхода каталога (верхний уровень)
ParseError      — некорректный диапазон цен или числовое поле
ValidationError — введённое имя не найдено в каталоге
StateError      — состояние диалога не согласовано с сессией
"""

from __future__ import annotations

from typing import Optional


class FlatsBotError(Exception):
    """Базовая ошибка проекта."""


# ─── Сеть ──────────────────────────────────────────────────────────────────────

class FetchError(FlatsBotError):
    def __init__(self, url: str, reason: str, status: Optional[int] = None, retryable: bool = False):
        self.url = url
        self.status = status
        self.retryable = retryable
        super().__init__(f"{url}: {reason}")


class ListingNotFound(FetchError):
    """На странице объявлений нет таблицы с результатами."""

    def __init__(self, url: str):
        super().__init__(url, "results table not found")


# ─── Разметка ──────────────────────────────────────────────────────────────────

class ExtractionError(FlatsBotError):
    def __init__(self, url: str, selector: str, reason: str):
        self.url = url
        self.selector = selector
        super().__init__(f"{url} [{selector}]: {reason}")


class SelectorFailed(ExtractionError):
    """Селектор невалиден или не дал ни одного совпадения там, где оно обязательно."""


# ─── Обход каталога ────────────────────────────────────────────────────────────

class CrawlError(FlatsBotError):
    """Фатальная ошибка обхода: каталог построить нельзя."""


class RootFetchFailed(CrawlError):
    pass


class CrawlSelectorFailed(CrawlError):
    pass


# ─── Диалог ────────────────────────────────────────────────────────────────────

class ParseError(FlatsBotError):
    pass


class ValidationError(FlatsBotError):
    def __init__(self, kind: str, value: str):
        self.kind = kind
        self.value = value
        super().__init__(f"{kind} '{value}' not found")


class StateError(FlatsBotError):
    pass
