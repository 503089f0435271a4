"""
Общее хранилище каталога городов/районов/типов сделок.

Единственный писатель — обход каталога (первичный и плановые обновления),
читатели — диалоги. Блокировка держится только на время поиска в памяти,
никогда на время сетевых запросов.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from logger import get_logger
from models import Catalog

log = get_logger(__name__)


class CatalogStore:
    def __init__(self, catalog: Optional[Catalog] = None) -> None:
        self._catalog = catalog or Catalog()
        self._lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._last_error: Optional[str] = None
        if catalog is not None:
            self._ready.set()

    @property
    def is_ready(self) -> bool:
        """Каталог хотя бы раз успешно построен."""
        return self._ready.is_set()

    @property
    def last_error(self) -> Optional[str]:
        """Причина последнего неудачного обхода (None после успешного)."""
        return self._last_error

    def mark_failed(self, reason: str) -> None:
        self._last_error = reason

    @asynccontextmanager
    async def read(self) -> AsyncIterator[Catalog]:
        """Доступ к актуальному каталогу под блокировкой."""
        async with self._lock:
            yield self._catalog

    async def replace(self, catalog: Catalog) -> None:
        """Атомарно подменяет каталог результатом нового обхода."""
        async with self._lock:
            self._catalog = catalog
            self._last_error = None
        self._ready.set()
        log.info("Каталог обновлён: %s", catalog.stats())

    async def snapshot(self) -> Catalog:
        async with self._lock:
            return self._catalog
