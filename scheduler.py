"""
Планировщик обновления каталога городов/районов.

Запускает повторный обход ss.com по расписанию (по умолчанию каждый день
в 04:00) и подменяет каталог в общем хранилище. Если обход упал, диалоги
продолжают работать на предыдущей версии каталога.
"""

from __future__ import annotations

import asyncio

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from catalog import CatalogStore
from config import CATALOG_REFRESH_HOUR, CATALOG_REFRESH_MINUTE
from errors import CrawlError
from logger import get_logger
from scraper import refresh_catalog

log = get_logger(__name__)


async def scheduled_crawl_job(store: CatalogStore) -> None:
    """Задача планировщика: полный обход + подмена каталога."""
    log.info("═══ Начало планового обновления каталога ═══")
    try:
        report = await refresh_catalog(store)
    except CrawlError as exc:
        log.error("Обход каталога не удался, оставлен прежний каталог: %s", exc)
        store.mark_failed(str(exc))
        return
    except Exception as exc:
        log.exception("Ошибка при плановом обновлении каталога: %s", exc)
        return

    log.info(
        "═══ Обновление завершено: городов=%d, районов=%d, типов сделок=%d, пропущено=%d ═══",
        report.cities,
        report.districts,
        report.deal_types,
        len(report.omitted),
    )


def start_scheduler(store: CatalogStore) -> AsyncIOScheduler:
    """Настраивает и запускает планировщик APScheduler (нужен работающий event loop)."""
    scheduler = AsyncIOScheduler()
    trigger = CronTrigger(hour=CATALOG_REFRESH_HOUR, minute=CATALOG_REFRESH_MINUTE)
    scheduler.add_job(
        scheduled_crawl_job,
        trigger=trigger,
        args=[store],
        id="catalog_refresh",
        replace_existing=True,
        name="Ежедневный обход каталога ss.com",
    )
    scheduler.start()
    log.info(
        "Планировщик запущен: ежедневно в %02d:%02d",
        CATALOG_REFRESH_HOUR,
        CATALOG_REFRESH_MINUTE,
    )
    return scheduler


# ─── CLI: ручной запуск ────────────────────────────────────────────────────────

if __name__ == "__main__":
    async def _manual_run():
        log.info("Ручной запуск обхода каталога …")
        store = CatalogStore()
        await scheduled_crawl_job(store)
        catalog = await store.snapshot()
        for city in sorted(catalog.cities, key=lambda c: c.name):
            log.info("%s: %s", city.name, ", ".join(city.district_names()) or "—")

    asyncio.run(_manual_run())
