"""
FastAPI-бэкенд бота подбора квартир (ss.com).

Реализует:
- Общее хранилище каталога и движок воронки (State Machine),
  которыми пользуются и веб-чат, и Telegram-бот.
- Единый эндпоинт /api/chat и проверку готовности /health.

─── ИНСТРУКЦИЯ ПО ПРОВЕРКЕ ────────────────────────────────────────────────────

1. Проверить обход каталога отдельно:
       python scheduler.py
   В логах (logs/bot.log) появится строка «Обход завершён: городов=…».

2. Запустить бэкенд:
       uvicorn main:app --host 127.0.0.1 --port 8000
   Пока идёт первичный обход, /health отвечает status=loading,
   а команда /start просит подождать.
   Если первичный обход упал, /health отвечает status=error с причиной
   в last_error, пока плановый обход не построит каталог.

3. Пройти воронку через API:
       {"session_id": "demo", "message": "/start"}
       {"session_id": "demo", "message": "Riga"}
       {"session_id": "demo", "message": "Centre"}
       {"session_id": "demo", "message": "Sell"}
       {"session_id": "demo", "message": "50000-120000"}
   В логах — строка «Воронка завершена | criteria=…» и «Выдача …».
───────────────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from catalog import CatalogStore
from dialogue import DialogueEngine
from errors import CrawlError
from logger import get_logger
from models import ChatRequest, ChatResponse
from scheduler import start_scheduler
from scraper import ListingFetcher, refresh_catalog

log = get_logger(__name__)

# ─── Общие объекты ────────────────────────────────────────────────────────────

catalog_store = CatalogStore()
engine = DialogueEngine(catalog_store, ListingFetcher())


async def process_message(request: ChatRequest) -> ChatResponse:
    """Единая обработка сообщения (веб + телеграм)."""
    return await engine.handle(request.session_id, request.message)


async def _initial_crawl() -> None:
    try:
        await refresh_catalog(catalog_store)
    except CrawlError as exc:
        log.critical("Первичный обход каталога не удался: %s", exc)
        catalog_store.mark_failed(str(exc))


# ─── Lifespan (запуск/остановка) ───────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Запуск FastAPI-бэкенда …")

    # Обход идёт в фоне: до его окончания /start отвечает «каталог загружается»
    crawl_task = asyncio.create_task(_initial_crawl())
    sched = start_scheduler(catalog_store)

    yield

    sched.shutdown(wait=False)
    crawl_task.cancel()
    log.info("FastAPI-бэкенд остановлен.")


# ─── Приложение ────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Flats bot",
    version="1.0.0",
    lifespan=lifespan,
)


# ─── API Endpoints ─────────────────────────────────────────────────────────────

@app.post("/api/chat", response_model=ChatResponse)
async def chat_endpoint(request: ChatRequest) -> ChatResponse:
    """Эндпоинт чата: одно сообщение — один ответ воронки."""
    log.info(
        "Запрос [%s] session=%s: %s",
        request.source,
        request.session_id[:16],
        (request.message or "<не текст>")[:100],
    )
    response = await process_message(request)
    log.info(
        "Ответ [%s] action=%s: %s",
        request.source,
        response.action.value,
        response.reply[:100],
    )
    return response


def _health_status() -> str:
    if catalog_store.is_ready:
        return "ok"
    # первичный обход упал: до следующего успешного обхода каталога нет
    return "error" if catalog_store.last_error else "loading"


@app.get("/health")
async def health_check() -> dict:
    """Готовность каталога и его размер."""
    catalog = await catalog_store.snapshot()
    return {
        "status": _health_status(),
        "catalog_ready": catalog_store.is_ready,
        "last_error": catalog_store.last_error,
        "sessions": len(engine.sessions),
        **catalog.stats(),
    }


# ─── Точка входа ──────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
