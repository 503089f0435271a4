"""
Telegram-бот подбора квартир на aiogram 3.x.

Отдельный асинхронный процесс, который подключается к той же
бизнес-логике через process_message() из main.py.

- Перед запуском long-polling каталог обходится синхронно: если обход
  не удался, процесс завершается с кодом 1.
- Сообщения одного чата обрабатываются строго по очереди
  (ChatSerializationMiddleware), разные чаты — параллельно.
- Ctrl+C / SIGTERM останавливают polling, код выхода 0.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Awaitable, Callable

from aiogram import BaseMiddleware, Bot, Dispatcher, Router
from aiogram.types import (
    BotCommand,
    ErrorEvent,
    KeyboardButton,
    LinkPreviewOptions,
    Message,
    ReplyKeyboardMarkup,
    ReplyKeyboardRemove,
    TelegramObject,
)

from config import COMMANDS, TELEGRAM_BOT_TOKEN
from dialogue import KeyedLock
from errors import CrawlError
from logger import get_logger
from main import catalog_store, process_message
from models import ChatRequest, ChatResponse
from scheduler import start_scheduler
from scraper import refresh_catalog

log = get_logger(__name__)

router = Router()

_MAX_MESSAGE_LENGTH = 4096
_BUTTONS_PER_ROW = 2


def _session_id(chat_id: int) -> str:
    return f"tg_{chat_id}"


# ─── Очерёдность сообщений внутри чата ────────────────────────────────────────

class ChatSerializationMiddleware(BaseMiddleware):
    """
    Не даёт двум обработчикам одного чата работать одновременно.

    aiogram обрабатывает апдейты параллельными задачами. Движок воронки
    сам упорядочивает сообщения сессии, а здесь в том же порядке
    уходят и ответы в чат.
    """

    def __init__(self) -> None:
        self._locks = KeyedLock()

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        chat = getattr(event, "chat", None)
        if chat is None:
            return await handler(event, data)
        async with self._locks.hold(chat.id):
            return await handler(event, data)


# ─── Утилиты ──────────────────────────────────────────────────────────────────

def _build_reply_keyboard(options: list[str]) -> ReplyKeyboardMarkup | ReplyKeyboardRemove:
    """Варианты ответа шага воронки в виде кнопок; без вариантов — убрать клавиатуру."""
    if not options:
        return ReplyKeyboardRemove()
    rows = [
        [KeyboardButton(text=option) for option in options[i:i + _BUTTONS_PER_ROW]]
        for i in range(0, len(options), _BUTTONS_PER_ROW)
    ]
    return ReplyKeyboardMarkup(keyboard=rows, resize_keyboard=True, one_time_keyboard=True)


async def _send_response(message: Message, response: ChatResponse) -> None:
    """Отправляет ответ воронки в чат одним сообщением."""
    text = response.reply
    if len(text) > _MAX_MESSAGE_LENGTH:
        text = text[: _MAX_MESSAGE_LENGTH - 1] + "…"
    await message.answer(
        text,
        reply_markup=_build_reply_keyboard(response.options),
        link_preview_options=LinkPreviewOptions(is_disabled=True),
    )


# ─── Обработчики ──────────────────────────────────────────────────────────────

@router.message()
async def on_message(message: Message) -> None:
    """Любое сообщение (команда, ответ воронки, не текст) — в движок воронки."""
    request = ChatRequest(
        message=message.text,
        session_id=_session_id(message.chat.id),
        source="telegram",
    )
    response = await process_message(request)
    await _send_response(message, response)


@router.errors()
async def on_error(event: ErrorEvent) -> bool:
    """Внутренние ошибки — в лог, пользователю — короткое извинение без подробностей."""
    log.error(
        "Ошибка обработки апдейта %s: %s",
        event.update.update_id,
        event.exception,
        exc_info=event.exception,
    )
    message = event.update.message
    if message is not None:
        await message.answer("Sorry, something went wrong. Please try again or send /cancel.")
    return True


# ─── Запуск бота ──────────────────────────────────────────────────────────────

async def run_bot() -> int:
    """Первичный обход каталога, затем long-polling. Возвращает код выхода."""
    if not TELEGRAM_BOT_TOKEN:
        log.critical("TELEGRAM_BOT_TOKEN не задан в .env!")
        return 1

    try:
        await refresh_catalog(catalog_store)
    except CrawlError as exc:
        log.critical("Первичный обход каталога не удался: %s", exc)
        return 1

    bot = Bot(token=TELEGRAM_BOT_TOKEN)
    dp = Dispatcher()
    dp.message.outer_middleware(ChatSerializationMiddleware())
    dp.include_router(router)
    sched = start_scheduler(catalog_store)

    log.info("Telegram-бот запущен (long-polling) …")
    try:
        await bot.set_my_commands([
            BotCommand(command=name, description=description)
            for name, description in COMMANDS.items()
        ])
        await dp.start_polling(bot, allowed_updates=["message"])
    finally:
        sched.shutdown(wait=False)
        await bot.session.close()
    log.info("Telegram-бот остановлен.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(run_bot()))
