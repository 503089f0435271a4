import asyncio
from types import SimpleNamespace

from aiogram.types import ReplyKeyboardMarkup, ReplyKeyboardRemove

from telegram_bot import ChatSerializationMiddleware, _build_reply_keyboard


def event(chat_id, text):
    return SimpleNamespace(chat=SimpleNamespace(id=chat_id), text=text)


def run_concurrently(middleware, events, delays):
    log: list[str] = []

    async def handler(evt, data):
        log.append(f"start:{evt.text}")
        await asyncio.sleep(delays[evt.text])
        log.append(f"end:{evt.text}")
        return evt.text

    async def run():
        tasks = [asyncio.create_task(middleware(handler, evt, {})) for evt in events]
        return await asyncio.gather(*tasks)

    results = asyncio.run(run())
    return log, results


def test_same_chat_messages_are_sequential():
    middleware = ChatSerializationMiddleware()

    log, results = run_concurrently(
        middleware,
        [event(1, "Riga"), event(1, "Centre")],
        {"Riga": 0.05, "Centre": 0},
    )

    assert log == ["start:Riga", "end:Riga", "start:Centre", "end:Centre"]
    assert results == ["Riga", "Centre"]
    assert len(middleware._locks) == 0


def test_different_chats_do_not_wait_for_each_other():
    middleware = ChatSerializationMiddleware()

    log, _ = run_concurrently(
        middleware,
        [event(1, "slow"), event(2, "fast")],
        {"slow": 0.05, "fast": 0},
    )

    assert log.index("end:fast") < log.index("end:slow")


def test_event_without_chat_passes_through():
    middleware = ChatSerializationMiddleware()

    async def handler(evt, data):
        return "ok"

    assert asyncio.run(middleware(handler, SimpleNamespace(), {})) == "ok"


def test_reply_keyboard_from_options():
    keyboard = _build_reply_keyboard(["Centre", "Teika", "Vecriga"])

    assert isinstance(keyboard, ReplyKeyboardMarkup)
    assert [[b.text for b in row] for row in keyboard.keyboard] == [["Centre", "Teika"], ["Vecriga"]]
    assert isinstance(_build_reply_keyboard([]), ReplyKeyboardRemove)
