"""
Воронка подбора квартиры (State Machine).

    Start ─/start→ AwaitingCity ─город→ AwaitingDistrict ─район→
    AwaitingDealType ─тип сделки→ AwaitingPriceRange ─«min-max»→ Done

- advance() — чистая функция (состояние, текст, каталог) → переход + ответ,
  без сети и без Telegram, поэтому тестируется напрямую.
- DialogueEngine — хранит состояния сессий, читает каталог под блокировкой
  и по завершении воронки загружает объявления.

Неверный ввод никогда не сдвигает состояние: пользователь получает
пояснение и пробует ещё раз. /cancel из любого состояния возвращает в Start.
Done ведёт себя как Start: после выдачи можно сразу начать новый подбор.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Optional

from pydantic import BaseModel

from catalog import CatalogStore
from config import HELP_TEXT, LISTING_MAX_RESULTS, PRICE_RANGE_PROMPT
from errors import ExtractionError, FetchError, ParseError, StateError
from logger import get_logger
from models import (
    UINT32_MAX,
    Catalog,
    ChatAction,
    ChatResponse,
    ConversationState,
    Flat,
    FlatCriteria,
    Step,
)
from scraper import ListingFetcher

log = get_logger(__name__)


class Transition(BaseModel):
    state: ConversationState
    response: ChatResponse


# ─── Утилиты ───────────────────────────────────────────────────────────────────

def _bullets(names: list[str]) -> str:
    return "\n".join(f"• {name}" for name in names)


def _command(text: str) -> Optional[str]:
    """«/start», «/Start@flats_bot extra» → «start»; обычный текст → None."""
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    word = stripped.split()[0][1:]
    return word.split("@", 1)[0].lower()


def _require(state: ConversationState, *fields: str) -> None:
    missing = [f for f in fields if getattr(state, f) is None]
    if missing:
        raise StateError(f"state {state.step.value} lacks {', '.join(missing)}")


_PRICE_RANGE_RE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")


def parse_price_range(text: str) -> tuple[int, int]:
    """«100-500» → (100, 500). Диапазон проверяется на переполнение и порядок."""
    m = _PRICE_RANGE_RE.match(text)
    if not m:
        raise ParseError(f"'{text.strip()}' is not a price range")
    price_from, price_to = int(m.group(1)), int(m.group(2))
    if price_from > UINT32_MAX or price_to > UINT32_MAX:
        raise ParseError(f"Prices must not exceed {UINT32_MAX}")
    if price_from > price_to:
        raise ParseError("Minimum price must not exceed maximum price")
    return price_from, price_to


def _stay(state: ConversationState, reply: str, options: Optional[list[str]] = None) -> Transition:
    return Transition(
        state=state,
        response=ChatResponse(reply=reply, action=ChatAction.ASK_QUESTION, options=options or []),
    )


# ─── Переходы ──────────────────────────────────────────────────────────────────

def _on_command(
    state: ConversationState,
    command: str,
    catalog: Catalog,
    catalog_ready: bool,
) -> Transition:
    if command == "start":
        if not catalog_ready:
            return Transition(
                state=state,
                response=ChatResponse(reply="The catalog is still loading. Please try /start again in a minute."),
            )
        cities = catalog.city_names()
        return Transition(
            state=ConversationState.awaiting_city(),
            response=ChatResponse(
                reply=f"Let's start! Please select a city: \n\n{_bullets(cities)}",
                action=ChatAction.ASK_QUESTION,
                options=cities,
            ),
        )

    if command == "cancel":
        return Transition(
            state=ConversationState.start(),
            response=ChatResponse(reply="Dialogue cancelled. Send /start to begin again."),
        )

    if command == "help":
        return Transition(state=state, response=ChatResponse(reply=HELP_TEXT))

    return Transition(
        state=state,
        response=ChatResponse(reply=f"Unknown command /{command}.\n{HELP_TEXT}"),
    )


def _on_city(state: ConversationState, text: str, catalog: Catalog) -> Transition:
    city = catalog.city(text)
    if city is None:
        return _stay(state, f"City '{text.strip()}' name is invalid. Please try again!", catalog.city_names())

    districts = city.district_names()
    if not districts:
        return Transition(
            state=ConversationState.awaiting_district(city.name),
            response=ChatResponse(
                reply=f"No districts are listed for {city.name} right now. Send /cancel to start over.",
                action=ChatAction.ASK_QUESTION,
            ),
        )
    return Transition(
        state=ConversationState.awaiting_district(city.name),
        response=ChatResponse(
            reply=f"Please select a district: \n\n{_bullets(districts)}",
            action=ChatAction.ASK_QUESTION,
            options=districts,
        ),
    )


def _on_district(state: ConversationState, text: str, catalog: Catalog) -> Transition:
    _require(state, "city")
    city = catalog.city(state.city)
    if city is None:
        return _stay(state, "City not found. Send /cancel to start over.")

    district = city.district(text)
    if district is None:
        return _stay(state, f"District '{text.strip()}' not found. Please try again!", city.district_names())

    deal_types = district.deal_type_names()
    return Transition(
        state=ConversationState.awaiting_deal_type(city.name, district.name),
        response=ChatResponse(
            reply=f"Please select a deal type: \n\n{_bullets(deal_types)}",
            action=ChatAction.ASK_QUESTION,
            options=deal_types,
        ),
    )


def _on_deal_type(state: ConversationState, text: str, catalog: Catalog) -> Transition:
    _require(state, "city", "district")
    city = catalog.city(state.city)
    if city is None:
        return _stay(state, "City not found. Send /cancel to start over.")
    district = city.district(state.district)
    if district is None:
        return _stay(state, "District not found. Send /cancel to start over.")

    deal_type = district.deal_type(text)
    if deal_type is None:
        return _stay(state, f"Deal type '{text.strip()}' not found. Please try again!", district.deal_type_names())

    return Transition(
        state=ConversationState.awaiting_price_range(city.name, district.name, deal_type.name),
        response=ChatResponse(reply=PRICE_RANGE_PROMPT, action=ChatAction.ASK_QUESTION),
    )


def _on_price_range(state: ConversationState, text: str, catalog: Catalog) -> Transition:
    _require(state, "city", "district", "deal_type")
    city = catalog.city(state.city)
    district = city.district(state.district) if city else None
    deal_type = district.deal_type(state.deal_type) if district else None
    if deal_type is None:
        return _stay(state, "The selected offer is no longer available. Send /cancel to start over.")

    try:
        price_from, price_to = parse_price_range(text)
    except ParseError as exc:
        return _stay(state, f"{exc}. {PRICE_RANGE_PROMPT}")

    criteria = FlatCriteria(
        district_path=district.path,
        city=city.name,
        district=district.name,
        deal_type=deal_type.name,
        deal_type_path=deal_type.path,
        price_from=price_from,
        price_to=price_to,
    )
    return Transition(
        state=ConversationState.done(criteria),
        response=ChatResponse(reply="Searching for flats…", action=ChatAction.INFO),
    )


_STEP_HANDLERS = {
    Step.AWAITING_CITY: _on_city,
    Step.AWAITING_DISTRICT: _on_district,
    Step.AWAITING_DEAL_TYPE: _on_deal_type,
    Step.AWAITING_PRICE_RANGE: _on_price_range,
}


def advance(
    state: ConversationState,
    text: Optional[str],
    catalog: Catalog,
    catalog_ready: bool = True,
) -> Transition:
    """
    Один шаг воронки.

    text=None означает не текстовое сообщение (стикер, фото и т.п.).
    Каталог читается «вживую»: если после обновления выбранный город исчез,
    пользователь получит ошибку, а состояние останется прежним.
    """
    if text is None:
        return _stay(state, "Message should be a plain text")

    command = _command(text)
    if command is not None:
        return _on_command(state, command, catalog, catalog_ready)

    if state.at_rest:
        return Transition(
            state=state,
            response=ChatResponse(reply=f"Unhandled message. Available commands:\n{HELP_TEXT}"),
        )

    return _STEP_HANDLERS[state.step](state, text, catalog)


# ─── Сессии ────────────────────────────────────────────────────────────────────

class SessionStore:
    """In-memory состояния диалогов: session_id → ConversationState."""

    def __init__(self) -> None:
        self._states: dict[str, ConversationState] = {}

    def get(self, session_id: str) -> ConversationState:
        return self._states.get(session_id, ConversationState.start())

    def set(self, session_id: str, state: ConversationState) -> None:
        self._states[session_id] = state

    def reset(self, session_id: str) -> None:
        self._states.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._states)


class KeyedLock:
    """
    По одному asyncio.Lock на ключ (сессию, чат).

    asyncio.Lock пропускает ожидающих в порядке поступления, поэтому
    сообщения одного ключа обрабатываются в порядке отправки. Блокировка
    удаляется, когда её никто не держит и не ждёт.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ─── Выдача ────────────────────────────────────────────────────────────────────

def _format_flat(flat: Flat) -> str:
    return (
        f"🏠 {flat.street_name} — {flat.price}\n"
        f"{flat.rooms} rooms, {flat.square_meters} m², floor {flat.floor}, {flat.series}\n"
        f"{flat.url}"
    )


def _listings_response(criteria: FlatCriteria, flats: list[Flat], max_results: int) -> ChatResponse:
    where = f"{criteria.district}, {criteria.city} ({criteria.deal_type}, {criteria.price_from}-{criteria.price_to})"
    if not flats:
        return ChatResponse(
            reply=f"No flats found in {where}. Send /start to search again.",
            action=ChatAction.SHOW_LISTINGS,
        )
    shown = flats[:max_results]
    header = f"Found {len(flats)} flats in {where}"
    if len(flats) > len(shown):
        header += f", showing the first {len(shown)}"
    body = "\n\n".join(_format_flat(flat) for flat in shown)
    return ChatResponse(
        reply=f"{header}:\n\n{body}\n\nSend /start to search again.",
        action=ChatAction.SHOW_LISTINGS,
        flats=shown,
    )


# ─── Движок ────────────────────────────────────────────────────────────────────

class DialogueEngine:
    def __init__(
        self,
        store: CatalogStore,
        fetcher: ListingFetcher,
        sessions: Optional[SessionStore] = None,
        max_results: int = LISTING_MAX_RESULTS,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.sessions = sessions or SessionStore()
        self.max_results = max_results
        self._session_locks = KeyedLock()

    async def handle(self, session_id: str, text: Optional[str]) -> ChatResponse:
        """
        Обрабатывает одно сообщение: ровно один ответ, состояние сохраняется
        до возврата. Сообщения одной сессии применяются в порядке поступления.
        """
        async with self._session_locks.hold(session_id):
            return await self._handle(session_id, text)

    async def _handle(self, session_id: str, text: Optional[str]) -> ChatResponse:
        state = self.sessions.get(session_id)

        try:
            async with self.store.read() as catalog:
                transition = advance(state, text, catalog, catalog_ready=self.store.is_ready)
        except StateError as exc:
            log.warning("Сессия %s: несогласованное состояние (%s), сброс", session_id, exc)
            self.sessions.reset(session_id)
            return ChatResponse(reply="Something went wrong with this dialogue. Send /start to begin again.")

        if transition.state.step == Step.DONE and state.step == Step.AWAITING_PRICE_RANGE:
            transition = await self._complete(state, transition)

        self.sessions.set(session_id, transition.state)
        if transition.state.step != state.step:
            log.info("Сессия %s: %s → %s", session_id, state.step.value, transition.state.step.value)
        return transition.response

    async def _complete(self, previous: ConversationState, transition: Transition) -> Transition:
        """Загружает объявления; при ошибке возвращает к вводу диапазона цен."""
        criteria = transition.state.criteria
        log.info("Воронка завершена | criteria=%s", criteria.model_dump())
        try:
            flats = await self.fetcher.fetch(criteria)
        except (FetchError, ExtractionError) as exc:
            log.error("Не удалось загрузить объявления: %s", exc)
            return _stay(
                previous,
                "Could not load listings right now. Please try again or enter another price range.",
            )
        return Transition(
            state=transition.state,
            response=_listings_response(criteria, flats, self.max_results),
        )
