"""
Pydantic-модели данных проекта.

Узлы каталога (City → District → DealType) заморожены: равенство и хеш
структурные, поэтому два обхода одинаковой разметки дают равные каталоги.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

UINT32_MAX = 2**32 - 1

_NBSP = "\u00a0"
_CITY_SPLIT_RE = re.compile(r"\s+and\s+")


# ─── Нормализация имён ─────────────────────────────────────────────────────────

def clean_text(text: str | None) -> str:
    """Заменяет неразрывные пробелы обычными и схлопывает пробельные символы."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text.replace(_NBSP, " ")).strip()


def city_display_name(text: str | None) -> str:
    """
    Имя города для каталога: берётся часть до первого слова «and».

    На сайте часть разделов называется «Riga and Pieriga» — в каталоге
    и при вводе пользователя такой город фигурирует как «Riga».
    """
    return _CITY_SPLIT_RE.split(clean_text(text), maxsplit=1)[0]


def match_key(name: str) -> str:
    """Ключ сравнения: регистр и лишние пробелы не важны."""
    return " ".join(name.split()).casefold()


def _find(items: Iterable[Any], name: str) -> Optional[Any]:
    key = match_key(name)
    for item in items:
        if match_key(item.name) == key:
            return item
    return None


# ─── Каталог ───────────────────────────────────────────────────────────────────

class DealType(BaseModel):
    """Тип сделки (продажа, аренда …) внутри района."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str = Field("", description="Ссылка на выдачу этого типа сделки, если сайт её даёт")


class District(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: str = Field(..., description="Относительная ссылка на раздел района")
    deal_types: frozenset[DealType] = frozenset()

    def deal_type(self, name: str) -> Optional[DealType]:
        return _find(self.deal_types, name)

    def deal_type_names(self) -> list[str]:
        return sorted(d.name for d in self.deal_types)


class City(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    districts: frozenset[District] = frozenset()

    def district(self, name: str) -> Optional[District]:
        return _find(self.districts, name)

    def district_names(self) -> list[str]:
        return sorted(d.name for d in self.districts)


class Catalog(BaseModel):
    """Корень дерева City → District → DealType."""

    model_config = ConfigDict(frozen=True)

    cities: frozenset[City] = frozenset()

    def city(self, name: str) -> Optional[City]:
        return _find(self.cities, name)

    def city_names(self) -> list[str]:
        return sorted(c.name for c in self.cities)

    def stats(self) -> dict[str, int]:
        districts = [d for c in self.cities for d in c.districts]
        return {
            "cities": len(self.cities),
            "districts": len(districts),
            "deal_types": sum(len(d.deal_types) for d in districts),
        }


class CrawlReport(BaseModel):
    """Итог обхода: размеры каталога и пропущенные из-за ошибок узлы."""

    cities: int = 0
    districts: int = 0
    deal_types: int = 0
    omitted: list[str] = Field(default_factory=list, description="Пути городов/районов, пропущенных из-за ошибок")


# ─── Поиск квартир ─────────────────────────────────────────────────────────────

class FlatCriteria(BaseModel):
    """Полностью заданный запрос пользователя по итогам воронки."""

    model_config = ConfigDict(frozen=True)

    district_path: str
    city: str
    district: str
    deal_type: str
    deal_type_path: str = ""
    price_from: int = Field(..., ge=0, le=UINT32_MAX)
    price_to: int = Field(..., ge=0, le=UINT32_MAX)

    @model_validator(mode="after")
    def _check_range(self) -> "FlatCriteria":
        if self.price_from > self.price_to:
            raise ValueError("price_from must not exceed price_to")
        return self


class Flat(BaseModel):
    """Одна строка таблицы объявлений."""

    street_name: str
    price: str
    url: str
    image_url: str = ""
    rooms: int = Field(0, ge=0)
    square_meters: int = Field(0, ge=0)
    floor: int = Field(0, ge=0)
    series: str = ""


# ─── Состояние диалога ─────────────────────────────────────────────────────────

class Step(str, Enum):
    START = "start"
    AWAITING_CITY = "awaiting_city"
    AWAITING_DISTRICT = "awaiting_district"
    AWAITING_DEAL_TYPE = "awaiting_deal_type"
    AWAITING_PRICE_RANGE = "awaiting_price_range"
    DONE = "done"


class ConversationState(BaseModel):
    """
    Шаг воронки с накопленными ответами.

    Поля city / district / deal_type / criteria заполнены ровно для тех шагов,
    которые их несут; создавать состояния лучше через конструкторы ниже.
    """

    model_config = ConfigDict(frozen=True)

    step: Step = Step.START
    city: Optional[str] = None
    district: Optional[str] = None
    deal_type: Optional[str] = None
    criteria: Optional[FlatCriteria] = None

    @classmethod
    def start(cls) -> "ConversationState":
        return cls()

    @classmethod
    def awaiting_city(cls) -> "ConversationState":
        return cls(step=Step.AWAITING_CITY)

    @classmethod
    def awaiting_district(cls, city: str) -> "ConversationState":
        return cls(step=Step.AWAITING_DISTRICT, city=city)

    @classmethod
    def awaiting_deal_type(cls, city: str, district: str) -> "ConversationState":
        return cls(step=Step.AWAITING_DEAL_TYPE, city=city, district=district)

    @classmethod
    def awaiting_price_range(cls, city: str, district: str, deal_type: str) -> "ConversationState":
        return cls(step=Step.AWAITING_PRICE_RANGE, city=city, district=district, deal_type=deal_type)

    @classmethod
    def done(cls, criteria: FlatCriteria) -> "ConversationState":
        return cls(step=Step.DONE, criteria=criteria)

    @property
    def at_rest(self) -> bool:
        """Вне воронки: до /start или после её завершения."""
        return self.step in (Step.START, Step.DONE)


# ─── API: запрос / ответ ──────────────────────────────────────────────────────

class ChatAction(str, Enum):
    ASK_QUESTION = "ask_question"
    SHOW_LISTINGS = "show_listings"
    INFO = "info"


class ChatRequest(BaseModel):
    message: Optional[str] = None  # None — не текст (стикер, фото …)
    session_id: str
    source: str = "web"  # web | telegram


class ChatResponse(BaseModel):
    reply: str
    action: ChatAction = ChatAction.INFO
    options: list[str] = Field(default_factory=list)
    flats: list[Flat] = Field(default_factory=list)
