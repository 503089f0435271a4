"""
Конфигурация проекта «Flats bot» (ss.com → Telegram).

Все адреса сайта, CSS-селекторы, настройки парсера и тексты воронки
собраны здесь, чтобы при изменении вёрстки сайта правился только конфиг.
"""

from __future__ import annotations

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ─── Пути проекта ──────────────────────────────────────────────────────────────
BASE_DIR = Path(__file__).resolve().parent
LOGS_DIR = BASE_DIR / "logs"

LOGS_DIR.mkdir(exist_ok=True)

# ─── Логирование ───────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = LOGS_DIR / "bot.log"

# ─── Telegram ──────────────────────────────────────────────────────────────────
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")

# ─── Сайт-источник ─────────────────────────────────────────────────────────────
# Селекторы — фиксированный контракт с вёрсткой ss.com.
# Если сайт поменяет разметку, парсер упадёт с SelectorFailed, а не вернёт пустоту.
BASE_SITE_URL = os.getenv("BASE_SITE_URL", "https://www.ss.com")
ROOT_CATEGORY_PATH = "/en/real-estate/flats/"

CITY_LINK_SELECTOR = "h4.category > a.a_category"
DISTRICT_LINK_SELECTOR = "h4.category > a.a_category"
DEAL_TYPE_SELECTOR = "select.filter_second_line_dv option"
LISTING_TABLE_SELECTOR = "form#filter_frm table[align=center]"
LISTING_ROW_SELECTOR = "tr"
LISTING_PAGE_TEMPLATE = "{path}/page{page}.html"

# Служебные варианты в выпадающем списке сделок, которые не являются типом сделки
DEAL_TYPE_IGNORED: set[str] = {"all", "all deals", "-"}

# ─── Парсер ────────────────────────────────────────────────────────────────────
SCRAPER_REQUEST_DELAY: float = float(os.getenv("SCRAPER_REQUEST_DELAY", "1.0"))  # пауза между запросами (секунды)
SCRAPER_MAX_RETRIES: int = int(os.getenv("SCRAPER_MAX_RETRIES", "2"))            # попыток на один запрос
SCRAPER_TIMEOUT: float = float(os.getenv("SCRAPER_TIMEOUT", "20"))               # таймаут запроса (секунды)
SCRAPER_CONCURRENCY: int = int(os.getenv("SCRAPER_CONCURRENCY", "4"))            # одновременных запросов

LISTING_MAX_RESULTS: int = int(os.getenv("LISTING_MAX_RESULTS", "10"))

# ─── Расписание обновления каталога (APScheduler cron) ─────────────────────────
CATALOG_REFRESH_HOUR = int(os.getenv("CATALOG_REFRESH_HOUR", "4"))
CATALOG_REFRESH_MINUTE = int(os.getenv("CATALOG_REFRESH_MINUTE", "0"))

# ─── Тексты воронки ────────────────────────────────────────────────────────────
COMMANDS: dict[str, str] = {
    "start": "Start the dialogue.",
    "help": "Get help.",
    "cancel": "Cancel the dialogue.",
}

HELP_TEXT = "These commands are supported:\n" + "\n".join(
    f"/{name} — {description}" for name, description in COMMANDS.items()
)

PRICE_RANGE_PROMPT = (
    "Please enter the price range using the following format: 'min_price-max_price'"
)
