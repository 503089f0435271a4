"""
Единая настройка логирования для всех модулей проекта.

Логи пишутся одновременно в файл (logs/bot.log) и в консоль.
Логи библиотек (aiogram, httpx, APScheduler) идут в те же обработчики,
но с собственными уровнями: httpx на INFO пишет каждую загрузку страницы.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler

from config import LOG_FILE, LOG_LEVEL

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-25s | %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

_LIBRARY_LEVELS: dict[str, int] = {
    "aiogram": logging.INFO,
    "apscheduler": logging.WARNING,
    "httpx": logging.WARNING,
}

_formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FMT)

_file_handler = RotatingFileHandler(
    LOG_FILE,
    maxBytes=10 * 1024 * 1024,  # 10 МБ
    backupCount=5,
    encoding="utf-8",
)
_file_handler.setFormatter(_formatter)

_console_handler = logging.StreamHandler(sys.stdout)
_console_handler.setFormatter(_formatter)


def _attach(logger: logging.Logger, level: int | str) -> logging.Logger:
    if not logger.handlers:
        logger.setLevel(level)
        logger.addHandler(_file_handler)
        logger.addHandler(_console_handler)
        logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Возвращает логгер с общими обработчиками."""
    return _attach(logging.getLogger(name), LOG_LEVEL)


for _name, _level in _LIBRARY_LEVELS.items():
    _attach(logging.getLogger(_name), _level)
