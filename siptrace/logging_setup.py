from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

LOG_FILE = Path("logs/app.log")
DEFAULT_CATEGORY = "CONFIG"
CATEGORIES = {
    "CONFIG",
    "SEARCH",
    "CORRELATE",
    "RECONCILE",
    "RENDER",
    "STORE",
    "ERRORS",
}
NOISY_LOGGERS = ("urllib3", "requests", "scapy.runtime", "scapy.loading")

# Propagated automatically within async tasks; threads must re-set explicitly.
_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")
_category_var: contextvars.ContextVar[str] = contextvars.ContextVar("category", default=DEFAULT_CATEGORY)


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_category() -> str:
    return _category_var.get()


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[None]:
    token = _correlation_id_var.set(correlation_id or short_uuid())
    try:
        yield
    finally:
        _correlation_id_var.reset(token)


@contextlib.contextmanager
def category_context(category: str) -> Iterator[None]:
    token = _category_var.set(category if category in CATEGORIES else DEFAULT_CATEGORY)
    try:
        yield
    finally:
        _category_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category
      - correlation_id
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not getattr(record, "category", None):
            record.category = get_category()
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def setup_logging(log_file: Optional[Path] = LOG_FILE) -> None:
    """
    Central logging setup.

    Format:
      %(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s |
      %(filename)s:%(lineno)d %(funcName)s() | %(message)s

    Passing log_file=None keeps logging on the console only.
    """
    fmt = (
        "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
        "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
    )
    formatter = logging.Formatter(fmt=fmt)

    level_name = os.environ.get("SIPTRACE_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    external_level_name = os.environ.get("SIPTRACE_EXTERNAL_LIB_LOG_LEVEL", "WARNING").upper()
    external_level = getattr(logging, external_level_name, logging.WARNING)

    root_logger = logging.getLogger()

    # Avoid double-installation; still allow runtime level update.
    if getattr(root_logger, "_siptrace_logging_installed", False):
        root_logger.setLevel(level)
        for h in root_logger.handlers:
            h.setLevel(level)
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(external_level)
        return
    root_logger.setLevel(level)

    enricher = ContextEnricherFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(enricher)
    root_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=10,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(enricher)
        root_logger.addHandler(file_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(external_level)
    root_logger._siptrace_logging_installed = True  # type: ignore[attr-defined]
