"""
Environment-driven configuration for the customer receipts sync.

Env vars (a local .env file is honoured):
  ERP_BASE                     ERPNext base URL, e.g. https://erp.yourdomain.com
  ERP_API_KEY / ERP_API_SECRET token credentials
  ERP_TIMEOUT                  request timeout in seconds (default: 30)
  RECEIPT_DOCTYPE              doctype holding receipts (default: POS Receipt)
  RECEIPT_TIMESTAMP_FIELD      ordering/watermark field (default: date)
  RECEIPT_CACHE_PATH           SQLite cache file (default: receipts_cache.db)
  RECEIPT_PAGE_SIZE            page length for list calls (default: 100)
  RECEIPT_PAGE_DELAY           pause between pages, seconds (default: 0.1)
  RECEIPT_RATE_LIMIT_DELAY     first backoff after a 429, seconds (default: 2)
  RECEIPT_RATE_LIMIT_MAX_DELAY backoff ceiling, seconds (default: 30)
  RECEIPT_RATE_LIMIT_ATTEMPTS  attempts per page before giving up (default: 5)
  RECEIPT_DELTA_BUFFER         delta query skew buffer, seconds (default: 1)
  RECEIPT_STALE_AFTER          refresh staleness window, seconds (default: 3600)
  RECEIPT_LOG_LEVEL            logging level name (default: INFO)
  SYNC_INTERVAL                seconds between worker loops (default: 300)
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float) -> float:
    raw = _env_string(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Invalid %s=%r; using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env_string(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Invalid %s=%r; using %s", name, raw, default)
        return default


@dataclass
class SyncConfig:
    erp_base: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    request_timeout: float = 30.0
    doctype: str = "POS Receipt"
    timestamp_field: str = "date"
    cache_path: str = "receipts_cache.db"
    page_size: int = 100
    page_delay: float = 0.1
    rate_limit_delay: float = 2.0
    rate_limit_max_delay: float = 30.0
    rate_limit_attempts: int = 5
    delta_buffer: float = 1.0
    stale_after: float = 3600.0
    log_level: str = "INFO"
    sync_interval: float = 300.0

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "SyncConfig":
        if dotenv:
            load_dotenv()
        return cls(
            erp_base=_env_string("ERP_BASE"),
            api_key=_env_string("ERP_API_KEY"),
            api_secret=_env_string("ERP_API_SECRET"),
            request_timeout=_env_float("ERP_TIMEOUT", 30.0),
            doctype=_env_string("RECEIPT_DOCTYPE", "POS Receipt"),
            timestamp_field=_env_string("RECEIPT_TIMESTAMP_FIELD", "date"),
            cache_path=_env_string("RECEIPT_CACHE_PATH", "receipts_cache.db"),
            page_size=_env_int("RECEIPT_PAGE_SIZE", 100),
            page_delay=_env_float("RECEIPT_PAGE_DELAY", 0.1),
            rate_limit_delay=_env_float("RECEIPT_RATE_LIMIT_DELAY", 2.0),
            rate_limit_max_delay=_env_float("RECEIPT_RATE_LIMIT_MAX_DELAY", 30.0),
            rate_limit_attempts=_env_int("RECEIPT_RATE_LIMIT_ATTEMPTS", 5),
            delta_buffer=_env_float("RECEIPT_DELTA_BUFFER", 1.0),
            stale_after=_env_float("RECEIPT_STALE_AFTER", 3600.0),
            log_level=(_env_string("RECEIPT_LOG_LEVEL", "INFO") or "INFO").upper(),
            sync_interval=_env_float("SYNC_INTERVAL", 300.0),
        )

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level, logging.INFO)
