"""
Order sync configuration.
All knobs come from the environment (backend/.env is loaded if present).
Defaults mirror Shopify's documented REST limits for the orders endpoint.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or '').strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or '').strip()
    return float(raw) if raw else default


@dataclass
class SyncSettings:
    supabase_url: str = ''
    supabase_key: str = ''

    # Supabase tables
    orders_table: str = 'shopify_orders'
    connections_table: str = 'shopify_connections'
    status_table: str = 'sync_status'

    # Shopify Admin API
    shopify_api_version: str = '2025-10'
    page_size: int = 250
    request_timeout: float = 30.0
    count_timeout: float = 10.0
    count_fallback: int = 1000

    # Pacing (seconds)
    full_sync_delay: float = 120.0
    incremental_delay: float = 30.0
    rate_limit_cooldown: float = 300.0
    rate_limit_jitter: float = 0.0
    max_rate_limit_retries: int = 5

    # Windows
    backfill_days: int = 90
    incremental_overlap_hours: int = 1
    incremental_fallback_hours: int = 24

    # Safety cap on pages fetched in a single pass
    max_pages_per_pass: int = 100

    # Scheduler
    daily_sync_interval: float = 24 * 60 * 60
    scheduler_stagger: float = 1.0

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            supabase_url=(os.environ.get('SUPABASE_URL') or '').strip(),
            supabase_key=(os.environ.get('SUPABASE_SERVICE_KEY') or '').strip(),
            orders_table=os.environ.get('SHOPIFY_ORDERS_TABLE', 'shopify_orders'),
            connections_table=os.environ.get('SHOPIFY_CONNECTIONS_TABLE', 'shopify_connections'),
            status_table=os.environ.get('SYNC_STATUS_TABLE', 'sync_status'),
            shopify_api_version=os.environ.get('SHOPIFY_API_VERSION', '2025-10'),
            page_size=_env_int('SHOPIFY_PAGE_SIZE', 250),
            request_timeout=_env_float('SHOPIFY_REQUEST_TIMEOUT', 30.0),
            count_timeout=_env_float('SHOPIFY_COUNT_TIMEOUT', 10.0),
            count_fallback=_env_int('SHOPIFY_COUNT_FALLBACK', 1000),
            full_sync_delay=_env_float('FULL_SYNC_DELAY', 120.0),
            incremental_delay=_env_float('INCREMENTAL_SYNC_DELAY', 30.0),
            rate_limit_cooldown=_env_float('RATE_LIMIT_COOLDOWN', 300.0),
            rate_limit_jitter=_env_float('RATE_LIMIT_JITTER', 0.0),
            max_rate_limit_retries=_env_int('MAX_RATE_LIMIT_RETRIES', 5),
            backfill_days=_env_int('BACKFILL_DAYS', 90),
            incremental_overlap_hours=_env_int('INCREMENTAL_OVERLAP_HOURS', 1),
            incremental_fallback_hours=_env_int('INCREMENTAL_FALLBACK_HOURS', 24),
            max_pages_per_pass=_env_int('MAX_PAGES_PER_PASS', 100),
            daily_sync_interval=_env_float('DAILY_SYNC_INTERVAL', 24 * 60 * 60),
            scheduler_stagger=_env_float('SCHEDULER_STAGGER', 1.0),
        )


def configure_logging(level: str = None):
    """Configure root logging once for the worker process."""
    level_name = (level or os.environ.get('LOG_LEVEL') or 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
    )
    # httpx logs every request at INFO; pages are logged by the engine already
    logging.getLogger('httpx').setLevel(logging.WARNING)
