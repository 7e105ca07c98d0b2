"""Database connections and schema bootstrap."""
from __future__ import annotations

import json
import logging
from typing import Optional

import asyncpg
import psycopg2
from asyncpg import Pool

from .config import get_database_url
from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS scrape_jobs (
    id VARCHAR(64) PRIMARY KEY,
    device_id VARCHAR(100) NOT NULL,
    requesting_user_id VARCHAR(100) NOT NULL,
    step VARCHAR(20) NOT NULL DEFAULT 'searching',
    request JSONB NOT NULL DEFAULT '{}'::jsonb,
    target_id TEXT,
    autocomplete_options JSONB,
    slug_conflict JSONB,
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    requeue_count INTEGER NOT NULL DEFAULT 0,
    progress_stage VARCHAR(50),
    progress_percent INTEGER,
    last_log TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    finished_at TIMESTAMPTZ,
    archived_at TIMESTAMPTZ,
    bulk_id VARCHAR(64)
);

ALTER TABLE scrape_jobs ADD COLUMN IF NOT EXISTS bulk_id VARCHAR(64);

CREATE UNIQUE INDEX IF NOT EXISTS uq_scrape_jobs_active_device
    ON scrape_jobs(device_id) WHERE step IN ('searching', 'selecting', 'scraping');
CREATE INDEX IF NOT EXISTS idx_scrape_jobs_step_updated
    ON scrape_jobs(step, updated_at);
CREATE INDEX IF NOT EXISTS idx_scrape_jobs_user
    ON scrape_jobs(requesting_user_id, updated_at DESC);

CREATE TABLE IF NOT EXISTS scrape_queue_items (
    id BIGSERIAL PRIMARY KEY,
    job_id VARCHAR(64) NOT NULL REFERENCES scrape_jobs(id) ON DELETE CASCADE,
    device_id VARCHAR(100) NOT NULL,
    kind VARCHAR(20) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    attempt INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    next_run_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    claimed_by VARCHAR(100),
    claimed_at TIMESTAMPTZ,
    last_error TEXT,
    last_error_code VARCHAR(50),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    completed_at TIMESTAMPTZ,
    bulk_id VARCHAR(64)
);

ALTER TABLE scrape_queue_items ADD COLUMN IF NOT EXISTS bulk_id VARCHAR(64);

CREATE INDEX IF NOT EXISTS idx_queue_items_eligible
    ON scrape_queue_items(status, next_run_at, id);
CREATE INDEX IF NOT EXISTS idx_queue_items_job
    ON scrape_queue_items(job_id);
CREATE INDEX IF NOT EXISTS idx_queue_items_bulk
    ON scrape_queue_items(bulk_id) WHERE bulk_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_scrape_jobs_bulk
    ON scrape_jobs(bulk_id) WHERE bulk_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS bulk_jobs (
    id VARCHAR(64) PRIMARY KEY,
    user_id VARCHAR(100) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    total INTEGER NOT NULL DEFAULT 0,
    skipped JSONB NOT NULL DEFAULT '[]'::jsonb,
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    finished_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS entity_data_raw (
    id BIGSERIAL PRIMARY KEY,
    device_id VARCHAR(100) NOT NULL,
    source VARCHAR(50) NOT NULL,
    data_kind VARCHAR(50) NOT NULL,
    data JSONB NOT NULL,
    fetched_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    superseded_at TIMESTAMPTZ
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_entity_data_raw_current
    ON entity_data_raw(device_id, source, data_kind) WHERE superseded_at IS NULL;

CREATE TABLE IF NOT EXISTS entity_data (
    id BIGSERIAL PRIMARY KEY,
    device_id VARCHAR(100) NOT NULL,
    data_kind VARCHAR(50) NOT NULL,
    data JSONB NOT NULL,
    sources JSONB NOT NULL DEFAULT '[]'::jsonb,
    computed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT uq_entity_data UNIQUE (device_id, data_kind)
);

CREATE TABLE IF NOT EXISTS price_quotes (
    id BIGSERIAL PRIMARY KEY,
    device_id VARCHAR(100) NOT NULL,
    source VARCHAR(50) NOT NULL,
    offer_id VARCHAR(200) NOT NULL,
    price NUMERIC(12, 2) NOT NULL,
    currency VARCHAR(10),
    seller TEXT,
    url TEXT,
    redirect_type VARCHAR(50),
    observed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT uq_price_quote_observation UNIQUE (source, offer_id, observed_at)
);

CREATE INDEX IF NOT EXISTS idx_price_quotes_device
    ON price_quotes(device_id, observed_at DESC);

CREATE TABLE IF NOT EXISTS html_cache (
    slug VARCHAR(200) PRIMARY KEY,
    url TEXT NOT NULL,
    html TEXT NOT NULL,
    fetched_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS catalog_devices (
    id VARCHAR(100) PRIMARY KEY,
    name TEXT NOT NULL,
    brand VARCHAR(100),
    target_id VARCHAR(200) UNIQUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS catalog_targets (
    target_id VARCHAR(200) PRIMARY KEY,
    name TEXT NOT NULL,
    source_url TEXT,
    discovered_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_catalog_targets_name
    ON catalog_targets(LOWER(name));
"""


def require_database_url(dsn: Optional[str] = None) -> str:
    dsn = dsn or get_database_url()
    if not dsn:
        raise ConfigurationError("DATABASE_URL (or PG_DSN) is not set")
    return dsn


def get_db_connection(dsn: Optional[str] = None):
    """Synchronous psycopg2 connection for schema and batch maintenance."""
    return psycopg2.connect(require_database_url(dsn))


def ensure_schema(dsn: Optional[str] = None) -> None:
    """Create all tables and indexes if they do not exist."""
    with get_db_connection(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()
    LOGGER.info("Ensured scraper schema exists")


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def create_pool(dsn: Optional[str] = None, min_size: int = 2, max_size: int = 10) -> Pool:
    """asyncpg pool with JSONB mapped to Python objects."""
    return await asyncpg.create_pool(
        require_database_url(dsn),
        min_size=min_size,
        max_size=max_size,
        init=_init_connection,
    )
