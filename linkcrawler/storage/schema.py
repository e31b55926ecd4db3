"""
Table definitions for the crawl request, task queue and page graph tables.
"""

SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS crawl_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL,
        levels INTEGER NOT NULL CHECK (levels >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        crawl_request_id INTEGER NOT NULL REFERENCES crawl_requests (id),
        page_url TEXT NOT NULL,
        current_level INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'NOT_STARTED',
        seen_url INTEGER NOT NULL DEFAULT 0,
        claimed_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_claim ON tasks (status, crawl_request_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_crawl_request ON tasks (crawl_request_id)",
    """
    CREATE TABLE IF NOT EXISTS page_nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL UNIQUE,
        crawled_status INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS edges (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source_id INTEGER NOT NULL REFERENCES page_nodes (id),
        target_id INTEGER NOT NULL REFERENCES page_nodes (id),
        UNIQUE (source_id, target_id),
        CHECK (source_id <> target_id)
    )
    """,
]

POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS crawl_requests (
        id SERIAL PRIMARY KEY,
        url TEXT NOT NULL,
        levels INTEGER NOT NULL CHECK (levels >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id SERIAL PRIMARY KEY,
        crawl_request_id INTEGER NOT NULL REFERENCES crawl_requests (id),
        page_url TEXT NOT NULL,
        current_level INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'NOT_STARTED',
        seen_url BOOLEAN NOT NULL DEFAULT FALSE,
        claimed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_claim ON tasks (status, crawl_request_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_crawl_request ON tasks (crawl_request_id)",
    """
    CREATE TABLE IF NOT EXISTS page_nodes (
        id SERIAL PRIMARY KEY,
        url TEXT NOT NULL UNIQUE,
        crawled_status BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS edges (
        id SERIAL PRIMARY KEY,
        source_id INTEGER NOT NULL REFERENCES page_nodes (id),
        target_id INTEGER NOT NULL REFERENCES page_nodes (id),
        UNIQUE (source_id, target_id),
        CHECK (source_id <> target_id)
    )
    """,
]
