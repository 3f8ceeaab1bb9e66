"""Database connection helpers."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url

from ...config import DatabaseConfig


def build_engine(config: DatabaseConfig) -> Engine:
    """Create the engine for the configured DSN without opening a connection."""

    if not config.url:
        raise ValueError("database url is not configured")
    url = make_url(config.url)
    connect_args = {}
    if url.get_backend_name() == "postgresql":
        connect_args["connect_timeout"] = max(int(config.connect_timeout), 1)
    return create_engine(
        url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )
