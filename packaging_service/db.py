import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

PACKAGING_DATABASE_URL = os.getenv(
    "PACKAGING_DATABASE_URL",
    "sqlite+pysqlite:///./packaging.db",
)
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "EUR").strip().upper() or "EUR"

engine = create_engine(PACKAGING_DATABASE_URL, pool_pre_ping=True)


def session(eng: Engine | None = None) -> Session:
    # Rows are read back after commit; keep attributes loaded.
    return Session(eng or engine, expire_on_commit=False)
