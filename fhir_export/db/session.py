from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from fhir_export.core.config import SOURCE_DB_URL


@lru_cache(maxsize=None)
def get_engine(url: str = SOURCE_DB_URL) -> Engine:
    """Read-only engine for the clinical source database."""
    return create_engine(url, pool_pre_ping=True)
