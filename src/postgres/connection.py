"""Connection provider for the SQL checkpoint backend.

Uses the centralized configuration from config.settings. The engine is created
lazily with connection pooling and checked with ``SELECT 1`` before it is handed
out.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class SqlConnectionProvider:
    """
    SQLAlchemy engine provider.

    Thread Safety: YES (the engine pools connections per checkout)
    """

    def __init__(self, settings=None, engine: Optional[Engine] = None):
        """
        Args:
            settings: ``DatabaseSettings``; loaded from the environment when omitted
            engine: Pre-built engine (skips lazy creation)
        """
        if settings is None and engine is None:
            from config.settings import get_settings
            settings = get_settings().database
        self.settings = settings
        self._engine = engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            url = self.settings.connection_url
            options = {
                "pool_pre_ping": True,  # Verify connections before using
                "pool_recycle": self.settings.pool_recycle,
                "echo": False,
            }
            if not url.startswith("sqlite"):
                options["pool_size"] = self.settings.pool_size
                options["max_overflow"] = self.settings.max_overflow
            self._engine = create_engine(url, **options)
        return self._engine

    def get_local_connection(self) -> Optional[Engine]:
        """Return the engine, or None if the database cannot be reached."""
        try:
            engine = self.engine
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return engine
        except SQLAlchemyError as e:
            logger.warning(f"Checkpoint database not available: {e}")
            return None

    def is_available(self) -> bool:
        return self.get_local_connection() is not None

    def close(self) -> None:
        """Close database connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("Checkpoint database connections closed")
