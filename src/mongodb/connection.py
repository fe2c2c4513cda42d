"""Connection provider for the local MongoDB replica.

Hands out the local ``Database`` handle used by the checkpoint store, or None
while the server cannot be reached. The client is created lazily and kept for
the life of the provider.
"""

import logging
from typing import Optional

import pymongo
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


def _get_client(mongo_uri: str, **options) -> pymongo.MongoClient:
    """Create a MongoClient from a URI. Caller is responsible for closing if needed.

    Resolving ``pymongo.MongoClient`` at call time allows tests to monkeypatch it
    (e.g., with mongomock) and have our code pick it up.
    """
    return pymongo.MongoClient(mongo_uri, **options)


class MongoConnectionProvider:
    """
    Local MongoDB connection provider.

    Safe to call repeatedly: a failed ping returns None and the next call tries
    again with the same client.

    Example:
        >>> provider = MongoConnectionProvider(get_settings().mongo)
        >>> db = provider.get_local_connection()
    """

    def __init__(self, settings=None, client: Optional[pymongo.MongoClient] = None):
        """
        Args:
            settings: ``MongoSettings``; loaded from the environment when omitted
            client: Pre-built client (skips lazy creation)
        """
        if settings is None:
            from config.settings import get_settings
            settings = get_settings().mongo
        self.settings = settings
        self._client = client

    @property
    def client(self) -> pymongo.MongoClient:
        if self._client is None:
            self._client = _get_client(
                self.settings.uri,
                connectTimeoutMS=self.settings.connect_timeout * 1000,
                serverSelectionTimeoutMS=self.settings.server_selection_timeout * 1000,
                maxPoolSize=self.settings.max_pool_size,
            )
        return self._client

    def get_local_connection(self) -> Optional[Database]:
        """Return the local database handle, or None if MongoDB is unreachable."""
        try:
            client = self.client
            client.admin.command("ping")
            return client[self.settings.database]
        except PyMongoError as e:
            logger.warning(
                f"Local MongoDB not available: {e}",
                extra={"database": self.settings.database}
            )
            return None

    def is_available(self) -> bool:
        return self.get_local_connection() is not None

    def close(self) -> None:
        """Close the client and its connection pool."""
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("Local MongoDB connection closed")
