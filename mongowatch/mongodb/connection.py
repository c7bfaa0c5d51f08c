"""
MongoDB connection helpers.
"""

import logging

import pymongo
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo.errors import PyMongoError
from pymongo.write_concern import WriteConcern

logger = logging.getLogger(__name__)


def _get_client(mongo_uri: str, server_selection_timeout: int = 10) -> pymongo.MongoClient:
    """Create a MongoClient from a URI. Caller is responsible for closing if needed.

    Looking up ``pymongo.MongoClient`` at call time allows tests to monkeypatch
    it and have our code pick the replacement up.
    """
    return pymongo.MongoClient(mongo_uri, serverSelectionTimeoutMS=server_selection_timeout * 1000)


def connect_to_mongo(database: str, mongo_uri: str, server_selection_timeout: int = 10) -> Database:
    """Connect, ping, and return the named database.

    Raises:
        RuntimeError: If the server cannot be reached
    """
    logger.info("Connecting to MongoDB", extra={"database": database})
    client = _get_client(mongo_uri, server_selection_timeout)
    try:
        client.admin.command("ping")
    except PyMongoError as e:
        client.close()
        raise RuntimeError(f"Failed to connect to MongoDB: {e}") from e

    logger.info("MongoDB connection established", extra={"database": database})
    return client[database]


def get_collection(db: Database, name: str) -> Collection:
    """Collection handle with w=1, j=False writes, used for watched and resume collections."""
    return db.get_collection(name, write_concern=WriteConcern(w=1, j=False))
