"""
Administrative commands for change stream image capture.

Pre-images are only available to a change stream when the source collection
records them. MongoDB 6 replaced ``recordPreImages`` with
``changeStreamPreAndPostImages``; both commands are idempotent.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


@dataclass
class AdminCommandResult:
    """Outcome of an admin command plus the server's reply for diagnostics."""
    ok: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def _run_coll_mod(db: Database, collection: str, option: str, value: Any) -> AdminCommandResult:
    try:
        result = db.command({"collMod": collection, option: value})
    except PyMongoError as e:
        logger.error(
            f"collMod {option} failed for {collection}: {e}",
            extra={"collection": collection, "error": str(e)}
        )
        details = getattr(e, "details", None) or {}
        return AdminCommandResult(ok=False, result=dict(details), error=str(e))

    logger.info(
        f"collMod {option} enabled for {collection}: {result}",
        extra={"collection": collection}
    )
    return AdminCommandResult(ok=bool(result.get("ok")), result=dict(result))


def record_pre_images(db: Database, collection: str) -> AdminCommandResult:
    """Enable recording of pre-images (MongoDB < 6)."""
    return _run_coll_mod(db, collection, "recordPreImages", True)


def enable_pre_post_images(db: Database, collection: str) -> AdminCommandResult:
    """Enable change stream pre- and post-images (MongoDB >= 6)."""
    return _run_coll_mod(db, collection, "changeStreamPreAndPostImages", {"enabled": True})


def server_major_version(db: Database) -> int:
    info = db.client.server_info()
    return int(info["version"].split(".")[0])


def enable_image_capture(db: Database, collection: str) -> AdminCommandResult:
    """Enable image capture with the command matching the server version."""
    try:
        major = server_major_version(db)
    except PyMongoError as e:
        return AdminCommandResult(ok=False, error=f"Failed to read server version: {e}")

    if major >= 6:
        return enable_pre_post_images(db, collection)
    return record_pre_images(db, collection)
