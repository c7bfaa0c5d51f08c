#!/usr/bin/env python3
"""
Example: watch one collection and mirror its changes.

Configuration comes from the environment (or a .env file):

    MONGO_TARGET_URI=mongodb://target_db:27017/?replicaSet=rs0
    MONGO_TARGET_DATABASE=shop
    MONGO_LOCAL_URI=mongodb://local_db:27017
    WATCH_COLLECTION=orders
    WATCH_PRE_IMAGE_MODE=required

Two processors may watch the same collection as long as each uses its own
WATCH_RESUME_SUFFIX and its own handler, otherwise actions are duplicated.

Usage:
    python examples/watch_collection.py
"""

import logging
import signal
import sys
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mongowatch.config import get_settings
from mongowatch.connectors.cdc import CancelScope, DocumentProcessor, PreImageMode, RetryExhaustedError
from mongowatch.mongodb import connect_to_mongo, enable_image_capture
from mongowatch.utils.logging import configure_logging

logger = logging.getLogger("mongowatch.examples.watch_collection")


class Order(BaseModel):
    """Shape of the documents stored in the watched collection."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    order_id: Union[str, int] = Field(..., alias="_id")
    status: Optional[str] = None


class OrderWatcher:
    """Handles document changes of the orders collection."""

    def __init__(self):
        self.orders = {}

    def insert(self, ctx: CancelScope, payload: bytes) -> None:
        self.update(ctx, payload)

    def update(self, ctx: CancelScope, payload: bytes) -> None:
        order = self._decode(payload)
        self.orders[order.order_id] = order
        logger.info(f"Order changed: {order.order_id}", extra={"status": order.status})

    def delete(self, ctx: CancelScope, payload: bytes) -> None:
        if payload == b"null":
            # no pre-image recorded, nothing identifies the order
            logger.warning("Order deleted without pre-image")
            return
        order = self._decode(payload)
        self.orders.pop(order.order_id, None)
        logger.info(f"Order deleted: {order.order_id}")

    @staticmethod
    def _decode(payload: bytes) -> Order:
        try:
            return Order.model_validate_json(payload)
        except ValidationError as e:
            raise ValueError(f"Failed to decode order: {e}") from e


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    mongo = settings.mongo
    target_db = connect_to_mongo(mongo.target_database, mongo.target_uri, mongo.server_selection_timeout)
    local_db = connect_to_mongo(mongo.local_database, mongo.effective_local_uri, mongo.server_selection_timeout)

    if settings.watch.pre_image_mode != PreImageMode.OFF:
        result = enable_image_capture(target_db, settings.watch.collection)
        if not result.ok:
            logger.warning(f"Could not enable pre-images: {result.error}")

    processor = DocumentProcessor.from_settings(settings, target_db, local_db)

    def signal_handler(signum, frame):
        logger.info(f"Received shutdown signal {signum}")
        processor.stop()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        processor.start_with_retry(OrderWatcher())
    except RetryExhaustedError as e:
        logger.error(f"Failed to run event stream processor: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
