from .connection import connect_to_mongo, get_collection
from .admin import AdminCommandResult, record_pre_images, enable_pre_post_images, enable_image_capture

__all__ = [
    "connect_to_mongo",
    "get_collection",
    "AdminCommandResult",
    "record_pre_images",
    "enable_pre_post_images",
    "enable_image_capture",
]
