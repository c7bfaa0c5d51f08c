"""
Utility functions for core operations.
"""

from .bson_convert import bson_safe, to_json_bytes

__all__ = ["bson_safe", "to_json_bytes"]
