from .settings import (
    Settings,
    MongoSettings,
    WatchSettings,
    CheckpointSettings,
    BackoffSettings,
    get_settings,
    reload_settings,
)

__all__ = [
    "Settings",
    "MongoSettings",
    "WatchSettings",
    "CheckpointSettings",
    "BackoffSettings",
    "get_settings",
    "reload_settings",
]
