from .settings import (
    Settings,
    SourceSettings,
    TargetSettings,
    CheckpointSettings,
    AlertSettings,
    LogSettings,
    load_settings,
)

__all__ = [
    "Settings",
    "SourceSettings",
    "TargetSettings",
    "CheckpointSettings",
    "AlertSettings",
    "LogSettings",
    "load_settings",
]
