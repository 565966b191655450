"""共有レイヤの公開インターフェース。"""

from .config import AppSettings, AuthSettings, InteractiveSettings, get_settings
from .exceptions import BaseAppError, ConfigurationError
from .logging import configure_logging, get_logger
from .types import (
    DEFAULT_GROUP_ID,
    DEFAULT_SCENE_ID,
    DTO,
    GroupID,
    SceneID,
    ValueObject,
    from_epoch_millis,
    to_epoch_millis,
)

__all__ = [
    "AppSettings",
    "AuthSettings",
    "InteractiveSettings",
    "get_settings",
    "configure_logging",
    "get_logger",
    "BaseAppError",
    "ConfigurationError",
    "ValueObject",
    "DTO",
    "SceneID",
    "GroupID",
    "DEFAULT_SCENE_ID",
    "DEFAULT_GROUP_ID",
    "from_epoch_millis",
    "to_epoch_millis",
]
