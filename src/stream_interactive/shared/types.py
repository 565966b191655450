"""共有型・ユーティリティ。"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, NewType

SceneID = NewType("SceneID", str)
GroupID = NewType("GroupID", str)

DEFAULT_SCENE_ID = SceneID("default")
DEFAULT_GROUP_ID = GroupID("default")


@dataclass(slots=True)
class ValueObject:
    """DTO や VO のベースクラス。"""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class DTO(ValueObject):
    """データ転送オブジェクト用ベース。"""


def from_epoch_millis(value: Any) -> datetime | None:
    """エポックミリ秒を UTC datetime に変換する。数値以外は None。

    Raises:
        ValueError: datetime で表せない範囲の値だった場合。
    """

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError) as exc:
        msg = f"epoch millis out of range: {value}"
        raise ValueError(msg) from exc


def to_epoch_millis(value: datetime) -> int:
    """datetime をエポックミリ秒へ変換する。naive は UTC とみなす。"""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


__all__ = [
    "ValueObject",
    "DTO",
    "from_epoch_millis",
    "to_epoch_millis",
    "SceneID",
    "GroupID",
    "DEFAULT_SCENE_ID",
    "DEFAULT_GROUP_ID",
]
