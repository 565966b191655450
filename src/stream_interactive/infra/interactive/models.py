"""シーン・グループ・コントロール・参加者のモデルとワイヤ形式の相互変換。"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from stream_interactive.shared.types import (
    DEFAULT_GROUP_ID,
    DEFAULT_SCENE_ID,
    DTO,
    from_epoch_millis,
    to_epoch_millis,
)

from .errors import InteractiveProtocolError

__all__ = [
    "ButtonControl",
    "Control",
    "ControlPosition",
    "GenericControl",
    "Group",
    "JoystickControl",
    "MemoryStats",
    "Participant",
    "ParticipantPage",
    "Scene",
    "decode_control",
    "decode_controls",
    "decode_group",
    "decode_participant",
    "decode_scene",
    "require_list",
]


def _require_mapping(raw: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise InteractiveProtocolError(f"{what} must be an object")
    return raw


def _require_str(raw: Mapping[str, Any], key: str, what: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value:
        raise InteractiveProtocolError(f"{what} is missing {key}")
    return value


def _require_int(raw: Mapping[str, Any], key: str, what: str) -> int:
    value = raw.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InteractiveProtocolError(f"{what} field {key} must be a number")
    try:
        return int(value)
    except (OverflowError, ValueError) as exc:
        raise InteractiveProtocolError(f"{what} field {key} is out of range") from exc


def _optional_timestamp(raw: Mapping[str, Any], key: str, what: str) -> datetime | None:
    try:
        return from_epoch_millis(raw.get(key))
    except ValueError as exc:
        raise InteractiveProtocolError(f"{what} field {key} is out of range") from exc


def require_list(payload: Any, key: str) -> list[Any]:
    """結果オブジェクトから配列フィールドを取り出す。無ければ空配列。"""

    if payload is None:
        return []
    mapping = _require_mapping(payload, "Result")
    value = mapping.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise InteractiveProtocolError(f"Result field {key} must be an array")
    return value


@dataclass(slots=True)
class ControlPosition(DTO):
    """ビューポートサイズごとの配置。"""

    size: str
    width: int
    height: int
    x: int
    y: int

    def to_wire(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "width": self.width,
            "height": self.height,
            "x": self.x,
            "y": self.y,
        }

    @classmethod
    def from_wire(cls, raw: Any) -> ControlPosition:
        data = _require_mapping(raw, "Control position")
        return cls(
            size=str(data.get("size", "")),
            width=_require_int(data, "width", "Control position"),
            height=_require_int(data, "height", "Control position"),
            x=_require_int(data, "x", "Control position"),
            y=_require_int(data, "y", "Control position"),
        )


_COMMON_CONTROL_KEYS = frozenset({"controlID", "kind", "disabled", "position", "meta", "etag"})


@dataclass(slots=True)
class Control(DTO):
    """コントロールの共通部分。`kind` は種類ごとのサブクラスで固定される。

    `meta` と、知らないトップレベルキーを保持する `extra` は往復で保存される。
    """

    KIND: ClassVar[str] = ""
    KIND_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = ()

    control_id: str
    disabled: bool = False
    position: tuple[ControlPosition, ...] = ()
    meta: dict[str, Any] = field(default_factory=dict)
    etag: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.KIND

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "controlID": self.control_id,
                "kind": self.kind,
                "disabled": self.disabled,
                "position": [position.to_wire() for position in self.position],
                "meta": self.meta,
            }
        )
        if self.etag is not None:
            payload["etag"] = self.etag
        for attribute, wire_key in self.KIND_FIELDS:
            value = getattr(self, attribute)
            if value is not None:
                payload[wire_key] = value
        return payload

    @classmethod
    def _common_from_wire(cls, data: Mapping[str, Any]) -> dict[str, Any]:
        known = _COMMON_CONTROL_KEYS | {wire_key for _, wire_key in cls.KIND_FIELDS}
        raw_positions = data.get("position") or []
        if not isinstance(raw_positions, list):
            raise InteractiveProtocolError("Control position must be an array")
        meta = data.get("meta") or {}
        return {
            "control_id": _require_str(data, "controlID", "Control"),
            "disabled": bool(data.get("disabled", False)),
            "position": tuple(ControlPosition.from_wire(item) for item in raw_positions),
            "meta": dict(_require_mapping(meta, "Control meta")),
            "etag": data.get("etag"),
            "extra": {key: value for key, value in data.items() if key not in known},
        }

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> Control:
        values = cls._common_from_wire(data)
        for attribute, wire_key in cls.KIND_FIELDS:
            if wire_key in data:
                values[attribute] = data[wire_key]
        return cls(**values)


@dataclass(slots=True)
class ButtonControl(Control):
    """ボタン。"""

    KIND: ClassVar[str] = "button"
    KIND_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("text", "text"),
        ("cost", "cost"),
        ("progress", "progress"),
        ("cooldown", "cooldown"),
        ("key_code", "keyCode"),
        ("tooltip", "tooltip"),
    )

    text: str | None = None
    cost: int | None = None
    progress: float | None = None
    cooldown: int | None = None
    key_code: int | None = None
    tooltip: str | None = None


@dataclass(slots=True)
class JoystickControl(Control):
    """ジョイスティック。"""

    KIND: ClassVar[str] = "joystick"
    KIND_FIELDS: ClassVar[tuple[tuple[str, str], ...]] = (
        ("sample_rate", "sampleRate"),
        ("angle", "angle"),
        ("intensity", "intensity"),
    )

    sample_rate: int | None = None
    angle: float | None = None
    intensity: float | None = None


@dataclass(slots=True)
class GenericControl(Control):
    """未対応の種類。固有フィールドは `extra` にそのまま残す。"""

    control_kind: str = ""

    @property
    def kind(self) -> str:
        return self.control_kind

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> Control:
        values = cls._common_from_wire(data)
        return cls(control_kind=_require_str(data, "kind", "Control"), **values)


CONTROL_KINDS: dict[str, type[Control]] = {
    ButtonControl.KIND: ButtonControl,
    JoystickControl.KIND: JoystickControl,
}


def decode_control(raw: Any) -> Control:
    """`kind` に従って適切なコントロール型へ変換する。"""

    data = _require_mapping(raw, "Control")
    kind = _require_str(data, "kind", "Control")
    control_type = CONTROL_KINDS.get(kind, GenericControl)
    return control_type.from_wire(data)


def decode_controls(raw: Iterable[Any]) -> tuple[Control, ...]:
    return tuple(decode_control(item) for item in raw)


@dataclass(slots=True)
class Scene(DTO):
    """シーンと、その中に並ぶコントロール。"""

    scene_id: str
    controls: tuple[Control, ...] = ()
    meta: dict[str, Any] = field(default_factory=dict)
    etag: str | None = None

    @property
    def is_default(self) -> bool:
        return self.scene_id == DEFAULT_SCENE_ID

    def control(self, control_id: str) -> Control | None:
        for control in self.controls:
            if control.control_id == control_id:
                return control
        return None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sceneID": self.scene_id,
            "controls": [control.to_wire() for control in self.controls],
            "meta": self.meta,
        }
        if self.etag is not None:
            payload["etag"] = self.etag
        return payload


def decode_scene(raw: Any) -> Scene:
    data = _require_mapping(raw, "Scene")
    raw_controls = data.get("controls") or []
    if not isinstance(raw_controls, list):
        raise InteractiveProtocolError("Scene controls must be an array")
    return Scene(
        scene_id=_require_str(data, "sceneID", "Scene"),
        controls=decode_controls(raw_controls),
        meta=dict(_require_mapping(data.get("meta") or {}, "Scene meta")),
        etag=data.get("etag"),
    )


@dataclass(slots=True)
class Group(DTO):
    """参加者グループ。`scene_id` は参照であり所有ではない。"""

    group_id: str
    scene_id: str = DEFAULT_SCENE_ID
    meta: dict[str, Any] = field(default_factory=dict)
    etag: str | None = None

    @property
    def is_default(self) -> bool:
        return self.group_id == DEFAULT_GROUP_ID

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "groupID": self.group_id,
            "sceneID": self.scene_id,
            "meta": self.meta,
        }
        if self.etag is not None:
            payload["etag"] = self.etag
        return payload


def decode_group(raw: Any) -> Group:
    data = _require_mapping(raw, "Group")
    return Group(
        group_id=_require_str(data, "groupID", "Group"),
        scene_id=data.get("sceneID") or DEFAULT_SCENE_ID,
        meta=dict(_require_mapping(data.get("meta") or {}, "Group meta")),
        etag=data.get("etag"),
    )


@dataclass(slots=True)
class Participant(DTO):
    """接続中の視聴者。"""

    session_id: str
    user_id: int | None = None
    username: str | None = None
    level: int | None = None
    group_id: str = DEFAULT_GROUP_ID
    connected_at: datetime | None = None
    last_input_at: datetime | None = None
    disabled: bool = False
    meta: dict[str, Any] = field(default_factory=dict)
    etag: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sessionID": self.session_id,
            "groupID": self.group_id,
            "disabled": self.disabled,
            "meta": self.meta,
        }
        if self.user_id is not None:
            payload["userID"] = self.user_id
        if self.username is not None:
            payload["username"] = self.username
        if self.level is not None:
            payload["level"] = self.level
        if self.connected_at is not None:
            payload["connectedAt"] = to_epoch_millis(self.connected_at)
        if self.last_input_at is not None:
            payload["lastInputAt"] = to_epoch_millis(self.last_input_at)
        if self.etag is not None:
            payload["etag"] = self.etag
        return payload


def decode_participant(raw: Any) -> Participant:
    data = _require_mapping(raw, "Participant")
    user_id = data.get("userID")
    level = data.get("level")
    return Participant(
        session_id=_require_str(data, "sessionID", "Participant"),
        user_id=user_id if isinstance(user_id, int) else None,
        username=data.get("username"),
        level=level if isinstance(level, int) else None,
        group_id=data.get("groupID") or DEFAULT_GROUP_ID,
        connected_at=_optional_timestamp(data, "connectedAt", "Participant"),
        last_input_at=_optional_timestamp(data, "lastInputAt", "Participant"),
        disabled=bool(data.get("disabled", False)),
        meta=dict(_require_mapping(data.get("meta") or {}, "Participant meta")),
        etag=data.get("etag"),
    )


@dataclass(slots=True)
class ParticipantPage(DTO):
    """`getAllParticipants` などのページ 1 枚分。"""

    participants: tuple[Participant, ...]
    total: int = 0
    has_more: bool = False

    @classmethod
    def from_wire(cls, raw: Any) -> ParticipantPage:
        participants = tuple(decode_participant(item) for item in require_list(raw, "participants"))
        data = _require_mapping(raw or {}, "Participant page")
        total = data.get("total")
        return cls(
            participants=participants,
            total=total if isinstance(total, int) else len(participants),
            has_more=bool(data.get("hasMore", False)),
        )


@dataclass(slots=True)
class MemoryStats(DTO):
    """`getMemoryStats` の結果。"""

    used_bytes: int
    total_bytes: int
    resources: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, raw: Any) -> MemoryStats:
        data = _require_mapping(raw, "Memory stats")
        return cls(
            used_bytes=_require_int(data, "usedBytes", "Memory stats"),
            total_bytes=_require_int(data, "totalBytes", "Memory stats"),
            resources=dict(_require_mapping(data.get("resources") or {}, "Memory resources")),
        )
