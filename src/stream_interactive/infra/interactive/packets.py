"""インタラクティブプロトコルのパケット定義と JSON エンベロープのコーデック。"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stream_interactive.shared.types import DTO

from .errors import InteractiveProtocolError

MAX_PACKET_ID = 2**32 - 1


class PacketType(str, Enum):
    """エンベロープの `type` 判別子。"""

    METHOD = "method"
    REPLY = "reply"
    EVENT = "event"


@dataclass(slots=True)
class MethodPacket(DTO):
    """メソッド呼び出しフレーム。サーバー発のイベントでは `id` を持たないことがある。"""

    method: str
    params: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    discard: bool = False
    type: PacketType = PacketType.METHOD


@dataclass(slots=True)
class ReplyError(DTO):
    """応答に含まれるエラー情報。"""

    code: int | None
    message: str | None
    path: str | None = None


@dataclass(slots=True)
class ReplyPacket(DTO):
    """メソッド呼び出しへの応答フレーム。"""

    id: int
    result: Any = None
    error: ReplyError | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


class PacketIdAllocator:
    """クライアントごとの単調増加パケット ID 採番器。

    一度払い出した ID は再利用せず、減算もリセットもしない。
    単一のイベントループ上で使う前提で、採番から送信までの直列化は
    RequestCorrelator が担う。
    """

    def __init__(self, start: int = 0) -> None:
        if start < 0 or start > MAX_PACKET_ID:
            msg = f"packet id start out of range: {start}"
            raise ValueError(msg)
        self._next = start

    @property
    def peek(self) -> int:
        return self._next

    def allocate(self) -> int:
        packet_id = self._next
        if packet_id > MAX_PACKET_ID:
            raise InteractiveProtocolError("Packet id space exhausted")
        self._next = packet_id + 1
        return packet_id


def encode_method(packet: MethodPacket) -> str:
    """メソッドパケットを送信用 JSON テキストへ変換する。"""

    if packet.id is None:
        msg = "Outgoing method packets require an id"
        raise ValueError(msg)
    envelope = {
        "type": PacketType.METHOD.value,
        "id": packet.id,
        "method": packet.method,
        "params": packet.params,
        "discard": packet.discard,
    }
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)


def decode_frame(payload: str | bytes) -> MethodPacket | ReplyPacket:
    """受信フレームを判別子に従って解釈する。

    Raises:
        InteractiveProtocolError: JSON として壊れている、必須フィールドがない、
            もしくは未知の判別子だった場合。
    """

    try:
        decoded = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InteractiveProtocolError("Frame is not valid JSON") from exc

    if not isinstance(decoded, Mapping):
        raise InteractiveProtocolError("Frame must be a JSON object")

    raw_type = decoded.get("type")
    if raw_type == PacketType.REPLY.value:
        return _decode_reply(decoded)
    if raw_type in (PacketType.METHOD.value, PacketType.EVENT.value):
        return _decode_method(decoded, PacketType(raw_type))
    raise InteractiveProtocolError(f"Unknown packet type: {raw_type!r}")


def _decode_packet_id(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InteractiveProtocolError(f"Packet id must be an integer: {value!r}")
    if value < 0 or value > MAX_PACKET_ID:
        raise InteractiveProtocolError(f"Packet id out of range: {value}")
    return value


def _decode_reply(decoded: Mapping[str, Any]) -> ReplyPacket:
    if "id" not in decoded:
        raise InteractiveProtocolError("Reply frame is missing an id")
    packet_id = _decode_packet_id(decoded["id"])

    error: ReplyError | None = None
    raw_error = decoded.get("error")
    if raw_error is not None:
        if not isinstance(raw_error, Mapping):
            raise InteractiveProtocolError("Reply error must be an object")
        code = raw_error.get("code")
        error = ReplyError(
            code=code if isinstance(code, int) and not isinstance(code, bool) else None,
            message=raw_error.get("message"),
            path=raw_error.get("path"),
        )
    return ReplyPacket(id=packet_id, result=decoded.get("result"), error=error)


def _decode_method(decoded: Mapping[str, Any], packet_type: PacketType) -> MethodPacket:
    method = decoded.get("method")
    if not isinstance(method, str) or not method:
        raise InteractiveProtocolError("Method frame is missing a method name")

    params = decoded.get("params")
    if params is None:
        params = {}
    if not isinstance(params, Mapping):
        raise InteractiveProtocolError("Method params must be an object")

    raw_id = decoded.get("id")
    return MethodPacket(
        method=method,
        params=dict(params),
        id=_decode_packet_id(raw_id) if raw_id is not None else None,
        discard=bool(decoded.get("discard", False)),
        type=packet_type,
    )


__all__ = [
    "MAX_PACKET_ID",
    "MethodPacket",
    "PacketIdAllocator",
    "PacketType",
    "ReplyError",
    "ReplyPacket",
    "decode_frame",
    "encode_method",
]
