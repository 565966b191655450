"""インタラクティブプロトコルのクライアント本体。

接続管理・パケット ID 相関・イベント配送・スロットル・リソースキャッシュを
1 インスタンスにまとめ、型付きのメソッド呼び出しを提供する。
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from stream_interactive.shared.config import AppSettings, get_settings
from stream_interactive.shared.logging import get_logger
from stream_interactive.shared.types import DEFAULT_SCENE_ID, from_epoch_millis, to_epoch_millis

from .cache import ResourceStateCache
from .connection import ConnectionManager, ConnectionState, TransportFactory
from .correlator import RequestCorrelator
from .dispatcher import EventDispatcher, EventHandler, Unsubscribe
from .errors import (
    InteractiveDisconnectedError,
    InteractiveProtocolError,
    InteractiveRateLimitError,
    InteractiveReplyError,
    InteractiveStateError,
    InteractiveValidationError,
)
from .models import (
    Control,
    Group,
    MemoryStats,
    Participant,
    ParticipantPage,
    Scene,
    decode_controls,
    decode_group,
    decode_participant,
    decode_scene,
    require_list,
)
from .packets import MethodPacket, PacketIdAllocator, ReplyPacket, decode_frame
from .throttle import (
    ThrottleManager,
    ThrottleSetting,
    ThrottleState,
    encode_throttle_settings,
    parse_throttle_state,
)


@dataclass(slots=True, frozen=True)
class InteractiveSession:
    """接続 1 回分の接続先と資格情報。外部のブートストラップ層が用意する。"""

    endpoint: str
    access_token: str = field(repr=False)
    version_id: int | None = None
    share_code: str | None = None
    protocol_version: str = "2.0"

    def handshake_headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "X-Protocol-Version": self.protocol_version,
        }
        if self.version_id is not None:
            headers["X-Interactive-Version"] = str(self.version_id)
        if self.share_code:
            headers["X-Interactive-Sharecode"] = self.share_code
        return headers


class InteractiveClient:
    """インタラクティブ接続 1 本を扱うクライアント。

    再接続は自動では行わない。切断後は `connect()` と `ready()` をやり直す。
    """

    def __init__(
        self,
        session: InteractiveSession,
        *,
        transport_factory: TransportFactory | None = None,
        request_timeout: float | None = None,
        dispatch_drain_seconds: float = 1.0,
        initial_packet_id: int = 0,
        rate_limit_error_code: int | None = 4024,
        logger=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._logger = logger or get_logger(__name__)
        self._dispatch_drain_seconds = dispatch_drain_seconds
        self._rate_limit_error_code = rate_limit_error_code
        self._connection = ConnectionManager(
            on_frame=self._handle_frame,
            on_lost=self._handle_lost,
            transport_factory=transport_factory,
            logger=self._logger,
        )
        self._throttle = ThrottleManager(clock=clock, logger=self._logger)
        self._correlator = RequestCorrelator(
            transmit=self._connection.transmit,
            allocator=PacketIdAllocator(initial_packet_id),
            default_timeout=request_timeout,
            on_send=self._record_outbound,
            logger=self._logger,
            clock=clock,
        )
        self._dispatcher = EventDispatcher(logger=self._logger)
        self._cache = ResourceStateCache(logger=self._logger)

    # -- 状態 ---------------------------------------------------------------

    @property
    def session(self) -> InteractiveSession:
        return self._session

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def cache(self) -> ResourceStateCache:
        return self._cache

    @property
    def throttle(self) -> ThrottleManager:
        return self._throttle

    @property
    def pending_count(self) -> int:
        return self._correlator.pending_count

    async def __aenter__(self) -> InteractiveClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.disconnect()

    # -- 接続 ---------------------------------------------------------------

    async def connect(self) -> None:
        """トランスポートを開いて CONNECTED にする。サーバーの準備完了は意味しない。"""

        await self._connection.connect(
            self._session.endpoint, self._session.handshake_headers()
        )
        self._dispatcher.start()

    async def ready(self, is_ready: bool = True) -> bool:
        """ready ハンドシェイクを送り、応答を受けたら READY に遷移する。"""

        self._require_open()
        await self._correlator.send("ready", {"isReady": is_ready})
        self._connection.mark_ready(is_ready)
        return True

    async def disconnect(self) -> None:
        """接続を破棄する。何度呼んでもよい。

        送信中のフレームを待ってから閉じ、応答待ちをすべて切断エラーで解決し、
        キャッシュを消去する。
        """

        await self._connection.close(teardown=self._teardown)
        await self._dispatcher.stop(drain_timeout=self._dispatch_drain_seconds)

    def _teardown(self) -> None:
        self._correlator.fail_all(InteractiveDisconnectedError())
        self._cache.clear()
        self._throttle.reset_counters()

    async def _handle_lost(self, error: Exception) -> None:
        self._logger.warning("interactive_teardown_after_loss", error=str(error))
        await self.disconnect()

    # -- 受信経路 -------------------------------------------------------------

    def _handle_frame(self, frame: str | bytes) -> None:
        try:
            packet = decode_frame(frame)
        except InteractiveProtocolError as exc:
            self._logger.warning("interactive_frame_dropped", reason=str(exc))
            return

        if isinstance(packet, ReplyPacket):
            self._correlator.resolve(packet)
            return

        if packet.discard:
            self._logger.debug("interactive_frame_discarded", method=packet.method)
            return

        try:
            self._cache.apply_event(packet.method, packet.params)
        except InteractiveProtocolError as exc:
            self._logger.warning(
                "interactive_event_malformed", method=packet.method, reason=str(exc)
            )
        self._dispatcher.publish(packet)

    def _record_outbound(self, packet: MethodPacket) -> None:
        self._throttle.record(packet.method)

    # -- 購読 ---------------------------------------------------------------

    def on(self, method: str, handler: EventHandler) -> Unsubscribe:
        """サーバー発メソッド (例: `giveInput`, `onParticipantJoin`) を購読する。"""

        return self._dispatcher.subscribe(method, handler)

    def on_any(self, handler: EventHandler) -> Unsubscribe:
        return self._dispatcher.subscribe_all(handler)

    # -- 汎用送信 -------------------------------------------------------------

    async def send_method(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """任意のメソッドを送信して応答の `result` を返す。"""

        self._require_open()
        return await self._correlator.send(method, params, timeout=timeout)

    def _require_open(self) -> None:
        if not self._connection.is_open:
            msg = f"Interactive client is {self.state.value}; connect first"
            raise InteractiveStateError(msg)

    def _require_ready(self) -> None:
        if self.state is not ConnectionState.READY:
            msg = f"Interactive client is {self.state.value}; call ready() first"
            raise InteractiveStateError(msg)

    async def _mutate(self, method: str, params: dict[str, Any]) -> Any:
        self._require_ready()
        return await self._correlator.send(method, params)

    # -- 情報取得 -------------------------------------------------------------

    async def get_time(self) -> datetime:
        result = await self.send_method("getTime")
        try:
            server_time = from_epoch_millis(
                result.get("time") if isinstance(result, dict) else None
            )
        except ValueError as exc:
            raise InteractiveProtocolError(f"getTime result is invalid: {exc}") from exc
        if server_time is None:
            raise InteractiveProtocolError("getTime result is missing time")
        return server_time

    async def get_memory_stats(self) -> MemoryStats:
        return MemoryStats.from_wire(await self.send_method("getMemoryStats"))

    # -- スロットル -------------------------------------------------------------

    async def set_bandwidth_throttle(self, settings: Iterable[ThrottleSetting]) -> bool:
        """サーバーへスロットルを設定し、受理されたらローカルにも反映する。"""

        throttles = list(settings)
        if not throttles:
            raise InteractiveValidationError("At least one throttle setting is required")
        await self.send_method("setBandwidthThrottle", encode_throttle_settings(throttles))
        self._throttle.apply(throttles)
        return True

    async def get_throttle_state(self) -> dict[str, ThrottleState]:
        """サーバー側のスロットル状態を取得する。こちらがローカルより優先される。

        サーバーが容量を返さないメソッドは、直近に受理された設定の容量で補う。
        """

        states = parse_throttle_state(await self.send_method("getThrottleState"))
        self._throttle.sync(states)
        for method, state in states.items():
            if state.capacity is None:
                local = self._throttle.setting_for(method)
                if local is not None:
                    state.capacity = local.capacity_per_period
                    state.period_millis = local.period_millis
        return states

    # -- 参加者 ---------------------------------------------------------------

    async def get_all_participants(self) -> tuple[Participant, ...]:
        """全参加者を `from` カーソルでページングしながら取得する。"""

        participants = await self._collect_participants(
            "getAllParticipants", {}, cursor_of=lambda p: p.connected_at
        )
        self._cache.replace_participants(participants)
        return participants

    async def get_active_participants(self, threshold: datetime) -> tuple[Participant, ...]:
        """`threshold` 以降に入力のあった参加者を取得する。"""

        participants = await self._collect_participants(
            "getActiveParticipants",
            {"threshold": to_epoch_millis(threshold)},
            cursor_of=lambda p: p.last_input_at,
        )
        self._cache.store_participants(participants)
        return participants

    async def _collect_participants(
        self,
        method: str,
        params: dict[str, Any],
        *,
        cursor_of: Callable[[Participant], datetime | None],
    ) -> tuple[Participant, ...]:
        collected: dict[str, Participant] = {}
        cursor = 0
        while True:
            try:
                result = await self.send_method(method, {**params, "from": cursor})
            except InteractiveReplyError as exc:
                if exc.code is not None and exc.code == self._rate_limit_error_code:
                    raise InteractiveRateLimitError(
                        method,
                        exc.code,
                        exc.reply_message,
                        exc.path,
                        partial_results=tuple(collected.values()),
                        cursor=cursor,
                    ) from exc
                raise

            page = ParticipantPage.from_wire(result)
            for participant in page.participants:
                collected[participant.session_id] = participant
            if not page.has_more or not page.participants:
                break

            last_seen = cursor_of(page.participants[-1])
            next_cursor = to_epoch_millis(last_seen) if last_seen else None
            if next_cursor is None or next_cursor <= cursor:
                self._logger.warning("interactive_paging_stalled", method=method, cursor=cursor)
                break
            cursor = next_cursor
        return tuple(collected.values())

    async def update_participants(
        self, participants: Sequence[Participant]
    ) -> tuple[Participant, ...]:
        result = await self._mutate(
            "updateParticipants",
            {"participants": [participant.to_wire() for participant in participants]},
        )
        updated = tuple(
            decode_participant(item) for item in require_list(result, "participants")
        )
        self._cache.store_participants(updated)
        return updated

    # -- グループ ---------------------------------------------------------------

    async def get_groups(self) -> tuple[Group, ...]:
        result = await self.send_method("getGroups")
        groups = tuple(decode_group(item) for item in require_list(result, "groups"))
        self._cache.replace_groups(groups)
        return groups

    async def create_groups(self, groups: Sequence[Group]) -> tuple[Group, ...]:
        self._validate_group_scenes(groups)
        result = await self._mutate(
            "createGroups", {"groups": [group.to_wire() for group in groups]}
        )
        created = tuple(decode_group(item) for item in require_list(result, "groups"))
        self._cache.store_groups(created)
        return created

    async def update_groups(self, groups: Sequence[Group]) -> tuple[Group, ...]:
        self._validate_group_scenes(groups)
        result = await self._mutate(
            "updateGroups", {"groups": [group.to_wire() for group in groups]}
        )
        updated = tuple(decode_group(item) for item in require_list(result, "groups"))
        self._cache.store_groups(updated)
        return updated

    async def delete_group(self, group_id: str, reassign_group_id: str) -> bool:
        """グループを削除し、所属参加者を `reassign_group_id` へ移す。"""

        self._cache.validate_group_deletion(group_id, reassign_group_id)
        await self._mutate(
            "deleteGroup", {"groupID": group_id, "reassignGroupID": reassign_group_id}
        )
        self._cache.remove_group(group_id, reassign_group_id)
        return True

    def _validate_group_scenes(self, groups: Sequence[Group]) -> None:
        if not groups:
            raise InteractiveValidationError("At least one group is required")
        if not self._cache.scenes:
            return
        for group in groups:
            if group.scene_id != DEFAULT_SCENE_ID and self._cache.scene(group.scene_id) is None:
                msg = f"Group {group.group_id} references unknown scene {group.scene_id}"
                raise InteractiveValidationError(msg)

    # -- シーン ---------------------------------------------------------------

    async def get_scenes(self) -> tuple[Scene, ...]:
        result = await self.send_method("getScenes")
        scenes = tuple(decode_scene(item) for item in require_list(result, "scenes"))
        self._cache.replace_scenes(scenes)
        return scenes

    async def get_scene(self, scene_id: str) -> Scene | None:
        """全シーンを取り直し、指定 ID のシーンを返す。"""

        await self.get_scenes()
        return self._cache.scene(scene_id)

    async def create_scenes(self, scenes: Sequence[Scene]) -> tuple[Scene, ...]:
        if not scenes:
            raise InteractiveValidationError("At least one scene is required")
        result = await self._mutate(
            "createScenes", {"scenes": [scene.to_wire() for scene in scenes]}
        )
        created = tuple(decode_scene(item) for item in require_list(result, "scenes"))
        self._cache.store_scenes(created)
        return created

    async def update_scenes(self, scenes: Sequence[Scene]) -> tuple[Scene, ...]:
        if not scenes:
            raise InteractiveValidationError("At least one scene is required")
        result = await self._mutate(
            "updateScenes", {"scenes": [scene.to_wire() for scene in scenes]}
        )
        updated = tuple(decode_scene(item) for item in require_list(result, "scenes"))
        self._cache.store_scenes(updated)
        return updated

    async def delete_scene(self, scene_id: str, reassign_scene_id: str) -> bool:
        """シーンを削除し、参照していたグループを `reassign_scene_id` へ移す。"""

        self._cache.validate_scene_deletion(scene_id, reassign_scene_id)
        await self._mutate(
            "deleteScene", {"sceneID": scene_id, "reassignSceneID": reassign_scene_id}
        )
        self._cache.remove_scene(scene_id, reassign_scene_id)
        return True

    # -- コントロール -----------------------------------------------------------

    async def create_controls(
        self, scene_id: str, controls: Sequence[Control]
    ) -> tuple[Control, ...]:
        self._validate_control_batch(scene_id, controls)
        result = await self._mutate(
            "createControls",
            {"sceneID": scene_id, "controls": [control.to_wire() for control in controls]},
        )
        created = decode_controls(require_list(result, "controls"))
        self._cache.store_controls(scene_id, created)
        return created

    async def update_controls(
        self, scene_id: str, controls: Sequence[Control]
    ) -> tuple[Control, ...]:
        self._validate_control_batch(scene_id, controls)
        self._cache.validate_control_updates(scene_id, controls)
        result = await self._mutate(
            "updateControls",
            {"sceneID": scene_id, "controls": [control.to_wire() for control in controls]},
        )
        updated = decode_controls(require_list(result, "controls"))
        self._cache.store_controls(scene_id, updated)
        return updated

    async def delete_controls(self, scene_id: str, control_ids: Sequence[str]) -> bool:
        if not scene_id:
            raise InteractiveValidationError("A scene id is required")
        if not control_ids:
            raise InteractiveValidationError("At least one control id is required")
        await self._mutate(
            "deleteControls", {"sceneID": scene_id, "controlIDs": list(control_ids)}
        )
        self._cache.remove_controls(scene_id, control_ids)
        return True

    @staticmethod
    def _validate_control_batch(scene_id: str, controls: Sequence[Control]) -> None:
        if not scene_id:
            raise InteractiveValidationError("A scene id is required")
        if not controls:
            raise InteractiveValidationError("At least one control is required")
        seen: set[str] = set()
        for control in controls:
            if not control.kind:
                raise InteractiveValidationError(f"Control {control.control_id} has no kind")
            if control.control_id in seen:
                raise InteractiveValidationError(f"Duplicate control id {control.control_id}")
            seen.add(control.control_id)

    # -- 取引 ---------------------------------------------------------------

    async def capture(self, transaction_id: str) -> bool:
        """参加者の入力に紐づく取引を確定する。"""

        if not transaction_id:
            raise InteractiveValidationError("A transaction id is required")
        await self._mutate("capture", {"transactionID": transaction_id})
        return True


def build_interactive_client(
    session: InteractiveSession,
    *,
    settings: AppSettings | None = None,
    transport_factory: TransportFactory | None = None,
    logger=None,
) -> InteractiveClient:
    """共有設定からインタラクティブクライアントを構築するファクトリ。"""

    app_settings = settings or get_settings()
    interactive = app_settings.interactive
    return InteractiveClient(
        session,
        transport_factory=transport_factory,
        request_timeout=interactive.request_timeout_seconds,
        dispatch_drain_seconds=interactive.dispatch_drain_seconds,
        initial_packet_id=interactive.initial_packet_id,
        rate_limit_error_code=interactive.rate_limit_error_code,
        logger=logger,
    )


__all__ = [
    "InteractiveClient",
    "InteractiveSession",
    "build_interactive_client",
]
