"""サーバーが所有するリソースのクライアント側ミラー。

更新はサーバーの応答かプッシュイベントを適用したときだけ行い、
ローカルで推測して書き換えることはない。応答に含まれる実体は
キャッシュ上の既存エントリを丸ごと置き換える (フィールド単位のマージはしない)。
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from typing import Any

from stream_interactive.shared.logging import get_logger
from stream_interactive.shared.types import DEFAULT_GROUP_ID, DEFAULT_SCENE_ID

from .errors import InteractiveValidationError
from .models import (
    Control,
    Group,
    Participant,
    Scene,
    decode_controls,
    decode_group,
    decode_participant,
    decode_scene,
    require_list,
)


class ResourceStateCache:
    """シーン・グループ・参加者のミラー。コントロールはシーンの中に保持する。"""

    def __init__(self, *, logger=None) -> None:
        self._logger = logger or get_logger(__name__)
        self._scenes: dict[str, Scene] = {}
        self._groups: dict[str, Group] = {}
        self._participants: dict[str, Participant] = {}

    # -- 参照 ---------------------------------------------------------------

    @property
    def scenes(self) -> tuple[Scene, ...]:
        return tuple(self._scenes.values())

    @property
    def groups(self) -> tuple[Group, ...]:
        return tuple(self._groups.values())

    @property
    def participants(self) -> tuple[Participant, ...]:
        return tuple(self._participants.values())

    def scene(self, scene_id: str) -> Scene | None:
        return self._scenes.get(scene_id)

    def group(self, group_id: str) -> Group | None:
        return self._groups.get(group_id)

    def participant(self, session_id: str) -> Participant | None:
        return self._participants.get(session_id)

    def control(self, scene_id: str, control_id: str) -> Control | None:
        scene = self._scenes.get(scene_id)
        return scene.control(control_id) if scene else None

    @property
    def is_empty(self) -> bool:
        return not (self._scenes or self._groups or self._participants)

    # -- 検証 ---------------------------------------------------------------

    def validate_scene_deletion(self, scene_id: str, reassign_scene_id: str | None) -> None:
        """シーン削除の前提条件を送信前に確認する。"""

        self._validate_deletion(
            "scene",
            scene_id,
            reassign_scene_id,
            reserved=DEFAULT_SCENE_ID,
            known=self._scenes,
        )

    def validate_group_deletion(self, group_id: str, reassign_group_id: str | None) -> None:
        """グループ削除の前提条件を送信前に確認する。"""

        self._validate_deletion(
            "group",
            group_id,
            reassign_group_id,
            reserved=DEFAULT_GROUP_ID,
            known=self._groups,
        )

    def validate_control_updates(self, scene_id: str, controls: Iterable[Control]) -> None:
        """既知のコントロールの種類を変えようとしていないか確認する。"""

        for control in controls:
            current = self.control(scene_id, control.control_id)
            if current is not None and current.kind != control.kind:
                msg = (
                    f"Control {control.control_id} is a {current.kind}; "
                    f"its kind cannot change to {control.kind}"
                )
                raise InteractiveValidationError(msg)

    @staticmethod
    def _validate_deletion(
        what: str,
        target_id: str,
        reassign_id: str | None,
        *,
        reserved: str,
        known: dict[str, object],
    ) -> None:
        if not target_id:
            raise InteractiveValidationError(f"A {what} id is required")
        if target_id == reserved:
            raise InteractiveValidationError(f"The {reserved} {what} cannot be deleted")
        if not reassign_id:
            raise InteractiveValidationError(
                f"Deleting {what} {target_id} requires a reassignment target"
            )
        if reassign_id == target_id:
            raise InteractiveValidationError(
                f"{what.capitalize()} {target_id} cannot be reassigned to itself"
            )
        if reassign_id != reserved and reassign_id not in known:
            raise InteractiveValidationError(
                f"Reassignment target {what} {reassign_id} is not known"
            )

    # -- シーン ---------------------------------------------------------------

    def replace_scenes(self, scenes: Iterable[Scene]) -> None:
        """`getScenes` の応答でシーン集合を丸ごと置き換える。"""

        self._scenes = {scene.scene_id: scene for scene in scenes}

    def store_scenes(self, scenes: Iterable[Scene]) -> None:
        for scene in scenes:
            self._scenes[scene.scene_id] = scene

    def remove_scene(self, scene_id: str, reassign_scene_id: str) -> None:
        """削除を適用し、そのシーンを指していたグループを移し替える。

        コントロールはシーンに所有されるため、移し替えずにシーンと一緒に消える。
        """

        self._scenes.pop(scene_id, None)
        for group_id, group in list(self._groups.items()):
            if group.scene_id == scene_id:
                self._groups[group_id] = replace(group, scene_id=reassign_scene_id)
        self._logger.debug(
            "interactive_cache_scene_removed",
            scene_id=scene_id,
            reassigned_to=reassign_scene_id,
        )

    # -- コントロール -----------------------------------------------------------

    def store_controls(self, scene_id: str, controls: Iterable[Control]) -> None:
        """応答のコントロールでシーン内の同 ID エントリを置き換え、新規は末尾に追加する。"""

        scene = self._scenes.get(scene_id)
        if scene is None:
            return
        incoming = {control.control_id: control for control in controls}
        merged = [incoming.pop(control.control_id, control) for control in scene.controls]
        merged.extend(incoming.values())
        self._scenes[scene_id] = replace(scene, controls=tuple(merged))

    def remove_controls(self, scene_id: str, control_ids: Iterable[str]) -> None:
        scene = self._scenes.get(scene_id)
        if scene is None:
            return
        removed = set(control_ids)
        self._scenes[scene_id] = replace(
            scene,
            controls=tuple(c for c in scene.controls if c.control_id not in removed),
        )

    # -- グループ ---------------------------------------------------------------

    def replace_groups(self, groups: Iterable[Group]) -> None:
        self._groups = {group.group_id: group for group in groups}

    def store_groups(self, groups: Iterable[Group]) -> None:
        for group in groups:
            self._groups[group.group_id] = group

    def remove_group(self, group_id: str, reassign_group_id: str) -> None:
        """削除を適用し、そのグループにいた参加者を移し替える。"""

        self._groups.pop(group_id, None)
        for session_id, participant in list(self._participants.items()):
            if participant.group_id == group_id:
                self._participants[session_id] = replace(
                    participant, group_id=reassign_group_id
                )

    # -- 参加者 ---------------------------------------------------------------

    def replace_participants(self, participants: Iterable[Participant]) -> None:
        self._participants = {p.session_id: p for p in participants}

    def store_participants(self, participants: Iterable[Participant]) -> None:
        for participant in participants:
            self._participants[participant.session_id] = participant

    def remove_participants(self, session_ids: Iterable[str]) -> None:
        for session_id in session_ids:
            self._participants.pop(session_id, None)

    # -- プッシュイベント -----------------------------------------------------------

    def apply_event(self, method: str, params: Mapping[str, Any]) -> bool:
        """サーバー発のリソース変更イベントを適用する。対象外のメソッドなら False。"""

        handler = _EVENT_APPLIERS.get(method)
        if handler is None:
            return False
        handler(self, params)
        self._logger.debug("interactive_cache_event_applied", method=method)
        return True

    # -- ライフサイクル -----------------------------------------------------------

    def clear(self) -> None:
        """切断時に呼ばれる。再接続後の暗黙の再開はしない。"""

        self._scenes.clear()
        self._groups.clear()
        self._participants.clear()


__all__ = ["ResourceStateCache"]


def _scene_created(cache: ResourceStateCache, params: Mapping[str, Any]) -> None:
    cache.store_scenes(decode_scene(item) for item in require_list(params, "scenes"))


def _scene_deleted(cache: ResourceStateCache, params: Mapping[str, Any]) -> None:
    scene_id = params.get("sceneID")
    if isinstance(scene_id, str):
        cache.remove_scene(scene_id, params.get("reassignSceneID") or DEFAULT_SCENE_ID)


def _group_created(cache: ResourceStateCache, params: Mapping[str, Any]) -> None:
    cache.store_groups(decode_group(item) for item in require_list(params, "groups"))


def _group_deleted(cache: ResourceStateCache, params: Mapping[str, Any]) -> None:
    group_id = params.get("groupID")
    if isinstance(group_id, str):
        cache.remove_group(group_id, params.get("reassignGroupID") or DEFAULT_GROUP_ID)


def _control_created(cache: ResourceStateCache, params: Mapping[str, Any]) -> None:
    scene_id = params.get("sceneID")
    if isinstance(scene_id, str):
        cache.store_controls(scene_id, decode_controls(require_list(params, "controls")))


def _control_deleted(cache: ResourceStateCache, params: Mapping[str, Any]) -> None:
    scene_id = params.get("sceneID")
    if not isinstance(scene_id, str):
        return
    control_ids = [
        item.get("controlID")
        for item in require_list(params, "controls")
        if isinstance(item, Mapping)
    ]
    cache.remove_controls(scene_id, [cid for cid in control_ids if isinstance(cid, str)])


def _participant_joined(cache: ResourceStateCache, params: Mapping[str, Any]) -> None:
    cache.store_participants(
        decode_participant(item) for item in require_list(params, "participants")
    )


def _participant_left(cache: ResourceStateCache, params: Mapping[str, Any]) -> None:
    cache.remove_participants(
        decode_participant(item).session_id for item in require_list(params, "participants")
    )


_EVENT_APPLIERS: dict[str, Callable[[ResourceStateCache, Mapping[str, Any]], None]] = {
    "onSceneCreate": _scene_created,
    "onSceneUpdate": _scene_created,
    "onSceneDelete": _scene_deleted,
    "onGroupCreate": _group_created,
    "onGroupUpdate": _group_created,
    "onGroupDelete": _group_deleted,
    "onControlCreate": _control_created,
    "onControlUpdate": _control_created,
    "onControlDelete": _control_deleted,
    "onParticipantJoin": _participant_joined,
    "onParticipantUpdate": _participant_joined,
    "onParticipantLeave": _participant_left,
}
