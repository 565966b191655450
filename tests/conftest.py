"""インタラクティブサーバーを模したインメモリのサーバー/トランスポートと共通フィクスチャ。"""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from stream_interactive.infra.interactive import (
    InteractiveClient,
    InteractiveSession,
    InteractiveTransportError,
)


class FakeReply(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class FakeTransport:
    """サーバーへの送信を同期的に処理し、応答を受信キューに積む。"""

    def __init__(self, server: FakeInteractiveServer) -> None:
        self.server = server
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise InteractiveTransportError("closed")
        packet = json.loads(message)
        self.sent.append(packet)
        self.server.handle(self, packet)

    async def recv(self) -> str:
        frame = await self._inbox.get()
        if frame is None:
            raise InteractiveTransportError("closed")
        return frame

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def push(self, frame: Mapping[str, Any] | str) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """サーバー側からの切断を模す。"""

        self._inbox.put_nowait(None)


class FakeInteractiveServer:
    """インタラクティブサーバーの最小実装。"""

    def __init__(self) -> None:
        self.scenes: dict[str, dict[str, Any]] = {
            "default": {"sceneID": "default", "controls": [], "meta": {}}
        }
        self.groups: dict[str, dict[str, Any]] = {
            "default": {"groupID": "default", "sceneID": "default", "meta": {}}
        }
        self.participants: list[dict[str, Any]] = []
        self.throttles: dict[str, dict[str, int]] = {}
        self.page_size = 100
        self.auto_reply = True
        self.held: list[dict[str, Any]] = []
        self.fail_nth: dict[str, tuple[int, int, str]] = {}
        self.calls: dict[str, int] = {}
        self.transports: list[FakeTransport] = []
        self.headers: list[dict[str, str]] = []
        self.refuse = False

    async def factory(self, url: str, headers: Mapping[str, str]) -> FakeTransport:
        if self.refuse:
            raise InteractiveTransportError("connection refused")
        transport = FakeTransport(self)
        self.transports.append(transport)
        self.headers.append(dict(headers))
        return transport

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    def sent_methods(self) -> list[str]:
        return [packet["method"] for transport in self.transports for packet in transport.sent]

    def handle(self, transport: FakeTransport, packet: dict[str, Any]) -> None:
        if not self.auto_reply:
            self.held.append(packet)
            return
        self.reply(transport, packet)

    def release(self) -> None:
        held, self.held = self.held, []
        for packet in held:
            self.reply(self.transport, packet)

    def reply(self, transport: FakeTransport, packet: dict[str, Any]) -> None:
        method = packet["method"]
        self.calls[method] = self.calls.get(method, 0) + 1
        try:
            failure = self.fail_nth.get(method)
            if failure and failure[0] == self.calls[method]:
                raise FakeReply(failure[1], failure[2])
            handler: Callable[[dict[str, Any]], Any] | None = getattr(self, f"_on_{method}", None)
            if handler is None:
                raise FakeReply(4003, f"Unknown method {method}")
            result = handler(packet.get("params") or {})
        except FakeReply as exc:
            transport.push(
                {
                    "type": "reply",
                    "id": packet["id"],
                    "result": None,
                    "error": {"code": exc.code, "message": exc.message, "path": method},
                }
            )
            return
        transport.push({"type": "reply", "id": packet["id"], "result": result, "error": None})

    # -- handlers -------------------------------------------------------------

    def _on_ready(self, params: dict[str, Any]) -> None:
        return None

    def _on_getTime(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"time": 1_700_000_000_000}

    def _on_getMemoryStats(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"usedBytes": 2048, "totalBytes": 4096, "resources": {"scenes": 1}}

    def _on_getScenes(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"scenes": copy.deepcopy(list(self.scenes.values()))}

    def _on_createScenes(self, params: dict[str, Any]) -> dict[str, Any]:
        created = []
        for scene in params["scenes"]:
            if scene["sceneID"] in self.scenes:
                raise FakeReply(4011, "Scene already exists")
            stored = {**scene, "controls": list(scene.get("controls", [])), "etag": "1"}
            self.scenes[scene["sceneID"]] = stored
            created.append(copy.deepcopy(stored))
        return {"scenes": created}

    def _on_updateScenes(self, params: dict[str, Any]) -> dict[str, Any]:
        updated = []
        for scene in params["scenes"]:
            if scene["sceneID"] not in self.scenes:
                raise FakeReply(4010, "Unknown scene")
            self.scenes[scene["sceneID"]] = {**scene, "etag": "2"}
            updated.append(copy.deepcopy(self.scenes[scene["sceneID"]]))
        return {"scenes": updated}

    def _on_deleteScene(self, params: dict[str, Any]) -> None:
        scene_id = params["sceneID"]
        if scene_id not in self.scenes:
            raise FakeReply(4010, "Unknown scene")
        del self.scenes[scene_id]
        for group in self.groups.values():
            if group["sceneID"] == scene_id:
                group["sceneID"] = params["reassignSceneID"]

    def _scene(self, scene_id: str) -> dict[str, Any]:
        if scene_id not in self.scenes:
            raise FakeReply(4010, "Unknown scene")
        return self.scenes[scene_id]

    def _on_createControls(self, params: dict[str, Any]) -> dict[str, Any]:
        scene = self._scene(params["sceneID"])
        created = []
        for control in params["controls"]:
            stored = {**control, "etag": "1"}
            scene["controls"].append(stored)
            created.append(copy.deepcopy(stored))
        return {"sceneID": params["sceneID"], "controls": created}

    def _on_updateControls(self, params: dict[str, Any]) -> dict[str, Any]:
        scene = self._scene(params["sceneID"])
        updated = []
        for control in params["controls"]:
            for index, existing in enumerate(scene["controls"]):
                if existing["controlID"] == control["controlID"]:
                    scene["controls"][index] = {**control, "etag": "2"}
                    updated.append(copy.deepcopy(scene["controls"][index]))
                    break
            else:
                raise FakeReply(4012, "Unknown control")
        return {"controls": updated}

    def _on_deleteControls(self, params: dict[str, Any]) -> None:
        scene = self._scene(params["sceneID"])
        removed = set(params["controlIDs"])
        scene["controls"] = [c for c in scene["controls"] if c["controlID"] not in removed]

    def _on_getGroups(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"groups": copy.deepcopy(list(self.groups.values()))}

    def _on_createGroups(self, params: dict[str, Any]) -> dict[str, Any]:
        created = []
        for group in params["groups"]:
            self._scene(group["sceneID"])
            self.groups[group["groupID"]] = {**group, "etag": "1"}
            created.append(copy.deepcopy(self.groups[group["groupID"]]))
        return {"groups": created}

    def _on_updateGroups(self, params: dict[str, Any]) -> dict[str, Any]:
        updated = []
        for group in params["groups"]:
            self.groups[group["groupID"]] = {**group, "etag": "2"}
            updated.append(copy.deepcopy(self.groups[group["groupID"]]))
        return {"groups": updated}

    def _on_deleteGroup(self, params: dict[str, Any]) -> None:
        self.groups.pop(params["groupID"], None)
        for participant in self.participants:
            if participant["groupID"] == params["groupID"]:
                participant["groupID"] = params["reassignGroupID"]

    def _on_setBandwidthThrottle(self, params: dict[str, Any]) -> None:
        self.throttles.update(params)

    def _on_getThrottleState(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            method: {
                "inserted": 0,
                "rejected": 0,
                "state": setting["capacity"],
                "capacity": setting["capacity"],
                "drainRate": setting["drainRate"],
            }
            for method, setting in self.throttles.items()
        }

    def _on_getAllParticipants(self, params: dict[str, Any]) -> dict[str, Any]:
        ordered = sorted(self.participants, key=lambda p: p["connectedAt"])
        remaining = [p for p in ordered if p["connectedAt"] > params.get("from", 0)]
        page = remaining[: self.page_size]
        return {
            "participants": copy.deepcopy(page),
            "total": len(ordered),
            "hasMore": len(remaining) > len(page),
        }

    def _on_getActiveParticipants(self, params: dict[str, Any]) -> dict[str, Any]:
        active = sorted(
            (p for p in self.participants if p["lastInputAt"] >= params["threshold"]),
            key=lambda p: p["lastInputAt"],
        )
        remaining = [p for p in active if p["lastInputAt"] > params.get("from", 0)]
        page = remaining[: self.page_size]
        return {
            "participants": copy.deepcopy(page),
            "total": len(active),
            "hasMore": len(remaining) > len(page),
        }

    def _on_updateParticipants(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"participants": copy.deepcopy(params["participants"])}

    def _on_capture(self, params: dict[str, Any]) -> None:
        return None


def participant_payload(index: int, *, group_id: str = "default") -> dict[str, Any]:
    return {
        "sessionID": f"session-{index}",
        "userID": 1000 + index,
        "username": f"viewer{index}",
        "level": 10,
        "groupID": group_id,
        "connectedAt": 1_700_000_000_000 + index * 1000,
        "lastInputAt": 1_700_000_000_000 + index * 1000,
        "disabled": False,
    }


@pytest.fixture()
def server() -> FakeInteractiveServer:
    return FakeInteractiveServer()


@pytest.fixture()
def make_client(server: FakeInteractiveServer) -> Callable[..., InteractiveClient]:
    def _make(**kwargs: Any) -> InteractiveClient:
        session = InteractiveSession(
            endpoint="wss://interactive.example.com/gameClient",
            access_token="token",
            version_id=42,
        )
        return InteractiveClient(session, transport_factory=server.factory, **kwargs)

    return _make


@pytest.fixture()
def participant() -> Callable[..., dict[str, Any]]:
    return participant_payload
