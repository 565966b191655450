"""インタラクティブ接続のトランスポートと接続状態機械。"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Protocol

import websockets
from websockets.asyncio.client import ClientConnection, connect

from stream_interactive.shared.logging import get_logger

from .errors import InteractiveStateError, InteractiveTransportError


class ConnectionState(str, Enum):
    """接続のライフサイクル。"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READY = "ready"
    DISCONNECTING = "disconnecting"


class InteractiveTransportProtocol(Protocol):
    """1 本の双方向接続。書き手 1 つと読み手 1 つを同時に許す。"""

    async def send(self, message: str) -> None:
        """テキストフレームを 1 つ送信する。"""

    async def recv(self) -> str | bytes:
        """次のフレームを受信する。接続が閉じたら InteractiveTransportError。"""

    async def close(self) -> None:
        """接続を閉じる。複数回呼んでもよい。"""


TransportFactory = Callable[[str, Mapping[str, str]], Awaitable[InteractiveTransportProtocol]]
FrameHandler = Callable[[str | bytes], None]
LostHandler = Callable[[Exception], Awaitable[None]]


class WebSocketTransport:
    """websockets の ClientConnection を包むトランスポート。"""

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    async def send(self, message: str) -> None:
        try:
            await self._connection.send(message)
        except websockets.exceptions.ConnectionClosed as exc:
            raise InteractiveTransportError("WebSocket closed while sending") from exc

    async def recv(self) -> str | bytes:
        try:
            return await self._connection.recv()
        except websockets.exceptions.ConnectionClosed as exc:
            raise InteractiveTransportError("WebSocket closed") from exc

    async def close(self) -> None:
        await self._connection.close()


async def open_websocket_transport(
    url: str, headers: Mapping[str, str]
) -> InteractiveTransportProtocol:
    """WebSocket を開いてトランスポートを返す既定のファクトリ。"""

    try:
        connection = await connect(url, additional_headers=dict(headers))
    except (OSError, websockets.exceptions.WebSocketException) as exc:
        msg = f"Failed to open interactive websocket: {exc}"
        raise InteractiveTransportError(msg) from exc
    return WebSocketTransport(connection)


class ConnectionManager:
    """トランスポートを所有し、接続/切断と受信ループを駆動する。

    受信ループはフレームを `on_frame` に渡すだけで、解釈はしない。
    受信中にトランスポートが失われた場合は `on_lost` を呼び出す。
    """

    def __init__(
        self,
        *,
        on_frame: FrameHandler,
        on_lost: LostHandler,
        transport_factory: TransportFactory | None = None,
        logger=None,
    ) -> None:
        self._on_frame = on_frame
        self._on_lost = on_lost
        self._transport_factory = transport_factory or open_websocket_transport
        self._logger = logger or get_logger(__name__)
        self._transport: InteractiveTransportProtocol | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._lost_task: asyncio.Task[None] | None = None
        self._closed: asyncio.Event | None = None
        self._write_lock = asyncio.Lock()
        self._state = ConnectionState.DISCONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.READY)

    def mark_ready(self, ready: bool = True) -> None:
        """ready ハンドシェイクの結果を状態に反映する。"""

        if not self.is_open:
            msg = f"Cannot change readiness while {self._state.value}"
            raise InteractiveStateError(msg)
        self._state = ConnectionState.READY if ready else ConnectionState.CONNECTED
        self._logger.info("interactive_state_changed", state=self._state.value)

    async def connect(self, url: str, headers: Mapping[str, str]) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            msg = f"Cannot connect while {self._state.value}"
            raise InteractiveStateError(msg)

        self._state = ConnectionState.CONNECTING
        self._logger.info("interactive_connecting", url=url)
        try:
            self._transport = await self._transport_factory(url, headers)
        except InteractiveTransportError:
            self._state = ConnectionState.DISCONNECTED
            raise
        except OSError as exc:
            self._state = ConnectionState.DISCONNECTED
            raise InteractiveTransportError(f"Failed to connect: {exc}") from exc

        self._state = ConnectionState.CONNECTED
        self._receive_task = asyncio.create_task(self._receive_loop(self._transport))
        self._logger.info("interactive_connected", url=url)

    async def transmit(self, message: str) -> None:
        """単一書き手としてフレームを送信する。

        送信側でトランスポートが失われた場合も `on_lost` による切断処理を起動する。
        呼び出し元には InteractiveTransportError をそのまま返す。
        """

        async with self._write_lock:
            if not self.is_open or self._transport is None:
                msg = f"Cannot send while {self._state.value}"
                raise InteractiveStateError(msg)
            try:
                await self._transport.send(message)
            except InteractiveTransportError as exc:
                self._logger.warning("interactive_send_failed", error=str(exc))
                self._schedule_lost(exc)
                raise

    def _schedule_lost(self, error: Exception) -> None:
        # 切断処理は書き込みロックを取るため、送信中のタスクとは別に走らせる
        if self._lost_task is not None and not self._lost_task.done():
            return
        self._lost_task = asyncio.create_task(self._on_lost(error))

    async def close(self, *, teardown: Callable[[], None] | None = None) -> bool:
        """送信中のフレームを待ってからトランスポートを閉じる。

        `teardown` は受信ループ停止後、DISCONNECTED へ遷移する直前に呼ばれる。
        別の呼び出しが閉じている最中なら、その完了を待ってから戻る。

        Returns:
            実際に閉じる処理を行った場合 True。すでに切断済みなら False。
        """

        if self._state is ConnectionState.DISCONNECTED:
            return False
        if self._state is ConnectionState.DISCONNECTING:
            if self._closed is not None:
                await self._closed.wait()
            return False

        self._state = ConnectionState.DISCONNECTING
        self._closed = closed = asyncio.Event()
        try:
            async with self._write_lock:
                transport, self._transport = self._transport, None
                if transport is not None:
                    try:
                        await transport.close()
                    except (OSError, InteractiveTransportError) as exc:
                        self._logger.warning("interactive_close_failed", error=str(exc))

            task, self._receive_task = self._receive_task, None
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    self._logger.exception("interactive_receive_task_failed")
        finally:
            try:
                if teardown is not None:
                    teardown()
            finally:
                self._state = ConnectionState.DISCONNECTED
                self._closed = None
                closed.set()
                self._logger.info("interactive_disconnected")
        return True

    async def _receive_loop(self, transport: InteractiveTransportProtocol) -> None:
        while True:
            try:
                frame = await transport.recv()
            except InteractiveTransportError as exc:
                if self._state is not ConnectionState.DISCONNECTING:
                    self._logger.warning("interactive_connection_lost", error=str(exc))
                    await self._on_lost(exc)
                return
            try:
                self._on_frame(frame)
            except Exception:
                self._logger.exception("interactive_frame_handler_failed")


__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "FrameHandler",
    "InteractiveTransportProtocol",
    "LostHandler",
    "TransportFactory",
    "WebSocketTransport",
    "open_websocket_transport",
]
