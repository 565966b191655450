"""送信したメソッド呼び出しと応答を ID で突き合わせる。"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from stream_interactive.shared.logging import get_logger

from .errors import (
    InteractiveDisconnectedError,
    InteractiveReplyError,
    InteractiveTimeoutError,
)
from .packets import MethodPacket, PacketIdAllocator, ReplyPacket, encode_method

Transmit = Callable[[str], Awaitable[None]]
SendObserver = Callable[[MethodPacket], None]


@dataclass(slots=True)
class PendingRequest:
    """応答待ちの 1 リクエスト。"""

    id: int
    method: str
    issued_at: float
    future: asyncio.Future[Any] = field(repr=False)


class RequestCorrelator:
    """パケット ID の採番、応答待ちテーブル、応答の解決を担う。

    ID の採番・登録・送信は 1 つのロックの中で行うため、
    ワイヤ上の送信順と ID の昇順が一致する。応答待ち自体はロック外で行う。
    """

    def __init__(
        self,
        *,
        transmit: Transmit,
        allocator: PacketIdAllocator | None = None,
        default_timeout: float | None = None,
        on_send: SendObserver | None = None,
        logger=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transmit = transmit
        self._allocator = allocator or PacketIdAllocator()
        self._default_timeout = default_timeout
        self._on_send = on_send
        self._logger = logger or get_logger(__name__)
        self._clock = clock
        self._pending: dict[int, PendingRequest] = {}
        self._issue_lock = asyncio.Lock()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> tuple[int, ...]:
        return tuple(self._pending)

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """メソッドを送信し、対応する応答の `result` を返す。

        Raises:
            InteractiveReplyError: 応答に `error` が含まれていた場合。
            InteractiveDisconnectedError: 応答前に接続が破棄された場合。
            InteractiveTimeoutError: 待ち時間上限を超えた場合。
        """

        pending = await self._issue(method, params or {})
        effective_timeout = timeout if timeout is not None else self._default_timeout
        if effective_timeout is None:
            return await pending.future

        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), effective_timeout)
        except TimeoutError as exc:
            self._discard(pending.id)
            self._logger.warning(
                "interactive_request_timeout",
                packet_id=pending.id,
                method=method,
                timeout=effective_timeout,
            )
            msg = f"{method} (id={pending.id}) timed out after {effective_timeout}s"
            raise InteractiveTimeoutError(msg) from exc

    async def _issue(self, method: str, params: dict[str, Any]) -> PendingRequest:
        loop = asyncio.get_running_loop()
        async with self._issue_lock:
            packet_id = self._allocator.allocate()
            packet = MethodPacket(method=method, params=params, id=packet_id)
            pending = PendingRequest(
                id=packet_id,
                method=method,
                issued_at=self._clock(),
                future=loop.create_future(),
            )
            self._pending[packet_id] = pending
            if self._on_send is not None:
                self._on_send(packet)
            try:
                await self._transmit(encode_method(packet))
            except BaseException:
                self._discard(packet_id)
                raise
        self._logger.debug("interactive_request_sent", packet_id=packet_id, method=method)
        return pending

    def resolve(self, reply: ReplyPacket) -> bool:
        """応答で応答待ちエントリを解決する。該当がなければ破棄して False。"""

        pending = self._pending.pop(reply.id, None)
        if pending is None:
            self._logger.warning("interactive_reply_unmatched", packet_id=reply.id)
            return False
        if pending.future.done():
            return False

        if reply.error is not None:
            pending.future.set_exception(
                InteractiveReplyError(
                    pending.method,
                    reply.error.code,
                    reply.error.message,
                    reply.error.path,
                )
            )
        else:
            pending.future.set_result(reply.result)
        self._logger.debug(
            "interactive_reply_resolved",
            packet_id=reply.id,
            method=pending.method,
            elapsed=round(self._clock() - pending.issued_at, 4),
            error=reply.error.code if reply.error else None,
        )
        return True

    def fail_all(self, error: Exception | None = None) -> int:
        """すべての応答待ちを切断エラーで一度だけ解決する。"""

        pending, self._pending = self._pending, {}
        failed = 0
        for entry in pending.values():
            if entry.future.done():
                continue
            entry.future.set_exception(error or InteractiveDisconnectedError())
            failed += 1
        if failed:
            self._logger.info("interactive_pending_cancelled", count=failed)
        return failed

    def _discard(self, packet_id: int) -> None:
        entry = self._pending.pop(packet_id, None)
        if entry is not None and not entry.future.done():
            entry.future.cancel()


__all__ = ["PendingRequest", "RequestCorrelator", "SendObserver", "Transmit"]
