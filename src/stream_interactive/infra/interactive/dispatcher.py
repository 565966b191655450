"""サーバー発のメソッド/イベントを購読者へ配送する。"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from stream_interactive.shared.logging import get_logger

from .packets import MethodPacket

EventHandler = Callable[[MethodPacket], Awaitable[Any] | Any]
Unsubscribe = Callable[[], None]

ALL_METHODS = "*"


class _Observer:
    """購読者 1 件と、その専用配送キュー。"""

    __slots__ = ("handler", "method", "queue", "worker")

    def __init__(self, method: str, handler: EventHandler) -> None:
        self.method = method
        self.handler = handler
        self.queue: asyncio.Queue[MethodPacket | None] | None = None
        self.worker: asyncio.Task[None] | None = None


class EventDispatcher:
    """メソッド名ごとの購読者レジストリ。

    `publish` は受信ループから呼ばれ、決してブロックしない。購読者ごとに
    キューとワーカーを持つため、同じ購読者には受信順に届き、
    異なる購読者間の順序は保証しない。
    """

    def __init__(self, *, logger=None) -> None:
        self._logger = logger or get_logger(__name__)
        self._observers: dict[str, list[_Observer]] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, method: str, handler: EventHandler) -> Unsubscribe:
        """`method` の受信時に `handler` を呼び出す。`"*"` はすべてのメソッド。"""

        observer = _Observer(method, handler)
        self._observers.setdefault(method, []).append(observer)
        if self._running:
            self._start_worker(observer)
        return lambda: self._unsubscribe(observer)

    def subscribe_all(self, handler: EventHandler) -> Unsubscribe:
        return self.subscribe(ALL_METHODS, handler)

    def observer_count(self, method: str | None = None) -> int:
        if method is None:
            return sum(len(observers) for observers in self._observers.values())
        return len(self._observers.get(method, ()))

    def publish(self, packet: MethodPacket) -> int:
        """該当する購読者のキューへ積む。積んだ件数を返す。"""

        targets = [
            *self._observers.get(packet.method, ()),
            *self._observers.get(ALL_METHODS, ()),
        ]
        delivered = 0
        for observer in targets:
            if observer.queue is None:
                continue
            observer.queue.put_nowait(packet)
            delivered += 1
        if not delivered:
            self._logger.debug("interactive_event_unobserved", method=packet.method)
        return delivered

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for observers in self._observers.values():
            for observer in observers:
                self._start_worker(observer)

    async def stop(self, *, drain_timeout: float = 1.0) -> None:
        """積まれたイベントを配送し切ってからワーカーを止める。

        `drain_timeout` を過ぎても終わらないワーカーはキャンセルする。
        """

        if not self._running:
            return
        self._running = False

        workers: list[asyncio.Task[None]] = []
        for observers in self._observers.values():
            for observer in observers:
                if observer.queue is not None:
                    observer.queue.put_nowait(None)
                if observer.worker is not None:
                    workers.append(observer.worker)
                observer.queue = None
                observer.worker = None

        if not workers:
            return
        _, still_running = await asyncio.wait(workers, timeout=drain_timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            self._logger.warning("interactive_dispatch_drain_timeout", workers=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    def _start_worker(self, observer: _Observer) -> None:
        queue: asyncio.Queue[MethodPacket | None] = asyncio.Queue()
        observer.queue = queue
        observer.worker = asyncio.create_task(self._drain(observer, queue))

    def _unsubscribe(self, observer: _Observer) -> None:
        observers = self._observers.get(observer.method)
        if not observers or observer not in observers:
            return
        observers.remove(observer)
        if not observers:
            del self._observers[observer.method]
        if observer.queue is not None:
            observer.queue.put_nowait(None)
        observer.queue = None
        observer.worker = None

    async def _drain(self, observer: _Observer, queue: asyncio.Queue[MethodPacket | None]) -> None:
        while True:
            packet = await queue.get()
            if packet is None:
                return
            try:
                outcome = observer.handler(packet)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                self._logger.exception(
                    "interactive_observer_failed",
                    method=packet.method,
                    observer=observer.method,
                )


__all__ = ["ALL_METHODS", "EventDispatcher", "EventHandler", "Unsubscribe"]
