"""メソッド単位の帯域スロットルの設定と、クライアント側の助言的な計数。"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from stream_interactive.shared.logging import get_logger
from stream_interactive.shared.types import DTO

from .errors import InteractiveProtocolError


@dataclass(slots=True)
class ThrottleSetting(DTO):
    """1 メソッド分のスロットル設定。

    `capacity_per_period` 個のトークンが `period_millis` ごとに補充される。
    ワイヤ上では `capacity` / `drainRate` として送る。
    """

    method: str
    capacity_per_period: int
    period_millis: int

    def __post_init__(self) -> None:
        if not self.method:
            msg = "Throttle method name must not be empty"
            raise ValueError(msg)
        if self.capacity_per_period < 0 or self.period_millis <= 0:
            msg = f"Invalid throttle for {self.method}: capacity and period must be positive"
            raise ValueError(msg)

    def to_wire(self) -> dict[str, int]:
        return {"capacity": self.capacity_per_period, "drainRate": self.period_millis}


@dataclass(slots=True)
class ThrottleCounter:
    """実行時のみ保持する計数。周期ごとにリセットされる。"""

    used: int
    window_start: float


@dataclass(slots=True)
class ThrottleState(DTO):
    """サーバーが返す 1 メソッド分のスロットル状態。"""

    method: str
    inserted: int = 0
    rejected: int = 0
    state: int = 0
    capacity: int | None = None
    period_millis: int | None = None


def encode_throttle_settings(settings: Iterable[ThrottleSetting]) -> dict[str, dict[str, int]]:
    """`setBandwidthThrottle` のパラメータを組み立てる。"""

    return {setting.method: setting.to_wire() for setting in settings}


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def parse_throttle_state(payload: Any) -> dict[str, ThrottleState]:
    """`getThrottleState` の結果をメソッド名キーの dict に変換する。"""

    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise InteractiveProtocolError("getThrottleState result must be an object")

    states: dict[str, ThrottleState] = {}
    for method, raw in payload.items():
        if not isinstance(raw, Mapping):
            continue
        states[str(method)] = ThrottleState(
            method=str(method),
            inserted=_as_int(raw.get("inserted")) or 0,
            rejected=_as_int(raw.get("rejected")) or 0,
            state=_as_int(raw.get("state")) or 0,
            capacity=_as_int(raw.get("capacity")),
            period_millis=_as_int(raw.get("drainRate")),
        )
    return states


class ThrottleManager:
    """トークンバケットで送信回数を数える。

    実際の制限はサーバーが行うため、ここでの判定は助言に留まり、
    予算超過でも送信を止めない。
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, logger=None) -> None:
        self._clock = clock
        self._logger = logger or get_logger(__name__)
        self._settings: dict[str, ThrottleSetting] = {}
        self._counters: dict[str, ThrottleCounter] = {}

    @property
    def settings(self) -> dict[str, ThrottleSetting]:
        return dict(self._settings)

    def setting_for(self, method: str) -> ThrottleSetting | None:
        return self._settings.get(method)

    def apply(self, settings: Iterable[ThrottleSetting]) -> None:
        """サーバーが受理した設定で置き換え、計数をリセットする。"""

        self._settings = {setting.method: setting for setting in settings}
        self._counters.clear()
        self._logger.info("interactive_throttle_applied", methods=sorted(self._settings))

    def sync(self, states: Mapping[str, ThrottleState]) -> None:
        """サーバーから取得した状態でローカルの設定を上書きする。"""

        for method, state in states.items():
            if state.capacity is None:
                continue
            period = state.period_millis
            if period is None or period <= 0:
                current = self._settings.get(method)
                period = current.period_millis if current else None
            if period is None or period <= 0:
                continue
            self._settings[method] = ThrottleSetting(
                method=method,
                capacity_per_period=state.capacity,
                period_millis=period,
            )

    def record(self, method: str) -> bool:
        """送信 1 回分を計上する。予算内なら True、超過なら警告して False。"""

        setting = self._settings.get(method)
        if setting is None:
            return True

        now = self._clock()
        period_seconds = setting.period_millis / 1000
        counter = self._counters.get(method)
        if counter is None or now - counter.window_start >= period_seconds:
            counter = ThrottleCounter(used=0, window_start=now)
            self._counters[method] = counter

        counter.used += 1
        if counter.used <= setting.capacity_per_period:
            return True

        self._logger.warning(
            "interactive_throttle_exceeded",
            method=method,
            used=counter.used,
            capacity=setting.capacity_per_period,
            period_millis=setting.period_millis,
        )
        return False

    def remaining(self, method: str) -> int | None:
        """現在の周期で残っているトークン数。設定がなければ None。"""

        setting = self._settings.get(method)
        if setting is None:
            return None
        counter = self._counters.get(method)
        if counter is None or self._clock() - counter.window_start >= setting.period_millis / 1000:
            return setting.capacity_per_period
        return max(setting.capacity_per_period - counter.used, 0)

    def reset_counters(self) -> None:
        self._counters.clear()


__all__ = [
    "ThrottleCounter",
    "ThrottleManager",
    "ThrottleSetting",
    "ThrottleState",
    "encode_throttle_settings",
    "parse_throttle_state",
]
