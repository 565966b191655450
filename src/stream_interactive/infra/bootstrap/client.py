"""インタラクティブ接続の前段で使う REST ルックアップ。

接続先ホストの一覧と、所有するインタラクティブゲームの取得だけを行う。
トークンの取得・更新やページングは行わない。
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from stream_interactive.infra.interactive.client import InteractiveSession
from stream_interactive.shared.config import AppSettings, get_settings
from stream_interactive.shared.exceptions import BaseAppError
from stream_interactive.shared.logging import get_logger
from stream_interactive.shared.types import DTO


class BootstrapError(BaseAppError):
    """ブートストラップ用 REST 呼び出しの失敗。"""

    default_message = "Interactive bootstrap request failed"


class BootstrapRateLimitError(BootstrapError):
    """レート超過に起因するエラー。"""

    default_message = "Interactive bootstrap request was rate limited"


@dataclass(slots=True)
class BootstrapRetryConfig:
    """リトライ設定。"""

    max_attempts: int = 3
    backoff_factor: float = 0.5
    retriable_statuses: tuple[int, ...] = (500, 502, 503, 504)


@dataclass(slots=True)
class InteractiveHost(DTO):
    """接続先の WebSocket エンドポイント。"""

    address: str


@dataclass(slots=True)
class InteractiveGameVersion(DTO):
    """ゲームのバージョン。"""

    id: int
    version: str | None = None
    state: str | None = None


@dataclass(slots=True)
class InteractiveGameListing(DTO):
    """所有するインタラクティブゲーム。"""

    id: int
    name: str
    owner_id: int | None = None
    versions: tuple[InteractiveGameVersion, ...] = field(default_factory=tuple)

    @property
    def latest_version(self) -> InteractiveGameVersion | None:
        return max(self.versions, key=lambda version: version.id, default=None)


def _parse_game(raw: Any) -> InteractiveGameListing:
    if not isinstance(raw, dict) or "id" not in raw:
        msg = "Owned game entry is malformed"
        raise BootstrapError(msg)
    versions = tuple(
        InteractiveGameVersion(
            id=int(item["id"]),
            version=item.get("version"),
            state=item.get("state"),
        )
        for item in raw.get("versions") or ()
        if isinstance(item, dict) and "id" in item
    )
    owner_id = raw.get("ownerId")
    return InteractiveGameListing(
        id=int(raw["id"]),
        name=str(raw.get("name") or ""),
        owner_id=owner_id if isinstance(owner_id, int) else None,
        versions=versions,
    )


class InteractiveBootstrapClient:
    """ホスト一覧と所有ゲームを取得するクライアント。"""

    def __init__(
        self,
        *,
        hosts_url: str,
        api_base_url: str,
        access_token: str,
        retry_config: BootstrapRetryConfig | None = None,
        http_get: Callable[..., httpx.Response] = httpx.get,
        timeout: float = 10.0,
        logger=None,
        sleep_func: Callable[[float], None] = time.sleep,
    ) -> None:
        self._hosts_url = hosts_url
        self._api_base_url = api_base_url.rstrip("/")
        self._access_token = access_token
        self._retry_config = retry_config or BootstrapRetryConfig()
        self._http_get = http_get
        self._timeout = timeout
        self._sleep = sleep_func
        self._logger = logger or get_logger(__name__)

    def fetch_hosts(self) -> tuple[InteractiveHost, ...]:
        payload = self._get(self._hosts_url, authorized=False)
        if not isinstance(payload, list):
            raise BootstrapError("Interactive hosts payload must be an array")
        return tuple(
            InteractiveHost(address=str(item["address"]))
            for item in payload
            if isinstance(item, dict) and item.get("address")
        )

    def fetch_owned_games(
        self, channel_id: int | None = None
    ) -> tuple[InteractiveGameListing, ...]:
        """所有するゲーム一覧を 1 リクエストで取得する。"""

        params = {"where": f"ownerId:eq:{channel_id}"} if channel_id is not None else None
        payload = self._get(f"{self._api_base_url}/interactive/games/owned", params=params)
        if not isinstance(payload, list):
            raise BootstrapError("Owned games payload must be an array")
        return tuple(_parse_game(item) for item in payload)

    def build_session(
        self,
        *,
        version_id: int | None = None,
        share_code: str | None = None,
        protocol_version: str = "2.0",
    ) -> InteractiveSession:
        """先頭のホストへ接続するセッションを作る。"""

        hosts = self.fetch_hosts()
        if not hosts:
            raise BootstrapError("No interactive hosts are available")
        return InteractiveSession(
            endpoint=hosts[0].address,
            access_token=self._access_token,
            version_id=version_id,
            share_code=share_code,
            protocol_version=protocol_version,
        )

    def _get(
        self,
        url: str,
        *,
        params: dict[str, str] | None = None,
        authorized: bool = True,
    ) -> Any:
        headers = {"Accept": "application/json"}
        if authorized:
            headers["Authorization"] = f"Bearer {self._access_token}"

        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._http_get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self._timeout,
                )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as exc:
                status_code = exc.response.status_code if exc.response is not None else None
                if status_code == 429:
                    self._logger.warning("interactive_bootstrap_rate_limited", url=url)
                    raise BootstrapRateLimitError() from exc
                if not self._should_retry(status_code, attempt):
                    self._logger.error(
                        "interactive_bootstrap_failed",
                        url=url,
                        status_code=status_code,
                        attempt=attempt,
                    )
                    msg = f"Bootstrap request failed (status={status_code})"
                    raise BootstrapError(msg) from exc

                self._logger.warning(
                    "interactive_bootstrap_retry",
                    url=url,
                    status_code=status_code,
                    attempt=attempt,
                )
                self._sleep(self._retry_config.backoff_factor * attempt)
            except httpx.RequestError as exc:
                if not self._should_retry(None, attempt):
                    self._logger.error(
                        "interactive_bootstrap_request_error",
                        url=url,
                        attempt=attempt,
                        message=str(exc),
                    )
                    raise BootstrapError(f"Bootstrap request error: {exc}") from exc

                self._logger.warning(
                    "interactive_bootstrap_retry",
                    url=url,
                    status_code=None,
                    attempt=attempt,
                )
                self._sleep(self._retry_config.backoff_factor * attempt)

    def _should_retry(self, status_code: int | None, attempt: int) -> bool:
        if attempt >= self._retry_config.max_attempts:
            return False
        if status_code is None:
            return True
        return status_code in self._retry_config.retriable_statuses


def build_bootstrap_client(
    *,
    settings: AppSettings | None = None,
    retry_config: BootstrapRetryConfig | None = None,
    logger=None,
) -> InteractiveBootstrapClient:
    """共有設定からブートストラップクライアントを構築するファクトリ。"""

    app_settings = settings or get_settings()
    return InteractiveBootstrapClient(
        hosts_url=str(app_settings.interactive.hosts_url),
        api_base_url=str(app_settings.interactive.api_base_url),
        access_token=app_settings.auth.access_token.get_secret_value(),
        retry_config=retry_config,
        logger=logger,
    )


__all__ = [
    "BootstrapError",
    "BootstrapRateLimitError",
    "BootstrapRetryConfig",
    "InteractiveBootstrapClient",
    "InteractiveGameListing",
    "InteractiveGameVersion",
    "InteractiveHost",
    "build_bootstrap_client",
]
