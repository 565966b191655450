"""アプリケーション全体で共有する設定ローダー。"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AnyHttpUrl, BaseModel, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

EnvName = Literal["local", "test", "staging", "production"]


class AuthSettings(BaseModel):
    """外部の OAuth レイヤから受け取った資格情報。"""

    access_token: SecretStr = Field(..., description="Bearer access token")


class InteractiveSettings(BaseModel):
    """インタラクティブ接続に関する設定。"""

    hosts_url: AnyHttpUrl = Field(
        "https://mixer.com/api/v1/interactive/hosts",
        description="インタラクティブ接続先ホスト一覧のエンドポイント",
    )
    api_base_url: AnyHttpUrl = Field(
        "https://mixer.com/api/v1", description="REST API のベース URL"
    )
    protocol_version: str = Field("2.0", description="X-Protocol-Version ヘッダー値")
    version_id: int | None = Field(None, description="接続するゲームのバージョン ID")
    share_code: str | None = Field(None, description="共有コード (非公開バージョン用)")
    request_timeout_seconds: float | None = Field(
        None,
        gt=0,
        description="応答待ちの上限秒数。未指定なら切断まで待ち続ける",
    )
    dispatch_drain_seconds: float = Field(
        1.0,
        ge=0,
        description="切断時にイベント配送キューを捌き切るまで待つ秒数",
    )
    initial_packet_id: int = Field(0, ge=0, description="パケット ID の初期値")
    rate_limit_error_code: int = Field(
        4024, description="サーバーがスロットル超過を示すエラーコード"
    )


class AppSettings(BaseSettings):
    """共有設定。`.env` 読み込みと環境変数バリデーションを担う。"""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    environment: EnvName = Field("local", description="実行環境識別子")
    log_level: str = Field("INFO", description="ルートロガーのログレベル")
    auth: AuthSettings
    interactive: InteractiveSettings = Field(default_factory=InteractiveSettings)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """設定をロードし、再利用する。

    LRU キャッシュによりプロセス内での重複読み込みを防ぎ、
    `pytest` などから `get_settings.cache_clear()` を呼び出すことで再読込できる。
    """

    try:
        return AppSettings()
    except ValidationError as exc:  # pragma: no cover - ValidationError carries context
        raise ConfigurationError(str(exc)) from exc


__all__ = [
    "AppSettings",
    "AuthSettings",
    "InteractiveSettings",
    "EnvName",
    "get_settings",
]
