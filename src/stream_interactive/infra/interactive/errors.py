"""インタラクティブクライアントの例外階層。"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from stream_interactive.shared.exceptions import BaseAppError


class InteractiveClientError(BaseAppError):
    """インタラクティブクライアント共通の例外。"""

    default_message = "Interactive client error"


class InteractiveTransportError(InteractiveClientError):
    """接続の確立失敗や切断などトランスポート起因のエラー。"""

    default_message = "Interactive transport failure"


class InteractiveDisconnectedError(InteractiveClientError):
    """応答待ちの途中で接続が破棄されたことを示す。

    サーバーが返したアプリケーションエラーとは区別して扱うこと。
    """

    default_message = "Interactive connection was closed before a reply arrived"


class InteractiveProtocolError(InteractiveClientError):
    """解釈できないフレームを受信した。"""

    default_message = "Malformed interactive frame"


class InteractiveStateError(InteractiveClientError):
    """現在の接続状態では実行できない操作。"""

    default_message = "Operation not allowed in the current connection state"


class InteractiveValidationError(InteractiveClientError):
    """送信前に検出した呼び出し側の前提条件違反。"""

    default_message = "Invalid interactive request"


class InteractiveTimeoutError(InteractiveClientError):
    """呼び出し単位の待ち時間上限を超えた。"""

    default_message = "Interactive request timed out"


class InteractiveReplyError(InteractiveClientError):
    """サーバーが応答の `error` フィールドで返したアプリケーションエラー。"""

    def __init__(
        self,
        method: str,
        code: int | None,
        message: str | None,
        path: str | None = None,
    ) -> None:
        self.method = method
        self.code = code
        self.reply_message = message
        self.path = path
        super().__init__(f"{method} failed with code {code}: {message or 'unknown error'}")


class InteractiveRateLimitError(InteractiveReplyError):
    """ページング中にサーバーがスロットル超過を返した。

    `partial_results` にそれまでに取得できた結果を、`cursor` に再開位置を保持する。
    """

    def __init__(
        self,
        method: str,
        code: int | None,
        message: str | None,
        path: str | None = None,
        *,
        partial_results: Sequence[Any] = (),
        cursor: Any = None,
    ) -> None:
        super().__init__(method, code, message, path)
        self.partial_results = tuple(partial_results)
        self.cursor = cursor


__all__ = [
    "InteractiveClientError",
    "InteractiveDisconnectedError",
    "InteractiveProtocolError",
    "InteractiveRateLimitError",
    "InteractiveReplyError",
    "InteractiveStateError",
    "InteractiveTimeoutError",
    "InteractiveTransportError",
    "InteractiveValidationError",
]
