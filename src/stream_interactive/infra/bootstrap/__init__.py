"""インタラクティブ接続のブートストラップ用 REST ルックアップ。"""

from .client import (
    BootstrapError,
    BootstrapRateLimitError,
    BootstrapRetryConfig,
    InteractiveBootstrapClient,
    InteractiveGameListing,
    InteractiveGameVersion,
    InteractiveHost,
    build_bootstrap_client,
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
