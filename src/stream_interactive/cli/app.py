from __future__ import annotations

import typer

from stream_interactive.cli.commands import interactive
from stream_interactive.shared.logging import configure_logging

app = typer.Typer(help="ライブ配信インタラクティブクライアントのCLI")

app.add_typer(interactive.app, name="interactive", help="インタラクティブ接続の診断")


def main() -> None:
    """エントリポイント。"""

    configure_logging()
    app()


if __name__ == "__main__":  # pragma: no cover - CLI エントリ
    main()
