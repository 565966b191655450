from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import Annotated, Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from stream_interactive.infra.bootstrap import (
    BootstrapError,
    BootstrapRateLimitError,
    InteractiveGameListing,
    build_bootstrap_client,
)
from stream_interactive.infra.interactive import (
    InteractiveClient,
    InteractiveClientError,
    InteractiveReplyError,
    Scene,
    ThrottleSetting,
    ThrottleState,
    build_interactive_client,
)
from stream_interactive.shared.config import get_settings
from stream_interactive.shared.logging import get_logger

T = TypeVar("T")


class OutputFormat(str, Enum):
    """出力形式。"""

    TABLE = "table"
    JSON = "json"


app = typer.Typer(help="インタラクティブ接続の診断コマンド")

VersionOption = Annotated[
    int | None,
    typer.Option("--version-id", "-v", help="接続するゲームのバージョン ID"),
]
OutputOption = Annotated[
    OutputFormat,
    typer.Option("--output", "-f", case_sensitive=False, help="出力形式(table/json)"),
]


def _console() -> Console:
    return Console(force_terminal=False, color_system=None)


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _run_session(
    version_id: int | None,
    action: Callable[[InteractiveClient], Awaitable[T]],
    *,
    ready: bool = False,
) -> T:
    """ホストを引いて接続し、`action` を実行してから必ず切断する。"""

    settings = get_settings()
    logger = get_logger("cli.interactive")
    bootstrap = build_bootstrap_client(settings=settings, logger=logger)

    try:
        session = bootstrap.build_session(
            version_id=version_id if version_id is not None else settings.interactive.version_id,
            share_code=settings.interactive.share_code,
            protocol_version=settings.interactive.protocol_version,
        )
    except BootstrapRateLimitError as exc:
        typer.echo("ホスト一覧の取得がレート制限されました。時間をおいて再実行してください。")
        raise typer.Exit(code=2) from exc
    except BootstrapError as exc:
        typer.echo(f"接続先ホストの取得に失敗しました: {exc}")
        raise typer.Exit(code=1) from exc

    async def _main() -> T:
        client = build_interactive_client(session, settings=settings, logger=logger)
        async with client:
            if ready:
                await client.ready()
            return await action(client)

    try:
        return asyncio.run(_main())
    except InteractiveReplyError as exc:
        logger.error("interactive_reply_error", code=exc.code, error=exc.reply_message)
        typer.echo(f"サーバーがエラーを返しました ({exc.code}): {exc.reply_message}")
        raise typer.Exit(code=1) from exc
    except InteractiveClientError as exc:
        logger.error("interactive_session_failed", error=str(exc))
        typer.echo(f"インタラクティブ接続に失敗しました: {exc}")
        raise typer.Exit(code=1) from exc


@app.command()
def hosts(output: OutputOption = OutputFormat.TABLE) -> None:
    """接続先ホストの一覧を表示する。"""

    client = build_bootstrap_client()
    try:
        items = client.fetch_hosts()
    except BootstrapError as exc:
        typer.echo(f"ホスト一覧の取得に失敗しました: {exc}")
        raise typer.Exit(code=1) from exc

    if output is OutputFormat.JSON:
        _echo_json([host.address for host in items])
        return
    table = Table(title="Interactive Hosts")
    table.add_column("Address", style="cyan")
    for host in items:
        table.add_row(host.address)
    _console().print(table)


def _render_games(games: Iterable[InteractiveGameListing]) -> None:
    table = Table(title="Owned Interactive Games")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Latest Version")
    table.add_column("State")
    for game in games:
        latest = game.latest_version
        table.add_row(
            str(game.id),
            game.name,
            str(latest.id) if latest else "-",
            (latest.state or "-") if latest else "-",
        )
    _console().print(table)


@app.command()
def games(
    channel_id: Annotated[
        int | None, typer.Option("--channel-id", "-c", help="所有者のチャンネル ID")
    ] = None,
    output: OutputOption = OutputFormat.TABLE,
) -> None:
    """所有するインタラクティブゲームを表示する。"""

    client = build_bootstrap_client()
    try:
        items = client.fetch_owned_games(channel_id)
    except BootstrapRateLimitError as exc:
        typer.echo("レート制限に到達しました。時間をおいて再実行してください。")
        raise typer.Exit(code=2) from exc
    except BootstrapError as exc:
        typer.echo(f"ゲーム一覧の取得に失敗しました: {exc}")
        raise typer.Exit(code=1) from exc

    if output is OutputFormat.JSON:
        _echo_json([game.to_dict() for game in items])
        return
    _render_games(items)


def _render_scenes(scenes: Iterable[Scene]) -> None:
    table = Table(title="Interactive Scenes")
    table.add_column("Scene", style="cyan", no_wrap=True)
    table.add_column("Control", style="bold")
    table.add_column("Kind")
    table.add_column("Disabled")
    for scene in scenes:
        if not scene.controls:
            table.add_row(scene.scene_id, "-", "-", "-")
        for control in scene.controls:
            table.add_row(
                scene.scene_id,
                control.control_id,
                control.kind,
                str(control.disabled),
            )
    _console().print(table)


@app.command()
def scenes(version_id: VersionOption = None, output: OutputOption = OutputFormat.TABLE) -> None:
    """接続してシーンとコントロールを表示する。"""

    async def _fetch(client: InteractiveClient) -> tuple[Scene, ...]:
        return await client.get_scenes()

    items = _run_session(version_id, _fetch)
    if output is OutputFormat.JSON:
        _echo_json([scene.to_wire() for scene in items])
        return
    _render_scenes(items)


@app.command()
def throttle(
    version_id: VersionOption = None,
    method: Annotated[
        str | None, typer.Option("--method", "-m", help="スロットルを設定するメソッド名")
    ] = None,
    capacity: Annotated[int, typer.Option("--capacity", min=0, help="周期あたりの容量")] = 0,
    period_ms: Annotated[int, typer.Option("--period-ms", min=1, help="補充周期(ms)")] = 1000,
    output: OutputOption = OutputFormat.TABLE,
) -> None:
    """スロットルを (指定があれば設定してから) 表示する。"""

    async def _fetch(client: InteractiveClient) -> dict[str, ThrottleState]:
        if method:
            setting = ThrottleSetting(
                method=method,
                capacity_per_period=capacity,
                period_millis=period_ms,
            )
            await client.set_bandwidth_throttle([setting])
        return await client.get_throttle_state()

    states = _run_session(version_id, _fetch)
    if output is OutputFormat.JSON:
        _echo_json({name: state.to_dict() for name, state in states.items()})
        return

    table = Table(title="Throttle State")
    table.add_column("Method", style="cyan")
    table.add_column("Capacity")
    table.add_column("Inserted")
    table.add_column("Rejected")
    for name, state in sorted(states.items()):
        table.add_row(
            name,
            str(state.capacity) if state.capacity is not None else "-",
            str(state.inserted),
            str(state.rejected),
        )
    _console().print(table)


@app.command()
def time(version_id: VersionOption = None) -> None:
    """サーバー時刻を表示する。"""

    async def _fetch(client: InteractiveClient) -> str:
        return (await client.get_time()).isoformat()

    typer.echo(_run_session(version_id, _fetch))


__all__ = ["app"]
