from __future__ import annotations

import json
from typing import Any

import pytest
from typer.testing import CliRunner

from stream_interactive.cli.app import app
from stream_interactive.infra.bootstrap import (
    BootstrapError,
    BootstrapRateLimitError,
    InteractiveGameListing,
    InteractiveGameVersion,
    InteractiveHost,
)
from stream_interactive.infra.interactive import InteractiveClient, InteractiveSession
from stream_interactive.shared.config import AppSettings, AuthSettings

MODULE = "stream_interactive.cli.commands.interactive"


class StubBootstrapClient:
    def __init__(self, *, error: Exception | None = None) -> None:
        self._error = error
        self.owned_calls: list[int | None] = []
        self.session_kwargs: dict[str, Any] = {}

    def fetch_hosts(self) -> tuple[InteractiveHost, ...]:
        if self._error:
            raise self._error
        return (InteractiveHost(address="wss://a.example.com/gameClient"),)

    def fetch_owned_games(
        self, channel_id: int | None = None
    ) -> tuple[InteractiveGameListing, ...]:
        if self._error:
            raise self._error
        self.owned_calls.append(channel_id)
        return (
            InteractiveGameListing(
                id=1,
                name="Arena",
                owner_id=channel_id,
                versions=(InteractiveGameVersion(id=10, version="1.0", state="published"),),
            ),
        )

    def build_session(self, **kwargs: Any) -> InteractiveSession:
        if self._error:
            raise self._error
        self.session_kwargs = kwargs
        return InteractiveSession(
            endpoint="wss://a.example.com/gameClient",
            access_token="token",
            version_id=kwargs.get("version_id"),
        )


def _json_payload(stdout: str) -> Any:
    lines = stdout.splitlines()
    start = next(index for index, line in enumerate(lines) if line in ("[", "{"))
    return json.loads("\n".join(lines[start:]))


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def bootstrap(monkeypatch: pytest.MonkeyPatch) -> StubBootstrapClient:
    client = StubBootstrapClient()
    monkeypatch.setattr(f"{MODULE}.build_bootstrap_client", lambda **_kwargs: client)
    return client


@pytest.fixture()
def session_env(monkeypatch: pytest.MonkeyPatch, server, bootstrap: StubBootstrapClient):
    settings = AppSettings(auth=AuthSettings(access_token="token"))
    monkeypatch.setattr(f"{MODULE}.get_settings", lambda: settings)
    monkeypatch.setattr(
        f"{MODULE}.build_interactive_client",
        lambda session, **_kwargs: InteractiveClient(session, transport_factory=server.factory),
    )
    return server


def test_hosts_outputs_table(runner: CliRunner, bootstrap: StubBootstrapClient) -> None:
    result = runner.invoke(app, ["interactive", "hosts"])

    assert result.exit_code == 0
    assert "wss://a.example.com/gameClient" in result.stdout


def test_hosts_outputs_json(runner: CliRunner, bootstrap: StubBootstrapClient) -> None:
    result = runner.invoke(app, ["interactive", "hosts", "--output", "json"])

    assert result.exit_code == 0
    assert _json_payload(result.stdout) == ["wss://a.example.com/gameClient"]


def test_hosts_handles_error(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    failing = StubBootstrapClient(error=BootstrapError("unreachable"))
    monkeypatch.setattr(f"{MODULE}.build_bootstrap_client", lambda **_kwargs: failing)

    result = runner.invoke(app, ["interactive", "hosts"])

    assert result.exit_code == 1
    assert "ホスト一覧の取得に失敗しました" in result.stdout


def test_games_filters_by_channel(runner: CliRunner, bootstrap: StubBootstrapClient) -> None:
    result = runner.invoke(app, ["interactive", "games", "--channel-id", "55"])

    assert result.exit_code == 0
    assert bootstrap.owned_calls == [55]
    assert "Arena" in result.stdout


def test_games_outputs_json(runner: CliRunner, bootstrap: StubBootstrapClient) -> None:
    result = runner.invoke(app, ["interactive", "games", "-f", "json"])

    assert result.exit_code == 0
    payload = _json_payload(result.stdout)
    assert payload[0]["name"] == "Arena"
    assert payload[0]["versions"][0]["id"] == 10


def test_games_handles_rate_limit(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    limited = StubBootstrapClient(error=BootstrapRateLimitError())
    monkeypatch.setattr(f"{MODULE}.build_bootstrap_client", lambda **_kwargs: limited)

    result = runner.invoke(app, ["interactive", "games"])

    assert result.exit_code == 2
    assert "レート制限" in result.stdout


def test_scenes_outputs_table(runner: CliRunner, session_env) -> None:
    session_env.scenes["lobby"] = {
        "sceneID": "lobby",
        "controls": [{"controlID": "jump", "kind": "button", "disabled": True}],
    }

    result = runner.invoke(app, ["interactive", "scenes"])

    assert result.exit_code == 0
    assert "lobby" in result.stdout
    assert "jump" in result.stdout
    assert session_env.sent_methods() == ["getScenes"]
    assert session_env.transport.closed


def test_scenes_outputs_json(
    runner: CliRunner, session_env, bootstrap: StubBootstrapClient
) -> None:
    result = runner.invoke(app, ["interactive", "scenes", "--version-id", "7", "-f", "json"])

    assert result.exit_code == 0
    payload = _json_payload(result.stdout)
    assert [scene["sceneID"] for scene in payload] == ["default"]
    assert bootstrap.session_kwargs["version_id"] == 7
    assert session_env.headers[0]["X-Interactive-Version"] == "7"


def test_scenes_reports_reply_error(runner: CliRunner, session_env) -> None:
    session_env.fail_nth["getScenes"] = (1, 4010, "Scene store unavailable")

    result = runner.invoke(app, ["interactive", "scenes"])

    assert result.exit_code == 1
    assert "サーバーがエラーを返しました (4010)" in result.stdout


def test_scenes_reports_connection_failure(runner: CliRunner, session_env) -> None:
    session_env.refuse = True

    result = runner.invoke(app, ["interactive", "scenes"])

    assert result.exit_code == 1
    assert "インタラクティブ接続に失敗しました" in result.stdout


def test_session_commands_report_bootstrap_failure(
    runner: CliRunner, monkeypatch: pytest.MonkeyPatch, session_env
) -> None:
    failing = StubBootstrapClient(error=BootstrapError("no hosts"))
    monkeypatch.setattr(f"{MODULE}.build_bootstrap_client", lambda **_kwargs: failing)

    result = runner.invoke(app, ["interactive", "time"])

    assert result.exit_code == 1
    assert "接続先ホストの取得に失敗しました" in result.stdout
    assert session_env.transports == []


def test_throttle_sets_then_reads_state(runner: CliRunner, session_env) -> None:
    result = runner.invoke(
        app,
        [
            "interactive",
            "throttle",
            "--method",
            "giveInput",
            "--capacity",
            "10",
            "--period-ms",
            "1000",
            "-f",
            "json",
        ],
    )

    assert result.exit_code == 0
    payload = _json_payload(result.stdout)
    assert payload["giveInput"]["capacity"] == 10
    assert payload["giveInput"]["period_millis"] == 1000
    assert session_env.throttles == {"giveInput": {"capacity": 10, "drainRate": 1000}}


def test_time_prints_server_time(runner: CliRunner, session_env) -> None:
    result = runner.invoke(app, ["interactive", "time"])

    assert result.exit_code == 0
    assert "2023-11-14T22:13:20+00:00" in result.stdout
