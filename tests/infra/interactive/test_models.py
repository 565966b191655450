from __future__ import annotations

from datetime import UTC, datetime

import pytest

from stream_interactive.infra.interactive import (
    ButtonControl,
    ControlPosition,
    GenericControl,
    InteractiveProtocolError,
    JoystickControl,
    decode_control,
)
from stream_interactive.infra.interactive.models import (
    MemoryStats,
    ParticipantPage,
    decode_group,
    decode_participant,
    decode_scene,
    require_list,
)


def test_button_round_trip_keeps_meta_and_unknown_fields() -> None:
    raw = {
        "controlID": "C1",
        "kind": "button",
        "text": "Jump",
        "cost": 100,
        "keyCode": 32,
        "disabled": False,
        "position": [{"size": "large", "width": 10, "height": 9, "x": 1, "y": 2}],
        "meta": {"glow": {"value": True}},
        "backgroundColor": "#ff0000",
    }

    control = decode_control(raw)

    assert isinstance(control, ButtonControl)
    assert control.kind == "button"
    assert control.text == "Jump"
    assert control.key_code == 32
    assert control.position == (ControlPosition(size="large", width=10, height=9, x=1, y=2),)
    assert control.extra == {"backgroundColor": "#ff0000"}

    wire = control.to_wire()
    assert wire["meta"] == {"glow": {"value": True}}
    assert wire["backgroundColor"] == "#ff0000"
    assert wire["keyCode"] == 32
    assert "tooltip" not in wire


def test_joystick_fields_use_wire_names() -> None:
    control = JoystickControl(control_id="J1", sample_rate=50)

    wire = control.to_wire()

    assert wire["kind"] == "joystick"
    assert wire["sampleRate"] == 50
    assert decode_control(wire) == control


def test_unknown_kind_is_preserved_generically() -> None:
    raw = {"controlID": "L1", "kind": "label", "text": "hello", "textSize": "2em"}

    control = decode_control(raw)

    assert isinstance(control, GenericControl)
    assert control.kind == "label"
    assert control.extra == {"text": "hello", "textSize": "2em"}
    assert control.to_wire()["kind"] == "label"
    assert control.to_wire()["textSize"] == "2em"


@pytest.mark.parametrize(
    "raw",
    [
        {"kind": "button"},
        {"controlID": "C1"},
        {"controlID": "C1", "kind": "button", "position": "top"},
        "button",
    ],
)
def test_decode_control_rejects_malformed(raw: object) -> None:
    with pytest.raises(InteractiveProtocolError):
        decode_control(raw)


def test_scene_decoding_dispatches_control_kinds() -> None:
    scene = decode_scene(
        {
            "sceneID": "S1",
            "controls": [
                {"controlID": "B", "kind": "button"},
                {"controlID": "J", "kind": "joystick"},
            ],
            "meta": {"theme": "dark"},
            "etag": "abc",
        }
    )

    assert not scene.is_default
    assert isinstance(scene.control("B"), ButtonControl)
    assert isinstance(scene.control("J"), JoystickControl)
    assert scene.control("missing") is None
    assert scene.to_wire()["meta"] == {"theme": "dark"}
    assert scene.to_wire()["etag"] == "abc"


def test_group_defaults_to_default_scene() -> None:
    group = decode_group({"groupID": "red"})

    assert group.scene_id == "default"
    assert not group.is_default


def test_participant_timestamps_are_epoch_millis() -> None:
    participant = decode_participant(
        {
            "sessionID": "s1",
            "userID": 7,
            "username": "viewer",
            "connectedAt": 1_700_000_000_000,
            "groupID": "red",
        }
    )

    assert participant.connected_at == datetime.fromtimestamp(1_700_000_000, tz=UTC)
    assert participant.last_input_at is None
    assert participant.to_wire()["connectedAt"] == 1_700_000_000_000
    assert participant.to_wire()["groupID"] == "red"


def test_participant_page_and_memory_stats() -> None:
    page = ParticipantPage.from_wire(
        {"participants": [{"sessionID": "a"}, {"sessionID": "b"}], "hasMore": True}
    )
    stats = MemoryStats.from_wire({"usedBytes": 10, "totalBytes": 20})

    assert [p.session_id for p in page.participants] == ["a", "b"]
    assert page.total == 2
    assert page.has_more
    assert stats.used_bytes == 10
    assert stats.resources == {}


def test_require_list_validates_shape() -> None:
    assert require_list(None, "scenes") == []
    assert require_list({}, "scenes") == []
    with pytest.raises(InteractiveProtocolError):
        require_list({"scenes": {}}, "scenes")
    with pytest.raises(InteractiveProtocolError):
        require_list([], "scenes")


@pytest.mark.parametrize("width", [None, "wide", float("inf"), True])
def test_control_position_rejects_non_numeric_sizes(width: object) -> None:
    raw = {
        "controlID": "C1",
        "kind": "button",
        "position": [{"size": "large", "width": width}],
    }

    with pytest.raises(InteractiveProtocolError):
        decode_control(raw)


@pytest.mark.parametrize("connected_at", [1e20, -1e20, float("nan")])
def test_participant_rejects_out_of_range_timestamps(connected_at: float) -> None:
    with pytest.raises(InteractiveProtocolError):
        decode_participant({"sessionID": "a", "connectedAt": connected_at})


def test_memory_stats_rejects_non_numeric_counts() -> None:
    with pytest.raises(InteractiveProtocolError):
        MemoryStats.from_wire({"usedBytes": None, "totalBytes": 20})
