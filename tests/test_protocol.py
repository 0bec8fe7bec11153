"""Tests for the goform wire format: volume codec and status parsing."""

import pytest

from avrbridge.lib.errors import ProtocolError
from avrbridge.lib.receiver.protocol import (
    clamp_volume,
    db_to_display,
    decode_volume,
    display_to_db,
    encode_volume,
    mute_command,
    parse_status,
    step_command,
    volume_command,
)


def test_round_trip_every_half_step():
    for half_steps in range(0, 197):
        value = half_steps / 2
        assert decode_volume(encode_volume(value)) == value


@pytest.mark.parametrize("display,token", [
    (0, "0"),
    (50, "50"),
    (50.5, "505"),
    (98, "98"),
    (5.5, "055"),
    (0.5, "005"),
])
def test_encode_format(display, token):
    assert encode_volume(display) == token


def test_encode_rounds_to_nearest_half_and_clamps():
    assert encode_volume(50.2) == "50"
    assert encode_volume(50.25) == "505"
    assert encode_volume(50.8) == "51"
    assert encode_volume(150) == "98"
    assert encode_volume(-4) == "0"


def test_clamp_volume_rounds_half_up():
    assert clamp_volume(10.75) == 11.0
    assert clamp_volume(10.74) == 10.5


def test_decode_rejects_garbage():
    with pytest.raises(ValueError):
        decode_volume("5x")


def test_db_conversion():
    assert db_to_display("-29.5") == 50.5
    assert db_to_display("-80.0") == 0
    assert db_to_display("18.0") == 98
    assert display_to_db(50.5) == -29.5


def test_no_value_sentinel_decodes_to_zero():
    assert db_to_display("--") == 0


@pytest.mark.parametrize("raw", [None, "", "  ", "abc", "nan"])
def test_unreadable_db_values_are_none(raw):
    assert db_to_display(raw) is None


def test_command_tokens():
    assert volume_command(50.5) == "MV505"
    assert volume_command(12) == "MV12"
    assert mute_command(True) == "MUON"
    assert mute_command(False) == "MUOFF"
    assert step_command(1) == "MVUP"
    assert step_command(-1) == "MVDN"


def test_parse_status():
    status = parse_status(
        "<item><Power><value>ON</value></Power>"
        "<MasterVolume><value>-29.5</value></MasterVolume>"
        "<Mute><value>on</value></Mute></item>"
    )
    assert status.volume == 50.5
    assert status.muted is True
    assert status.power_on is True


def test_parse_status_standby_and_sentinel():
    status = parse_status(
        "<item><Power><value>STANDBY</value></Power>"
        "<MasterVolume><value>--</value></MasterVolume>"
        "<Mute><value>off</value></Mute></item>"
    )
    assert status.volume == 0
    assert status.muted is False
    assert status.power_on is False


def test_parse_status_missing_fields():
    status = parse_status("<item><MasterVolume><value></value></MasterVolume></item>")
    assert status.volume is None
    assert status.muted is None
    assert status.power_on is None


def test_parse_status_rejects_bad_xml():
    with pytest.raises(ProtocolError):
        parse_status("<item><MasterVolume>")


def test_parse_status_rejects_unexpected_root():
    with pytest.raises(ProtocolError):
        parse_status("<html><body>Not found</body></html>")
