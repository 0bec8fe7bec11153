"""SettingsManager: host payload normalisation and change notification."""

from unittest.mock import MagicMock

import pytest

from avrbridge.lib.config import ReceiverEndpoint
from avrbridge.lib.errors import ConfigurationError
from avrbridge.lib.settings import SettingsManager, normalize_values


def test_normalize_unwraps_value_objects():
    values = {
        "ip_address": {"value": " 192.168.1.40 "},
        "port": "8080 ",
        "device_name": {"value": "Living Room"},
    }
    assert normalize_values(values) == [
        {"address": "192.168.1.40", "port": "8080", "label": "Living Room"}
    ]


def test_normalize_receiver_list():
    values = {"receivers": [{"address": {"value": "avr.local"}}, {"address": "10.0.0.2", "port": 81}]}
    assert normalize_values(values) == [{"address": "avr.local"}, {"address": "10.0.0.2", "port": 81}]


def test_normalize_rejects_empty():
    with pytest.raises(ConfigurationError):
        normalize_values({})


def test_save_notifies_on_change():
    on_change = MagicMock()
    manager = SettingsManager(on_change=on_change)
    receivers = manager.save({"ip_address": "192.168.1.40"})
    assert receivers == [ReceiverEndpoint("192.168.1.40")]
    on_change.assert_called_once_with([ReceiverEndpoint("192.168.1.40")])
    assert manager.to_dict() == {
        "receivers": [{"address": "192.168.1.40", "port": 8080, "label": "Denon/Marantz Receiver"}]
    }


def test_save_without_change_does_not_notify():
    on_change = MagicMock()
    manager = SettingsManager([ReceiverEndpoint("192.168.1.40")], on_change=on_change)
    manager.save({"receivers": [{"address": "192.168.1.40", "port": "8080"}]})
    on_change.assert_not_called()


def test_dry_run_validates_only():
    on_change = MagicMock()
    manager = SettingsManager(on_change=on_change)
    receivers = manager.save({"ip_address": "avr.local"}, dry_run=True)
    assert receivers == [ReceiverEndpoint("avr.local")]
    assert manager.receivers == []
    on_change.assert_not_called()


def test_invalid_settings_leave_state_alone():
    on_change = MagicMock()
    manager = SettingsManager([ReceiverEndpoint("avr.local")], on_change=on_change)
    with pytest.raises(ConfigurationError):
        manager.save({"ip_address": "999.1.1.1"})
    assert manager.receivers == [ReceiverEndpoint("avr.local")]
    on_change.assert_not_called()


def test_status_message():
    assert SettingsManager().status_message() == ("Not configured - please set IP address", True)
    one = SettingsManager([ReceiverEndpoint("192.168.1.40")])
    assert one.status_message() == ("Configured for 192.168.1.40", False)
    two = SettingsManager([ReceiverEndpoint("a.local"), ReceiverEndpoint("b.local")])
    assert two.status_message() == ("Configured for 2 receivers", False)
