"""Unit tests for utility functions"""

import pytest
import sys
import os
from unittest.mock import MagicMock
from argparse import Namespace

from dbus_fast import Variant

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from findme_ble_cli import (
    ALERT_LEVEL_CHR_UUID,
    IMMEDIATE_ALERT_UUID,
    AlertLevel,
    build_arg_parser,
    get_typed_property,
    parse_timeout,
    validate_args,
)


class TestAlertLevel:
    """Tests for AlertLevel parsing and encoding"""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "literal, payload",
        [("none", b"\x00"), ("mild", b"\x01"), ("high", b"\x02")],
    )
    def test_parse_and_encode(self, literal, payload):
        level = AlertLevel.parse(literal)
        assert level.encode() == payload
        assert level.label == literal

    @pytest.mark.unit
    @pytest.mark.parametrize("literal", ["foo", "HIGH", "Mild", "", "2"])
    def test_rejects_other_literals(self, literal):
        with pytest.raises(ValueError):
            AlertLevel.parse(literal)


class TestUuids:
    """Tests for the well-known GATT UUIDs"""

    @pytest.mark.unit
    def test_full_form(self):
        assert IMMEDIATE_ALERT_UUID == "00001802-0000-1000-8000-00805f9b34fb"
        assert ALERT_LEVEL_CHR_UUID == "00002a06-0000-1000-8000-00805f9b34fb"


class TestGetTypedProperty:
    """Tests for get_typed_property"""

    @pytest.mark.unit
    def test_returns_value_for_matching_type(self):
        proxy = MagicMock()
        proxy.get_property.return_value = Variant("b", False)

        assert get_typed_property(proxy, "Connected", "b") is False

    @pytest.mark.unit
    def test_wrong_type_returns_none(self, capsys):
        proxy = MagicMock()
        proxy.path = "/org/bluez/hci0/dev_AA"
        proxy.get_property.return_value = Variant("s", "true")

        assert get_typed_property(proxy, "Connected", "b") is None
        assert "Invalid type for Connected on /org/bluez/hci0/dev_AA" in capsys.readouterr().err

    @pytest.mark.unit
    def test_missing_is_quiet_unless_reported(self, capsys):
        proxy = MagicMock()
        proxy.get_property.return_value = None

        assert get_typed_property(proxy, "UUID", "s") is None
        assert capsys.readouterr().err == ""

        assert get_typed_property(proxy, "Connected", "b", report_missing=True) is None
        assert "Could not read property Connected" in capsys.readouterr().err


class TestValidateArgs:
    """Tests for validate_args function"""

    @pytest.mark.unit
    def test_converts_alert_level(self):
        args = validate_args(Namespace(device="AA:BB:CC:DD:EE:FF", alert_level="mild", adapter=None, timeout=None))

        assert args.alert_level is AlertLevel.MILD
        assert args.timeout is None

    @pytest.mark.unit
    def test_missing_device_exits(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            validate_args(Namespace(device=None, alert_level="high", adapter=None, timeout=None))

        assert excinfo.value.code == 1
        assert "remote Bluetooth address not specified" in capsys.readouterr().err

    @pytest.mark.unit
    def test_missing_alert_level_exits(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            validate_args(Namespace(device="AA:BB:CC:DD:EE:FF", alert_level=None, adapter=None, timeout=None))

        assert excinfo.value.code == 1
        assert "alert level not specified" in capsys.readouterr().err

    @pytest.mark.unit
    def test_invalid_alert_level_exits(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            validate_args(Namespace(device="AA:BB:CC:DD:EE:FF", alert_level="foo", adapter=None, timeout=None))

        assert excinfo.value.code == 1
        assert "invalid alert level" in capsys.readouterr().err


class TestParseTimeout:
    """Tests for parse_timeout function"""

    @pytest.mark.unit
    def test_none_means_forever(self):
        assert parse_timeout(None) is None

    @pytest.mark.unit
    def test_parses_seconds(self):
        assert parse_timeout("2.5") == 2.5

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["0", "-3", "soon"])
    def test_rejects_bad_values(self, value):
        with pytest.raises(SystemExit):
            parse_timeout(value)


class TestArgParser:
    """Tests for build_arg_parser"""

    @pytest.mark.unit
    def test_short_and_long_options(self):
        parser = build_arg_parser()

        short = parser.parse_args(["-i", "hci1", "-b", "AA:BB:CC:DD:EE:FF", "-a", "high"])
        long = parser.parse_args(["--adapter", "hci1", "--device", "AA:BB:CC:DD:EE:FF", "--alert-level", "high"])

        assert vars(short) == vars(long)
        assert short.adapter == "hci1"
        assert short.device == "AA:BB:CC:DD:EE:FF"
        assert short.alert_level == "high"
