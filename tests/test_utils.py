"""Tests for virtlab.utils module."""

from __future__ import annotations

import re
import threading
from unittest.mock import patch

import pytest

from virtlab.exceptions import ManagerError
from virtlab.utils import (
    get_env,
    get_env_bool,
    hash_password,
    link_name,
    log,
    parse_float_env,
    parse_int_env,
    parse_memory_mib,
    poll_until,
    random_mac,
    read_link,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        captured = capsys.readouterr()
        assert captured.out == ""

    def test_debug_shown_when_verbose(self, capsys):
        with patch("virtlab.utils._LOG_VERBOSE", True):
            log("DEBUG", "now visible")
        assert "now visible" in capsys.readouterr().out


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestGetEnvBool:
    @pytest.mark.parametrize("value", ["1", "true", "yes", "on", "TRUE"])
    def test_truthy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL") is True

    @pytest.mark.parametrize("value", ["0", "false", "off", "random"])
    def test_falsy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL") is False

    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("TEST_BOOL", raising=False)
        assert get_env_bool("TEST_BOOL", True) is True


class TestParseNumericEnv:
    def test_int_valid_value(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "42")
        assert parse_int_env("MY_INT", "10") == 42

    def test_int_non_integer_raises(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "abc")
        with pytest.raises(ManagerError, match="must be an integer"):
            parse_int_env("MY_INT", "10")

    def test_int_above_max_raises(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "100")
        with pytest.raises(ManagerError, match="<= 64"):
            parse_int_env("MY_INT", "10", max_val=64)

    def test_float_default(self, monkeypatch):
        monkeypatch.delenv("MY_FLOAT", raising=False)
        assert parse_float_env("MY_FLOAT", "2.5") == 2.5

    def test_float_negative_raises(self, monkeypatch):
        monkeypatch.setenv("MY_FLOAT", "-1")
        with pytest.raises(ManagerError, match=">= 0.0"):
            parse_float_env("MY_FLOAT", "1")

    def test_float_garbage_raises(self, monkeypatch):
        monkeypatch.setenv("MY_FLOAT", "soon")
        with pytest.raises(ManagerError, match="must be a number"):
            parse_float_env("MY_FLOAT", "1")


class TestParseMemoryMib:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("2GB", 2048),
            ("2G", 2048),
            ("512MiB", 512),
            ("1024", 1024),
            ("2048K", 2),
            ("1T", 1024 * 1024),
            (" 4 gb ", 4096),
        ],
    )
    def test_valid_sizes(self, raw, expected):
        assert parse_memory_mib(raw) == expected

    @pytest.mark.parametrize("raw", ["", "lots", "2PB", "-1G", "1.5G"])
    def test_invalid_sizes(self, raw):
        with pytest.raises(ManagerError, match="Invalid memory size"):
            parse_memory_mib(raw)

    def test_below_one_mib_raises(self):
        with pytest.raises(ManagerError, match="smaller than 1 MiB"):
            parse_memory_mib("512K")


class TestRandomMac:
    def test_format(self):
        mac = random_mac()
        assert re.match(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$", mac)

    def test_locally_administered_unicast(self):
        for _ in range(50):
            first = int(random_mac().split(":")[0], 16)
            assert first & 0x02
            assert not first & 0x01

    def test_all_ones_still_valid(self):
        with patch("virtlab.utils.random.randint", return_value=0xFF):
            assert random_mac() == "fe:ff:ff:ff:ff:ff"


class TestHashPassword:
    def test_returns_bcrypt_hash(self):
        hashed = hash_password("secret")
        assert hashed.startswith("$2")
        assert hashed != "secret"


class TestLinkName:
    def test_short_name_kept(self):
        assert link_name("host1", "eth0") == "host1_eth0"

    def test_long_name_hashed_to_ifnamsiz(self):
        name = link_name("a-rather-long-instance", "eth0")
        assert len(name) == 15
        assert name.startswith("vl")
        assert name == link_name("a-rather-long-instance", "eth0")

    def test_distinct_interfaces_distinct_names(self):
        assert link_name("a-rather-long-instance", "eth0") != link_name("a-rather-long-instance", "eth1")


class TestReadLink:
    def test_missing_link(self, tmp_path):
        assert read_link("nope", root=tmp_path) is None

    def test_reads_address_and_mtu(self, tmp_path):
        link = tmp_path / "host1_eth0"
        link.mkdir()
        (link / "address").write_text("FE:54:00:12:34:56\n")
        (link / "mtu").write_text("9000\n")
        info = read_link("host1_eth0", root=tmp_path)
        assert info.mac == "fe:54:00:12:34:56"
        assert info.mtu == 9000
        assert info.complete

    def test_partial_link_is_incomplete(self, tmp_path):
        link = tmp_path / "host1_eth0"
        link.mkdir()
        (link / "address").write_text("fe:54:00:12:34:56\n")
        info = read_link("host1_eth0", root=tmp_path)
        assert info.mtu is None
        assert not info.complete


class TestPollUntil:
    def test_returns_first_value(self):
        results = iter([None, None, "ready"])
        assert poll_until(lambda: next(results), interval=0) == "ready"

    def test_times_out(self):
        with patch("virtlab.utils.time.sleep") as sleep:
            assert poll_until(lambda: None, timeout=0, interval=5) is None
        sleep.assert_not_called()

    def test_cancel_stops_polling(self):
        cancel = threading.Event()
        cancel.set()
        assert poll_until(lambda: None, interval=0, cancel=cancel) is None
