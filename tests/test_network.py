from __future__ import annotations

from unittest.mock import patch

from pyroute2 import NetlinkError

from fcvm.utils.network import missing_taps, tap_exists


def test_loopback_exists():
    assert tap_exists("lo")


def test_missing_taps():
    assert missing_taps(["lo", "fcvm-nope0"]) == ["fcvm-nope0"]


def test_netlink_error_counts_as_missing():
    with patch("fcvm.utils.network.IPRoute") as ipr:
        ipr.return_value.__enter__.return_value.link_lookup.side_effect = NetlinkError(19, "No such device")
        assert not tap_exists("tap0")
        assert missing_taps(["tap0"]) == ["tap0"]
