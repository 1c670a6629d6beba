import pytest
from pydantic import ValidationError

from flags import FeatureFlags, parse_bool, parse_number


def test_defaults_are_all_off():
    flags = FeatureFlags.from_args(None)
    assert flags == FeatureFlags()
    assert not any([
        flags.load_balance, flags.landing, flags.ipv6, flags.full_config,
        flags.keep_alive, flags.fake_ip, flags.quic, flags.regex_filter,
    ])
    assert flags.country_threshold == 0


@pytest.mark.parametrize("value,expected", [
    (True, True),
    (False, False),
    ("true", True),
    ("TRUE", True),
    ("1", True),
    ("0", False),
    ("yes", False),
    (1, False),
    (None, False),
])
def test_parse_bool(value, expected):
    assert parse_bool(value) is expected


@pytest.mark.parametrize("value,expected", [
    (None, 0),
    ("3", 3),
    ("3 nodes", 3),
    ("abc", 0),
    ("", 0),
    (5, 5),
    (2.9, 2),
    (float("inf"), 0),
    (float("-inf"), 0),
    (float("nan"), 0),
])
def test_parse_number(value, expected):
    assert parse_number(value) == expected


def test_from_args_maps_external_names():
    flags = FeatureFlags.from_args({
        "loadbalance": "true",
        "landing": "1",
        "full": "true",
        "fakeip": True,
        "regex": "true",
        "threshold": "2",
        "unknown": "true",
    })
    assert flags.load_balance
    assert flags.landing
    assert flags.full_config
    assert flags.fake_ip
    assert flags.regex_filter
    assert not flags.quic
    assert flags.country_threshold == 2


def test_bad_threshold_falls_back_to_zero():
    assert FeatureFlags.from_args({"threshold": "many"}).country_threshold == 0
    assert FeatureFlags.from_args({"threshold": "-4"}).country_threshold == 0


def test_flags_are_immutable():
    flags = FeatureFlags()
    with pytest.raises(ValidationError):
        flags.landing = True


def test_non_finite_threshold_falls_back_to_zero():
    assert FeatureFlags.from_args({"threshold": float("inf")}).country_threshold == 0
    assert FeatureFlags.from_args({"threshold": float("nan")}).country_threshold == 0
