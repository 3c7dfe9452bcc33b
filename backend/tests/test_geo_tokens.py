import math
from datetime import timedelta

import pytest

from backend import qr_tokens
from backend.geo import EARTH_RADIUS_M, haversine_m, is_valid_coordinate


def test_haversine_zero_for_same_point():
    assert haversine_m(51.5, -0.12, 51.5, -0.12) == 0.0


def test_haversine_is_symmetric():
    a = haversine_m(6.5244, 3.3792, 6.5250, 3.3800)
    b = haversine_m(6.5250, 3.3800, 6.5244, 3.3792)
    assert a == pytest.approx(b)


def test_haversine_small_offsets_along_meridian():
    assert haversine_m(0, 0, 0.00025, 0) == pytest.approx(27.8, abs=0.1)
    assert haversine_m(0, 0, 0.001, 0) == pytest.approx(111.19, abs=0.1)


def test_haversine_antipodal_is_half_circumference():
    assert haversine_m(0, 0, 0, 180) == pytest.approx(math.pi * EARTH_RADIUS_M)


@pytest.mark.parametrize(
    "lat, lon",
    [(0, 0), (90, 180), (-90, -180), (45.5, -73.25)],
)
def test_valid_coordinates(lat, lon):
    assert is_valid_coordinate(lat, lon)


@pytest.mark.parametrize(
    "lat, lon",
    [
        (90.0001, 0),
        (0, -180.0001),
        ("6.5", "3.3"),
        (None, 0),
        (True, 0),
        (float("nan"), 0),
        (0, float("inf")),
        (10**400, 0),
        (0, -(10**400)),
    ],
)
def test_invalid_coordinates(lat, lon):
    assert not is_valid_coordinate(lat, lon)


def test_issue_renders_timestamp_and_mac(now):
    token, expires_at = qr_tokens.issue("session-a", now)

    stamp, mac = token.split(":")
    assert int(stamp) == int(now.timestamp() * 1000)
    assert len(mac) == 64
    assert expires_at == now + timedelta(seconds=qr_tokens.QR_VALIDITY_SECONDS)
    assert qr_tokens.token_timestamp_ms(token) == int(stamp)


def test_issue_is_unpredictable_for_same_instant(now):
    first, _ = qr_tokens.issue("session-a", now)
    second, _ = qr_tokens.issue("session-a", now)
    assert first != second


def test_issuance_nonce_is_256_bits_of_hex():
    nonce = qr_tokens.new_issuance_nonce()
    assert len(nonce) == 64
    int(nonce, 16)


@pytest.mark.parametrize(
    "value",
    [
        "",
        "not-a-token",
        "123",
        "abc:" + "0" * 64,
        "123:" + "0" * 63,
        "123:" + "Z" * 64,
        "123:" + "A" * 64,
        "1:2:" + "0" * 64,
        None,
        12345,
    ],
)
def test_check_format_rejects_malformed(value, now):
    assert not qr_tokens.check_format(value, now)


def test_check_format_age_window(now):
    token, _ = qr_tokens.issue("session-a", now)

    assert qr_tokens.check_format(token, now)
    assert qr_tokens.check_format(token, now + timedelta(seconds=9.5))
    assert not qr_tokens.check_format(token, now + timedelta(seconds=10.5))
    # explicit max_age narrows the window
    assert not qr_tokens.check_format(token, now + timedelta(seconds=6), max_age=5)


def test_check_format_tolerates_small_future_skew(now):
    token, _ = qr_tokens.issue("session-a", now + timedelta(seconds=4))
    assert qr_tokens.check_format(token, now)

    token, _ = qr_tokens.issue("session-a", now + timedelta(seconds=6))
    assert not qr_tokens.check_format(token, now)


def test_check_format_window_edge_is_exact(now):
    issued = now.replace(microsecond=123456)
    token, expires_at = qr_tokens.issue("session-a", issued)

    assert qr_tokens.token_timestamp_ms(token) % 1000 == 123
    assert qr_tokens.check_format(token, expires_at)
    assert not qr_tokens.check_format(token, expires_at + timedelta(milliseconds=1))
