from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from gatepass.helpers import ct_equal, is_valid_email, parse_ts, receipt_url, to_iso


@pytest.mark.parametrize("value,expected", [
    (None, None),
    ("", None),
    (1_700_000_000, 1_700_000_000.0),
    (1_700_000_000_000, 1_700_000_000.0),
    ("2023-11-14T22:13:20Z", 1_700_000_000.0),
    ("2023-11-14T22:13:20+00:00", 1_700_000_000.0),
    ("2023-11-14T22:13:20", 1_700_000_000.0),
    (datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc), 1_700_000_000.0),
    ("yesterday", None),
])
def test_parse_ts(value, expected):
    assert parse_ts(value) == expected


def test_to_iso_roundtrips_through_parse_ts():
    assert parse_ts(to_iso(1_700_000_000.0)) == 1_700_000_000.0
    assert to_iso(None) is None


@pytest.mark.parametrize("email,ok", [
    ("ada@example.com", True),
    (" ada@example.com ", True),
    ("ada@example", False),
    ("ada example@x.com", False),
    ("", False),
    (None, False),
])
def test_is_valid_email(email, ok):
    assert is_valid_email(email) is ok


def test_receipt_url_params():
    url = receipt_url("https://tickets.example.com/",
                      payment_reference="ref 1", transaction_reference="tx-1",
                      amount=7000.0, seats=2, serial="ABCDEF")
    parsed = urlparse(url)
    assert parsed.path == "/receipt"
    assert parse_qs(parsed.query) == {
        "ref": ["ref 1"], "txref": ["tx-1"], "amount": ["7000"],
        "seats": ["2"], "serial": ["ABCDEF"],
    }


def test_receipt_url_keeps_fractional_amounts():
    url = receipt_url("https://t.example.com", payment_reference="r",
                      transaction_reference="t", amount=99.5, seats=1)
    assert "amount=99.50" in url
    assert "serial" not in url


def test_ct_equal():
    assert ct_equal("admin", "admin")
    assert not ct_equal("admin", "admin ")
