"""
Unit tests for provider status mappers.

Every mapper is total: each documented code maps to exactly one canonical
status and anything unrecognised maps to pending, never success.
"""
from typing import Any

import pytest

from paybridge.providers import AirtelAdapter, CanonicalStatus, DpoAdapter, MpesaAdapter, PesapalAdapter

SUCCESS = CanonicalStatus.SUCCESS
FAILED = CanonicalStatus.FAILED
PENDING = CanonicalStatus.PENDING

UNKNOWN_CODES = [None, "", "   ", "unknown", "42", 7, "SUCCESSFUL_MAYBE?", {"code": 1}, ["0"], 3.5]


@pytest.mark.unit
@pytest.mark.parametrize(
    "code,expected",
    [
        (1, SUCCESS),
        ("1", SUCCESS),
        ("COMPLETED", SUCCESS),
        ("completed", SUCCESS),
        (0, FAILED),
        ("0", FAILED),
        ("INVALID", FAILED),
        (2, FAILED),
        ("FAILED", FAILED),
        (3, FAILED),
        ("REVERSED", FAILED),
    ],
)
def test_pesapal_known_codes(code: Any, expected: CanonicalStatus) -> None:
    assert PesapalAdapter.map_status(code) is expected


@pytest.mark.unit
@pytest.mark.parametrize(
    "code,expected",
    [
        (0, SUCCESS),
        ("0", SUCCESS),
        (1, FAILED),
        (1032, FAILED),
        ("1037", FAILED),
        (2001, FAILED),
        (1019, FAILED),
        (9999, FAILED),
    ],
)
def test_mpesa_known_codes(code: Any, expected: CanonicalStatus) -> None:
    assert MpesaAdapter.map_status(code) is expected


@pytest.mark.unit
@pytest.mark.parametrize(
    "code,expected",
    [
        ("TS", SUCCESS),
        ("success", SUCCESS),
        ("Completed", SUCCESS),
        ("TF", FAILED),
        ("failed", FAILED),
        ("REJECTED", FAILED),
        ("TA", PENDING),
        ("TIP", PENDING),
    ],
)
def test_airtel_known_codes(code: Any, expected: CanonicalStatus) -> None:
    assert AirtelAdapter.map_status(code) is expected


@pytest.mark.unit
@pytest.mark.parametrize(
    "code,expected",
    [
        ("000", SUCCESS),
        ("paid", SUCCESS),
        ("Approved", SUCCESS),
        ("Successful", SUCCESS),
        ("900", PENDING),
        ("901", FAILED),
        ("904", FAILED),
        ("declined", FAILED),
        ("error", FAILED),
        ("Payment failed", FAILED),
        ("Unsuccessful", FAILED),
        ("not successful", FAILED),
        ("payment unsuccessful", FAILED),
    ],
)
def test_dpo_known_codes(code: Any, expected: CanonicalStatus) -> None:
    assert DpoAdapter.map_status(code) is expected


@pytest.mark.unit
@pytest.mark.parametrize("adapter", [PesapalAdapter, MpesaAdapter, AirtelAdapter])
@pytest.mark.parametrize("code", UNKNOWN_CODES)
def test_unknown_codes_map_to_pending(adapter: Any, code: Any) -> None:
    """Unrecognised codes never resolve a payment."""
    assert adapter.map_status(code) is PENDING


@pytest.mark.unit
@pytest.mark.parametrize("code", [None, "", "unknown", "42", "not paid yet", "PAYMENT_SUCCESS_PENDING"])
def test_dpo_unknown_codes_map_to_pending(code: Any) -> None:
    assert DpoAdapter.map_status(code) is PENDING


@pytest.mark.unit
def test_canonical_status_terminality() -> None:
    assert not PENDING.is_terminal
    assert SUCCESS.is_terminal
    assert FAILED.is_terminal
