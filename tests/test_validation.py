"""Input validation and phone normalization."""

import pytest

from taxi_dispatch.errors import ValidationError
from taxi_dispatch.validation import (
    clean_phone,
    is_accept_command,
    is_cancel_command,
    validate_location,
    validate_name,
    validate_phone,
    validate_plate,
)


# ═══════════════════════════════════════════════════════════
# Phones
# ═══════════════════════════════════════════════════════════


@pytest.mark.parametrize(
    "raw",
    ["3001234567", "300 123 4567", "300-123-4567", "(300) 1234567", "+573001234567", "573001234567"],
)
def test_clean_phone_normalizes_to_local_number(raw):
    assert clean_phone(raw) == "3001234567"


def test_clean_phone_leaves_foreign_identities_alone():
    assert clean_phone("  guest-42 ") == "guest-42"


def test_validate_phone_rejects_bad_numbers():
    for bad in ("", "   ", "12345", "2001234567", "30012345678"):
        with pytest.raises(ValidationError) as exc:
            validate_phone(bad)
        assert exc.value.field == "phone"


def test_validate_phone_returns_normalized():
    assert validate_phone("+57 300 123 4567") == "3001234567"


# ═══════════════════════════════════════════════════════════
# Names, locations, plates
# ═══════════════════════════════════════════════════════════


def test_validate_name_bounds():
    assert validate_name("  Maria  ") == "Maria"
    with pytest.raises(ValidationError):
        validate_name("")
    with pytest.raises(ValidationError):
        validate_name("A")
    with pytest.raises(ValidationError):
        validate_name("x" * 51)
    assert validate_name("x" * 50) == "x" * 50


def test_validate_location_bounds():
    assert validate_location(" Calle 10 ") == "Calle 10"
    with pytest.raises(ValidationError) as exc:
        validate_location("abcd")
    assert exc.value.field == "location"
    with pytest.raises(ValidationError):
        validate_location("y" * 201)


def test_validate_plate_formats():
    assert validate_plate("abc123") == "ABC123"
    assert validate_plate("XYZ12A") == "XYZ12A"
    for bad in ("", "AB1234", "ABCD12", "123ABC"):
        with pytest.raises(ValidationError):
            validate_plate(bad)


# ═══════════════════════════════════════════════════════════
# Commands
# ═══════════════════════════════════════════════════════════


def test_accept_command_matches_first_word():
    assert is_accept_command("1")
    assert is_accept_command("Acepto voy para alla")
    assert is_accept_command("OK")
    assert not is_accept_command("")
    assert not is_accept_command("no gracias")


def test_cancel_command_is_exact():
    assert is_cancel_command("2")
    assert is_cancel_command(" Cancelar ")
    assert not is_cancel_command("cancelar el pedido")


def test_phone_honours_configured_country_code():
    assert validate_phone("+593 300 123 4567", "593") == "3001234567"
    assert validate_phone("5933001234567", "593") == "3001234567"
    with pytest.raises(ValidationError):
        validate_phone("+593 300 123 4567")
