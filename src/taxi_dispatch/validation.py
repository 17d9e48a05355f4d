"""Input validation and phone normalization.

Every check raises ValidationError before anything touches the database.
"""

import re

from taxi_dispatch.errors import ValidationError

PHONE_RE = re.compile(r"^3\d{9}$")
PLATE_RE = re.compile(r"^[A-Z]{3}\d{3}$|^[A-Z]{3}\d{2}[A-Z]$")
_PHONE_NOISE_RE = re.compile(r"[\s\-()]")

ACCEPT_COMMANDS = (
    "1", "acepto", "aceptar", "si", "sí", "ok", "vale", "listo",
    "tomo", "yo", "accept", "yes",
)
CANCEL_WORDS = ("cancelar", "cancel")
CANCEL_COMMANDS = CANCEL_WORDS + ("2",)


def validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name", "Name cannot be empty")
    if len(name) < 2:
        raise ValidationError("name", "Name must have at least 2 characters")
    if len(name) > 50:
        raise ValidationError("name", "Name cannot exceed 50 characters")
    return name


def validate_location(location: str) -> str:
    location = (location or "").strip()
    if not location:
        raise ValidationError("location", "Location cannot be empty")
    if len(location) < 5:
        raise ValidationError(
            "location", "Location must be more specific (at least 5 characters)"
        )
    if len(location) > 200:
        raise ValidationError("location", "Location is too long (max 200 characters)")
    return location


def validate_phone(phone: str, country_code: str = "57") -> str:
    """Validate and return the normalized 10-digit phone number."""
    if not phone or not phone.strip():
        raise ValidationError("phone", "Phone cannot be empty")
    cleaned = clean_phone(phone, country_code)
    if not PHONE_RE.match(cleaned):
        raise ValidationError(
            "phone", "Phone must be a valid 10-digit number starting with 3"
        )
    return cleaned


def validate_plate(plate: str) -> str:
    plate = (plate or "").strip().upper()
    if not plate:
        raise ValidationError("plate", "Plate cannot be empty")
    if not PLATE_RE.match(plate):
        raise ValidationError("plate", "Plate must look like ABC123 or ABC12D")
    return plate


def clean_phone(phone: str, country_code: str = "57") -> str:
    """Strip separators and the country prefix.

    Returns the input unchanged when it does not reduce to a local
    10-digit number, so callers can still use it as an opaque identity.
    """
    cleaned = _PHONE_NOISE_RE.sub("", phone)
    if cleaned.startswith("+" + country_code):
        cleaned = cleaned[len(country_code) + 1:]
    elif cleaned.startswith(country_code) and len(cleaned) == 10 + len(country_code):
        cleaned = cleaned[len(country_code):]
    if len(cleaned) == 10 and cleaned.startswith("3"):
        return cleaned
    return phone.strip()


def is_accept_command(text: str) -> bool:
    words = (text or "").lower().split()
    return bool(words) and words[0] in ACCEPT_COMMANDS


def is_cancel_command(text: str, include_digit: bool = True) -> bool:
    """Pass include_digit=False outside a pending ride: "2" is also a menu answer."""
    command = (text or "").strip().lower()
    return command in (CANCEL_COMMANDS if include_digit else CANCEL_WORDS)
