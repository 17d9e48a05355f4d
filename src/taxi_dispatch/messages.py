"""User-facing message templates."""

from datetime import datetime
from typing import Optional

GREETING = "Hello! Welcome to Taxi Cooperative 🚕"
MENU = "Choose an option:\n1️⃣ Request a taxi"

ASK_NAME = "Please tell me your name:"
ASK_LOCATION = (
    "📍 Please share your location using the WhatsApp location button,\n"
    "or type your address."
)
SEARCHING = "🔍 Looking for an available taxi, please wait a moment..."


def driver_notification(client_name: str, location: str) -> str:
    return (
        "🚕 New taxi request:\n"
        f"👤 Client: {client_name}\n"
        f"📍 Location: {location}\n\n"
        '1️⃣ Reply "1" to accept this ride'
    )


def client_assigned(driver_name: str, plate: str, driver_phone: str, eta_minutes: int) -> str:
    return (
        "✅ Taxi assigned!\n"
        f"👤 Driver: {driver_name}\n"
        f"🚗 Plate: {plate}\n"
        f"📱 Phone: {driver_phone}\n\n"
        f"⏰ Your taxi will arrive in about {eta_minutes} minutes"
    )


def driver_assigned_details(client_name: str, location: str, client_phone: str) -> str:
    return (
        f"👤 Client: {client_name}\n"
        f"📍 Location: {location}\n"
        f"📱 Phone: {client_phone}"
    )


def searching_summary(notified: int, window_seconds: float) -> str:
    return (
        "🔍 Looking for an available taxi...\n"
        f"✅ {notified} drivers were notified.\n"
        f"⏳ Waiting for a driver (up to {int(window_seconds)} seconds)...\n\n"
        '❌ Reply "2" to cancel your request'
    )


def other_drivers_taken(driver_name: str) -> str:
    return f"❌ The ride was taken by {driver_name}"


CLIENT_CANCELLATION_AVAILABLE = 'If you need to cancel, reply "cancel".'
DRIVER_ACCEPTED = "✅ Ride assigned! The client will receive your details."
DRIVER_TOO_LATE = "❌ This ride was already taken by another driver."
DRIVER_INACTIVE = "⚠️ Your driver account is inactive. Contact the administrator."
NO_DRIVERS_AVAILABLE = (
    "😔 Sorry, there are no drivers available right now. Please try again later."
)
REQUEST_TIMEOUT = "⏰ No driver accepted your request this time."
REQUEST_CANCELLED = "✅ Your taxi request has been cancelled."
NO_PENDING_REQUEST = "ℹ️ You have no pending requests to cancel."
RIDE_COMPLETED = "✅ Your ride is complete. Thanks for riding with Taxi Cooperative!"
SYSTEM_ERROR = "🔧 A system error occurred. Please try again."

# Driver self-service
DRIVER_NOW_ACTIVE = "🟢 You are now ACTIVE and will receive ride requests."
DRIVER_NOW_INACTIVE = "🔴 You are now INACTIVE and will not receive ride requests."
NO_ACTIVE_RIDES = "ℹ️ You have no active rides to complete."


def driver_ride_completed(client_name: str) -> str:
    return f"✅ Ride completed.\n👤 Client: {client_name}"


# Requester status and cancellation
WAITING_FOR_DRIVER = (
    "⏳ You are waiting for a driver to respond. Reply '2' to cancel your request."
)
CONFIRM_CANCEL = (
    "🤔 Are you sure you want to cancel your taxi request?\n\n"
    "1️⃣ Yes, cancel\n2️⃣ No, keep my request"
)
CANCEL_KEPT = "✅ Request kept. Still waiting for a driver..."
CONFIRM_CANCEL_INVALID = (
    "❌ Invalid option. Reply:\n1️⃣ To cancel\n2️⃣ To keep your request"
)
NO_ACTIVE_REQUEST = 'ℹ️ You have no active requests. Type "menu" to request a taxi.'


def status_pending(minutes: int) -> str:
    return (
        f"⏳ Your request is pending ({minutes} min)\n"
        "🔍 Still looking for an available driver..."
    )


def status_assigned(driver_name: str, plate: str, driver_phone: str) -> str:
    return (
        "✅ Taxi assigned!\n"
        f"👤 Driver: {driver_name}\n"
        f"🚗 Plate: {plate}\n"
        f"📱 Phone: {driver_phone}"
    )


# Driver profile and location
DRIVER_ASK_LOCATION = "📍 Send your current location:"


def driver_location_updated(location: str) -> str:
    return f"✅ Location updated.\n📍 New location: {location}"


def driver_profile(
    name: str,
    phone: str,
    plate: str,
    location: Optional[str],
    active: bool,
    registered: datetime,
) -> str:
    status = "ACTIVE ✅" if active else "INACTIVE ⏸️"
    return (
        "👤 Your driver profile:\n"
        f"Name: {name}\n"
        f"📱 Phone: {phone}\n"
        f"🚗 Plate: {plate}\n"
        f"📍 Location: {location or 'Not registered'}\n"
        f"Status: {status}\n"
        f"📅 Registered: {registered:%Y-%m-%d}"
    )
