import hashlib
import hmac
import logging

from tapstamp.core.config import settings

logger = logging.getLogger(__name__)

SERIAL_PREFIX = "apple-"


def generate_auth_token(member_id: str, secret: str | None = None) -> str:
    """Pass authenticationToken: HMAC-SHA256 of the member id."""
    key = (secret or settings.passkit_auth_secret).encode()
    return hmac.new(key, member_id.encode(), hashlib.sha256).hexdigest()


def verify_member_token(token: str, member_id: str, secret: str | None = None) -> bool:
    """Constant-time check of a pass authenticationToken."""
    return hmac.compare_digest(token, generate_auth_token(member_id, secret))


def verify_auth_token(authorization: str | None) -> str | None:
    """Extract auth token from Authorization header (Apple Wallet passes)."""
    if not authorization:
        return None
    if authorization.startswith("ApplePass "):
        return authorization[10:]
    return None


def serial_for_member(member_id: str) -> str:
    return f"{SERIAL_PREFIX}{member_id}"


def extract_member_id(serial_number: str) -> str | None:
    """Member id from a pass serial number (format: apple-{memberId})."""
    if serial_number.startswith(SERIAL_PREFIX) and len(serial_number) > len(SERIAL_PREFIX):
        return serial_number[len(SERIAL_PREFIX):]
    return None
