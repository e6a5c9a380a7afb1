"""
Apple Wallet PassKit web service.

Wallet calls these endpoints to register devices for push updates and to
download the latest version of a pass after a push.
"""

import logging
import time
from datetime import datetime, timezone
from email.utils import formatdate, parsedate_to_datetime

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Response

from tapstamp.api.deps import require_pass_generator
from tapstamp.api.routes.passes import PKPASS_MEDIA_TYPE, render_pass
from tapstamp.core.security import extract_member_id, verify_auth_token, verify_member_token
from tapstamp.domain.schemas import DeviceRegistration
from tapstamp.repositories.member import MemberRepository
from tapstamp.repositories.pass_registration import PassRegistrationRepository
from tapstamp.services.pass_generator import PassGenerator

logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_datetime(value) -> datetime | None:
    """Parse a datetime value from the database (string or datetime)."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _get_last_modified(member_row: dict) -> datetime | None:
    """Latest change to anything drawn on the member's pass."""
    merchant_row = member_row.get("merchant") or {}
    timestamps = [
        _parse_datetime(member_row.get("updated_at")),
        _parse_datetime(member_row.get("last_stamp_at")),
        _parse_datetime(merchant_row.get("updated_at")),
    ]
    timestamps = [t for t in timestamps if t is not None]
    return max(timestamps) if timestamps else None


def _authenticate(serial_number: str, authorization: str | None) -> str:
    """Member id for an authenticated pass request."""
    auth_token = verify_auth_token(authorization)
    if not auth_token:
        raise HTTPException(status_code=401, detail="Authorization required")

    member_id = extract_member_id(serial_number)
    if not member_id:
        raise HTTPException(status_code=400, detail="Invalid serial number")

    if not verify_member_token(auth_token, member_id):
        raise HTTPException(status_code=401, detail="Invalid authentication")
    return member_id


@router.post("/devices/{device_id}/registrations/{pass_type_id}/{serial_number}")
def register_device(
    device_id: str,
    pass_type_id: str,
    serial_number: str,
    body: DeviceRegistration,
    authorization: str | None = Header(None),
):
    """Register a device for push notifications."""
    member_id = _authenticate(serial_number, authorization)

    if not MemberRepository.get_by_id(member_id):
        raise HTTPException(status_code=404, detail="Member not found")

    PassRegistrationRepository.register(member_id, device_id, body.pushToken, pass_type_id)
    logger.info(f"Device registered: {device_id[:20]}... for member {member_id}")
    return Response(status_code=201)


@router.delete("/devices/{device_id}/registrations/{pass_type_id}/{serial_number}")
def unregister_device(
    device_id: str,
    pass_type_id: str,
    serial_number: str,
    authorization: str | None = Header(None),
):
    """Unregister a device from push notifications."""
    member_id = _authenticate(serial_number, authorization)

    PassRegistrationRepository.unregister(member_id, device_id, pass_type_id)
    logger.info(f"Device unregistered: {device_id[:20]}... for member {member_id}")
    return Response(status_code=200)


@router.get("/devices/{device_id}/registrations/{pass_type_id}")
def get_serial_numbers(
    device_id: str,
    pass_type_id: str,
    passesUpdatedSince: str | None = None,  # noqa: N803 - Apple Wallet API requirement
):
    """List passes registered on this device, optionally only those updated since a tag."""
    serial_numbers = PassRegistrationRepository.get_serial_numbers_for_device(device_id, pass_type_id)

    if serial_numbers and passesUpdatedSince:
        try:
            since = datetime.fromtimestamp(float(passesUpdatedSince), tz=timezone.utc)
        except (ValueError, TypeError, OverflowError):
            since = None  # unparseable tag: return everything

        if since is not None:
            filtered = []
            for serial_number in serial_numbers:
                row = MemberRepository.get_with_merchant(extract_member_id(serial_number))
                last_modified = _get_last_modified(row) if row else None
                if last_modified is None or last_modified > since:
                    filtered.append(serial_number)
            serial_numbers = filtered

    if not serial_numbers:
        return Response(status_code=204)

    return {
        "serialNumbers": serial_numbers,
        "lastUpdated": str(int(time.time())),
    }


@router.get("/passes/{pass_type_id}/{serial_number}")
def get_latest_pass(
    pass_type_id: str,
    serial_number: str,
    authorization: str | None = Header(None),
    if_modified_since: str | None = Header(None, alias="If-Modified-Since"),
    pass_generator: PassGenerator = Depends(require_pass_generator),
):
    """Download the latest version of a pass."""
    member_id = _authenticate(serial_number, authorization)

    row = MemberRepository.get_with_merchant(member_id)
    if not row:
        raise HTTPException(status_code=404, detail="Member not found")

    last_modified = _get_last_modified(row)

    if if_modified_since and last_modified:
        try:
            client_date = parsedate_to_datetime(if_modified_since)
            if client_date.tzinfo is None:
                client_date = client_date.replace(tzinfo=timezone.utc)
            # HTTP dates have whole-second precision
            if last_modified.replace(microsecond=0) <= client_date:
                return Response(status_code=304)
        except (ValueError, TypeError):
            pass  # malformed header, serve the full pass

    pass_data = render_pass(pass_generator, member_id)

    headers = {}
    if last_modified:
        headers["Last-Modified"] = formatdate(last_modified.timestamp(), usegmt=True)

    return Response(content=pass_data, media_type=PKPASS_MEDIA_TYPE, headers=headers)


@router.post("/log")
def receive_logs(body: dict = Body(...)):
    """Receive error logs from Apple Wallet."""
    for entry in body.get("logs", []):
        logger.warning(f"Wallet log: {entry}")
    return Response(status_code=200)
