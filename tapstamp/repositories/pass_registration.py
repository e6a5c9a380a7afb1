"""
Repository for Apple Wallet device registrations.
Uses the pass_registrations table; one row per (member, device, pass type).
"""

from database.connection import get_db, with_retry
from tapstamp.core.security import serial_for_member


class PassRegistrationRepository:

    @staticmethod
    @with_retry()
    def register(member_id: str, device_id: str, push_token: str, pass_type_id: str) -> None:
        """Register (or refresh the push token of) a device for a member's pass."""
        db = get_db()
        db.table("pass_registrations").upsert({
            "member_id": member_id,
            "device_id": device_id,
            "push_token": push_token,
            "pass_type_id": pass_type_id,
            "platform": "apple",
        }, on_conflict="member_id,device_id,pass_type_id").execute()

    @staticmethod
    @with_retry()
    def unregister(member_id: str, device_id: str, pass_type_id: str) -> None:
        db = get_db()
        db.table("pass_registrations").delete().eq(
            "member_id", member_id
        ).eq("device_id", device_id).eq("pass_type_id", pass_type_id).execute()

    @staticmethod
    @with_retry()
    def get_apple_tokens(member_id: str) -> list[str]:
        """Get Apple push tokens for a member."""
        db = get_db()
        result = db.table("pass_registrations").select("push_token").eq(
            "member_id", member_id
        ).eq("platform", "apple").execute()
        return [r["push_token"] for r in result.data if r.get("push_token")]

    @staticmethod
    @with_retry()
    def get_serial_numbers_for_device(device_id: str, pass_type_id: str) -> list[str]:
        """Serial numbers of the passes registered on a device."""
        db = get_db()
        result = db.table("pass_registrations").select("member_id").eq(
            "device_id", device_id
        ).eq("pass_type_id", pass_type_id).execute()
        return [serial_for_member(r["member_id"]) for r in result.data]
