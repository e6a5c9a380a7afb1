from datetime import datetime, timezone

from database.connection import get_db, with_retry
from tapstamp.repositories.merchant import MerchantRepository


class MemberRepository:

    @staticmethod
    @with_retry()
    def get_by_id(member_id: str) -> dict | None:
        """Get a member by ID."""
        db = get_db()
        result = db.table("members").select("*").eq("id", member_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    def get_with_merchant(member_id: str) -> dict | None:
        """Get a member with its merchant row nested under "merchant"."""
        member = MemberRepository.get_by_id(member_id)
        if not member:
            return None
        merchant = MerchantRepository.get_by_id(member["merchant_id"])
        if not merchant:
            return None
        return {**member, "merchant": merchant}

    @staticmethod
    @with_retry()
    def update_stamp(
        member_id: str,
        stamp_count: int,
        reward_available: bool,
        stamped_at: datetime | None = None,
    ) -> dict | None:
        """Store a new stamp count and reward flag, stamping last_stamp_at."""
        db = get_db()
        stamped_at = stamped_at or datetime.now(timezone.utc)
        result = db.table("members").update({
            "stamp_count": stamp_count,
            "reward_available": reward_available,
            "last_stamp_at": stamped_at.isoformat(),
        }).eq("id", member_id).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def reset_reward(member_id: str) -> dict | None:
        """Reset after a claim. Clearing last_stamp_at means no cooldown follows."""
        db = get_db()
        result = db.table("members").update({
            "stamp_count": 0,
            "reward_available": False,
            "last_stamp_at": None,
        }).eq("id", member_id).execute()
        return result.data[0] if result and result.data else None
