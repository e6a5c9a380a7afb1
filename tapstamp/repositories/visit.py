from database.connection import get_db, with_retry


class VisitRepository:

    @staticmethod
    @with_retry()
    def create(merchant_id: str, member_id: str) -> dict | None:
        """Record a visit (audit trail for stamps)."""
        db = get_db()
        result = db.table("visits").insert({
            "merchant_id": merchant_id,
            "member_id": member_id,
        }).execute()
        return result.data[0] if result and result.data else None
