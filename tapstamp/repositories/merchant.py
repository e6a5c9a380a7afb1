from database.connection import get_db, with_retry


class MerchantRepository:

    @staticmethod
    @with_retry()
    def get_by_id(merchant_id: str) -> dict | None:
        """Get a merchant by ID."""
        db = get_db()
        result = db.table("merchants").select("*").eq("id", merchant_id).limit(1).execute()
        return result.data[0] if result and result.data else None
