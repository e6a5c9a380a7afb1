import logging
from functools import lru_cache

from fastapi import Depends, HTTPException
from starlette.concurrency import run_in_threadpool

from tapstamp.core.security import generate_auth_token
from tapstamp.domain.schemas import Member, Merchant
from tapstamp.repositories.member import MemberRepository
from tapstamp.repositories.pass_registration import PassRegistrationRepository
from tapstamp.services.apns import APNsClient, create_apns_client
from tapstamp.services.pass_generator import PassGenerator, PassInput, create_pass_generator

logger = logging.getLogger(__name__)


@lru_cache
def get_pass_generator() -> PassGenerator | None:
    return create_pass_generator()


@lru_cache
def get_apns_client() -> APNsClient | None:
    return create_apns_client()


def require_pass_generator(
    pass_generator: PassGenerator | None = Depends(get_pass_generator),
) -> PassGenerator:
    if pass_generator is None:
        raise HTTPException(status_code=503, detail="Apple Wallet passes are not configured")
    return pass_generator


def load_member(member_id: str) -> tuple[Member, Merchant]:
    """Member and its merchant, or 404."""
    row = MemberRepository.get_with_merchant(member_id)
    if not row:
        raise HTTPException(status_code=404, detail="Member not found")
    return Member.from_row(row), Merchant.from_row(row["merchant"])


def build_pass_input(member: Member, merchant: Merchant) -> PassInput:
    return PassInput(
        merchant=merchant,
        member=member,
        auth_token=generate_auth_token(member.id),
        member_name=member.name,
    )


async def _lookup_tokens(member_id: str) -> list[str]:
    return await run_in_threadpool(PassRegistrationRepository.get_apple_tokens, member_id)


async def notify_member(member_id: str, apns_client: APNsClient | None) -> dict:
    """Best-effort pass update push. Never raises."""
    if apns_client is None:
        logger.info("Push notifications not configured, skipping")
        return {"sent": 0, "failed": 0, "skipped": True}

    result = await apns_client.send_pass_update_to_member(member_id, _lookup_tokens)
    return {"sent": result["sent"], "failed": result["failed"], "skipped": False}
