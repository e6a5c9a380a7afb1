from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from tapstamp.api.deps import get_apns_client, load_member, notify_member
from tapstamp.core.config import settings
from tapstamp.domain.errors import CooldownActive, NoRewardAvailable, RewardPending
from tapstamp.domain.reward import apply_stamp, claim_reward
from tapstamp.domain.schemas import CooldownErrorResponse, StampResponse
from tapstamp.repositories.member import MemberRepository
from tapstamp.repositories.visit import VisitRepository
from tapstamp.services.apns import APNsClient

router = APIRouter()


@router.post("/{member_id}", response_model=StampResponse)
async def add_member_stamp(
    member_id: str,
    apns_client: APNsClient | None = Depends(get_apns_client),
):
    """Add a stamp to a member's card and push the pass update."""
    member, merchant = load_member(member_id)

    try:
        outcome = apply_stamp(member, merchant.reward_goal, settings.stamp_cooldown_minutes)
    except RewardPending:
        raise HTTPException(status_code=409, detail="Reward pending: claim it before stamping again")
    except CooldownActive as e:
        return JSONResponse(
            status_code=429,
            content=CooldownErrorResponse(
                detail="Stamp cooldown active",
                remaining_seconds=e.remaining_seconds,
            ).model_dump(),
        )

    MemberRepository.update_stamp(
        member_id, outcome.stamp_count, outcome.reward_available, outcome.stamped_at
    )
    VisitRepository.create(merchant.id, member_id)

    # The stamp is committed; a failed push never undoes it
    push = await notify_member(member_id, apns_client)

    message = "Stamp added!"
    if outcome.reward_available:
        message = "Congratulations! You've earned a reward!"

    return StampResponse(
        member_id=member_id,
        stamp_count=outcome.stamp_count,
        reward_goal=merchant.reward_goal,
        reward_available=outcome.reward_available,
        message=message,
        push=push,
    )


@router.post("/{member_id}/redeem", response_model=StampResponse)
async def redeem_member_reward(
    member_id: str,
    apns_client: APNsClient | None = Depends(get_apns_client),
):
    """Claim a member's reward, reset the card and push the pass update."""
    member, merchant = load_member(member_id)

    try:
        stamp_count, reward_available = claim_reward(member)
    except NoRewardAvailable:
        raise HTTPException(status_code=400, detail="No reward available to claim")

    MemberRepository.reset_reward(member_id)
    push = await notify_member(member_id, apns_client)

    return StampResponse(
        member_id=member_id,
        stamp_count=stamp_count,
        reward_goal=merchant.reward_goal,
        reward_available=reward_available,
        message="Reward redeemed! Card reset.",
        push=push,
    )
