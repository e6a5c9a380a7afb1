import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from tapstamp.api.deps import build_pass_input, load_member, require_pass_generator
from tapstamp.domain.errors import CredentialError, PassBuildError
from tapstamp.services.pass_generator import PassGenerator

logger = logging.getLogger(__name__)

router = APIRouter()

PKPASS_MEDIA_TYPE = "application/vnd.apple.pkpass"


def render_pass(pass_generator: PassGenerator, member_id: str) -> bytes:
    """Build a member's .pkpass, mapping build failures to HTTP errors."""
    member, merchant = load_member(member_id)
    try:
        return pass_generator.generate_pass(build_pass_input(member, merchant))
    except CredentialError as e:
        logger.error(f"Pass signing credentials unusable: {e}")
        raise HTTPException(status_code=503, detail="Pass signing is unavailable")
    except PassBuildError as e:
        logger.error(f"Pass build failed for member {member_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate pass")


@router.get("/{member_id}")
def download_pass(
    member_id: str,
    pass_generator: PassGenerator = Depends(require_pass_generator),
):
    """Download the .pkpass file for a member."""
    pass_data = render_pass(pass_generator, member_id)
    return Response(
        content=pass_data,
        media_type=PKPASS_MEDIA_TYPE,
        headers={
            "Content-Disposition": 'attachment; filename="loyalty-card.pkpass"',
        },
    )
