from fastapi import APIRouter

from .routes import passes, stamps, wallet

api_router = APIRouter()

api_router.include_router(passes.router, prefix="/passes", tags=["passes"])
api_router.include_router(stamps.router, prefix="/stamps", tags=["stamps"])

# Apple Wallet web service (webServiceURL = {base}/passkit/v1)
api_router.include_router(wallet.router, prefix="/passkit/v1", tags=["wallet"])
