import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from database.connection import init_db
from tapstamp.api import api_router
from tapstamp.api.deps import get_apns_client, get_pass_generator
from tapstamp.domain.errors import CredentialError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def preload_pass_signing() -> bool:
    """Load signing credentials at startup so bad certificates fail loudly."""
    pass_generator = get_pass_generator()
    if pass_generator is None:
        logger.warning("Apple Wallet pass signing not configured. Pass issuance disabled.")
        return False

    try:
        pass_generator.preload()
    except CredentialError as e:
        logger.error(f"PASS ISSUANCE DOWN: signing credentials unusable: {e}")
        return False

    logger.info("Pass signing credentials loaded")
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    preload_pass_signing()
    if get_apns_client() is None:
        logger.warning("APNs not configured. Wallet passes will not auto-update.")
    yield
    # Shutdown


def create_app() -> FastAPI:
    app = FastAPI(
        title="Tap & Stamp",
        description="Loyalty stamp cards in Apple Wallet",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
