import os
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # Apple Developer
    apple_team_id: str = ""
    apple_pass_type_id: str = ""

    # PassKit signing certificate (.p12) and Apple WWDR intermediate
    passkit_cert_path: str = "certs/pass.p12"
    passkit_cert_password: str | None = None
    wwdr_cert_path: str | None = "certs/wwdr.pem"
    signing_backend: str = "cryptography"  # or "openssl"

    # Public base URL of this service (barcode + PassKit web service)
    web_service_url: str = "http://localhost:8000"

    # HMAC secret for the pass authenticationToken
    passkit_auth_secret: str = "default-secret-change-in-production"

    # APNs token-based auth (.p8 key)
    apns_key_path: str | None = None
    apns_key_id: str = ""
    apns_use_sandbox: bool = True

    # Stamping rules
    stamp_cooldown_minutes: int = 5

    # Redis (strip image cache)
    redis_url: str = "redis://localhost:6379/0"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


def is_passkit_configured() -> bool:
    """Check that everything needed to sign a pass is present."""
    return bool(
        settings.apple_pass_type_id
        and settings.apple_team_id
        and settings.passkit_cert_path
        and os.path.exists(settings.passkit_cert_path)
        and settings.web_service_url
    )


def is_apns_configured() -> bool:
    """Check that token-based APNs credentials are present."""
    return bool(
        settings.apns_key_path
        and settings.apns_key_id
        and settings.apple_team_id
        and settings.apple_pass_type_id
    )


def is_database_configured() -> bool:
    return bool(settings.supabase_url and settings.supabase_secret_key)
