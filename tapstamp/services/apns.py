"""
Apple Push Notification service client for Wallet pass updates.

Uses token-based auth: an ES256 JWT signed with the team's .p8 key. The
token is cached process-wide and re-signed shortly before it expires.
A PassKit push carries an empty payload; the device then asks the web
service for the changed pass.
"""

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from tapstamp.domain.errors import CredentialError, PushDeliveryError

logger = logging.getLogger(__name__)

APNS_HOST_PRODUCTION = "api.push.apple.com"
APNS_HOST_SANDBOX = "api.sandbox.push.apple.com"

# Apple rejects provider tokens older than an hour
TOKEN_LIFETIME = 3600
TOKEN_REFRESH_MARGIN = 600

DEFAULT_TIMEOUT = 10.0

RegistrationLookup = Callable[[str], Union[list[str], Awaitable[list[str]]]]


@dataclass
class APNsConfig:
    key_id: str
    team_id: str
    key_path: Optional[str] = None
    key_pem: Optional[str] = None
    production: bool = False

    def __post_init__(self):
        if not self.key_path and not self.key_pem:
            raise ValueError("Either key_path or key_pem must be provided")

    @property
    def host(self) -> str:
        return APNS_HOST_PRODUCTION if self.production else APNS_HOST_SANDBOX

    def load_key(self) -> str:
        if self.key_pem:
            return self.key_pem
        try:
            with open(self.key_path, "r") as f:
                return f.read()
        except OSError as e:
            raise CredentialError(f"Cannot read APNs key {self.key_path}: {e}") from e


class APNsTokenCache:
    """Holds the current provider token and its expiry.

    Changing any credential field signs a fresh token.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0
        self._fingerprint: Optional[tuple] = None

    def get_token(self, config: APNsConfig) -> str:
        now = int(self._clock())
        fingerprint = (config.key_id, config.team_id, config.key_path, config.key_pem)

        with self._lock:
            if (
                self._token is not None
                and self._fingerprint == fingerprint
                and self._expires_at - now > TOKEN_REFRESH_MARGIN
            ):
                return self._token

            try:
                token = jwt.encode(
                    {"iss": config.team_id, "iat": now},
                    config.load_key(),
                    algorithm="ES256",
                    headers={"kid": config.key_id},
                )
            except JOSEError as e:
                raise CredentialError(f"Cannot sign APNs token: {e}") from e

            self._token = token
            self._expires_at = now + TOKEN_LIFETIME
            self._fingerprint = fingerprint
            logger.debug(f"Signed new APNs provider token (key {config.key_id})")
            return token

    def clear(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0
            self._fingerprint = None


# Shared by every client in the process
_default_token_cache = APNsTokenCache()


def _failure_reason(response: httpx.Response) -> str:
    try:
        return response.json().get("reason") or f"APNs returned status {response.status_code}"
    except ValueError:
        return f"APNs returned status {response.status_code}"


class APNsClient:
    def __init__(
        self,
        pass_type_id: str,
        config: APNsConfig,
        token_cache: Optional[APNsTokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.pass_type_id = pass_type_id
        self.config = config
        self.token_cache = token_cache or _default_token_cache
        self.transport = transport
        self.timeout = timeout

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"https://{self.config.host}",
            http2=True,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _send_single(
        self, push_token: str, client: httpx.AsyncClient
    ) -> Optional[PushDeliveryError]:
        """Push to one device. Returns the failure, or None on success."""
        try:
            token = self.token_cache.get_token(self.config)
        except CredentialError as e:
            logger.error(f"APNs credentials unusable: {e}")
            return PushDeliveryError(push_token, str(e))

        headers = {
            "authorization": f"bearer {token}",
            "apns-topic": self.pass_type_id,
            "apns-push-type": "background",
            "apns-priority": "5",
            "content-type": "application/json",
        }

        try:
            response = await client.post(f"/3/device/{push_token}", content=b"{}", headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"Push to {push_token[:20]}... timed out")
            return PushDeliveryError(push_token, "timeout")
        except httpx.HTTPError as e:
            logger.warning(f"Push to {push_token[:20]}... failed: {e}")
            return PushDeliveryError(push_token, str(e))
        except Exception as e:
            # Malformed tokens surface as InvalidURL, which is not an HTTPError
            logger.error(f"Push to {push_token[:20]}... raised {type(e).__name__}: {e}")
            return PushDeliveryError(push_token, str(e) or type(e).__name__)

        if response.status_code == 200:
            logger.info(f"Push sent successfully to {push_token[:20]}...")
            return None

        reason = _failure_reason(response)
        logger.warning(f"Push failed: {response.status_code} - {reason}")
        return PushDeliveryError(push_token, reason, response.status_code)

    async def send_pass_update(self, push_token: str) -> Optional[PushDeliveryError]:
        """Send a push notification to update a Wallet pass."""
        async with self._new_client() as client:
            return await self._send_single(push_token, client)

    async def send_to_all_devices(self, push_tokens: list[str]) -> dict:
        """Send push notifications to multiple devices.

        Returns {"sent": n, "failed": m, "errors": [PushDeliveryError, ...]}.
        One device failing never affects the others.
        """
        results = {"sent": 0, "failed": 0, "errors": []}
        if not push_tokens:
            return results

        async with self._new_client() as client:
            outcomes = await asyncio.gather(
                *(self._send_single(token, client) for token in push_tokens),
                return_exceptions=True,
            )

        for token, outcome in zip(push_tokens, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Push to {token[:20]}... raised: {outcome!r}")
                outcome = PushDeliveryError(token, str(outcome) or type(outcome).__name__)
            if outcome is None:
                results["sent"] += 1
            else:
                results["failed"] += 1
                results["errors"].append(outcome)

        return results

    async def send_pass_update_to_member(
        self, member_id: str, registration_lookup: RegistrationLookup
    ) -> dict:
        """Push to every device registered for a member's pass."""
        try:
            tokens = registration_lookup(member_id)
            if inspect.isawaitable(tokens):
                tokens = await tokens
        except Exception as e:
            logger.error(f"Failed to fetch registrations for member {member_id}: {e}")
            return {"sent": 0, "failed": 0, "errors": []}

        if not tokens:
            logger.info(f"No device registrations found for member {member_id}")
            return {"sent": 0, "failed": 0, "errors": []}

        logger.info(f"Sending push to {len(tokens)} device(s) for member {member_id}")
        return await self.send_to_all_devices(list(tokens))


def get_apns_config() -> Optional[APNsConfig]:
    """APNsConfig from settings, or None if push is not configured."""
    from tapstamp.core.config import is_apns_configured, settings

    if not is_apns_configured():
        return None

    return APNsConfig(
        key_id=settings.apns_key_id,
        team_id=settings.apple_team_id,
        key_path=settings.apns_key_path,
        production=not settings.apns_use_sandbox,
    )


def create_apns_client() -> Optional[APNsClient]:
    """Factory function to create APNsClient from settings."""
    from tapstamp.core.config import settings

    config = get_apns_config()
    if config is None:
        return None
    return APNsClient(pass_type_id=settings.apple_pass_type_id, config=config)
