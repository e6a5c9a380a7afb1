"""
Error taxonomy for pass issuance and loyalty state.

Every failure raised out of the pass-building core is one of these classes.
Library exceptions (cryptography, Pillow, httpx, zipfile, subprocess) are
translated at the module boundary that catches them.
"""


class TapStampError(Exception):
    """Base class for all domain errors."""


# ============================================
# Reward state machine
# ============================================

class RewardError(TapStampError, ValueError):
    """Precondition violation in the reward state machine (caller bug)."""


class InvalidGoal(RewardError):
    def __init__(self, goal: int):
        super().__init__("Reward goal must be greater than zero.")
        self.goal = goal


class NegativeCount(RewardError):
    def __init__(self, count: int):
        super().__init__("Stamp count cannot be negative.")
        self.count = count


class RewardPending(TapStampError):
    """A stamp was attempted while a reward is waiting to be claimed."""


class CooldownActive(TapStampError):
    def __init__(self, remaining_seconds: int):
        super().__init__(f"Stamp cooldown active, {remaining_seconds}s remaining")
        self.remaining_seconds = remaining_seconds


class NoRewardAvailable(TapStampError):
    """A claim was attempted with no reward pending."""


# ============================================
# Credentials (fatal for pass issuance)
# ============================================

class CredentialError(TapStampError):
    """Signing credentials are missing or unusable."""


class CertificateParseError(CredentialError):
    pass


class DecryptionError(CredentialError):
    pass


class NoPrivateKeyFound(CredentialError):
    pass


class NoCertificateFound(CredentialError):
    pass


# ============================================
# Pass building
# ============================================

class SigningError(TapStampError):
    pass


class AssetGenerationError(TapStampError):
    pass


class LogoFetchError(TapStampError):
    """Fetching a remote logo failed. Always recovered by a fallback."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Failed to fetch logo {url}: {reason}")
        self.url = url
        self.reason = reason


class PassBuildError(TapStampError):
    """A single pass build failed. No partial bundle is returned."""

    def __init__(self, stage: str, cause: Exception):
        super().__init__(f"Pass build failed during {stage}: {cause}")
        self.stage = stage
        self.cause = cause


# ============================================
# Push delivery (collected, never raised to callers)
# ============================================

class PushDeliveryError(TapStampError):
    def __init__(self, push_token: str, reason: str, status_code: int | None = None):
        super().__init__(f"Push to {push_token[:12]}... failed: {reason}")
        self.push_token = push_token
        self.reason = reason
        self.status_code = status_code


# ============================================
# Storage
# ============================================

class DatabaseNotConfigured(TapStampError):
    pass
