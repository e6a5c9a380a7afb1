"""
Apple Wallet .pkpass bundle builder.

A bundle is a ZIP archive holding pass.json, the image assets, manifest.json
(SHA-1 of every other file) and signature (detached PKCS#7 over the exact
manifest bytes). Building is deterministic: the same inputs and the same
fetched logos always give the same archive bytes.
"""

import io
import ipaddress
import json
import logging
import zipfile
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlparse

from tapstamp.core.security import serial_for_member
from tapstamp.domain.errors import (
    AssetGenerationError,
    LogoFetchError,
    PassBuildError,
    SigningError,
)
from tapstamp.domain.schemas import Branding, Member, Merchant
from tapstamp.services.pass_assets import (
    download_logo,
    generate_icons,
    generate_logos,
    prepare_stamp_logo,
)
from tapstamp.services.signer import ManifestSigner, SignerConfig, sha1_hash
from tapstamp.services.strip_cache import StripCache
from tapstamp.services.strip_generator import StripImageGenerator

logger = logging.getLogger(__name__)

LogoFetcher = Callable[[str], bytes]

REWARD_READY_LABEL = "🎁 REWARD READY!"
BARCODE_FORMAT = "PKBarcodeFormatQR"
BARCODE_ENCODING = "iso-8859-1"

# Fixed entry timestamp so archives are byte-identical across builds
ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)


@dataclass
class PassBuilderConfig:
    pass_type_id: str
    team_id: str
    web_service_url: str
    signer_config: SignerConfig


@dataclass
class PassInput:
    merchant: Merchant
    member: Member
    auth_token: str
    branding: Optional[Branding] = None  # defaults to merchant.branding
    member_name: Optional[str] = None

    def __post_init__(self):
        if self.branding is None:
            self.branding = self.merchant.branding


def hex_to_rgb(hex_color: str) -> str:
    """Convert '#RRGGBB' to PassKit's 'rgb(r, g, b)'. Invalid input gives black."""
    value = (hex_color or "").strip().lstrip("#")
    if len(value) != 6:
        return "rgb(0, 0, 0)"
    try:
        r, g, b = (int(value[i : i + 2], 16) for i in (0, 2, 4))
    except ValueError:
        return "rgb(0, 0, 0)"
    return f"rgb({r}, {g}, {b})"


def is_public_service_url(url: str | None) -> bool:
    """False for localhost, loopback, private and link-local hosts.

    Apple Wallet refuses to register with such web services.
    """
    if not url:
        return False
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return False
    if host == "localhost" or host.endswith(".localhost") or host.endswith(".local"):
        return False
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return True
    return not (ip.is_loopback or ip.is_unspecified or ip.is_link_local or ip.is_private)


def create_pass_json(pass_input: PassInput, config: PassBuilderConfig) -> dict:
    """Create the pass.json content for a storeCard."""
    merchant = pass_input.merchant
    member = pass_input.member
    branding = pass_input.branding
    base_url = config.web_service_url.rstrip("/")

    if member.reward_available:
        stamp_display = REWARD_READY_LABEL
    else:
        stamp_display = f"{member.stamp_count} / {merchant.reward_goal}"

    barcode = {
        "format": BARCODE_FORMAT,
        "message": f"{base_url}/stamp/{member.id}",
        "messageEncoding": BARCODE_ENCODING,
    }

    pass_json = {
        "formatVersion": 1,
        "passTypeIdentifier": config.pass_type_id,
        "teamIdentifier": config.team_id,
        "serialNumber": serial_for_member(member.id),
        "organizationName": merchant.name,
        "description": f"{merchant.name} Loyalty Card",
        # No logoText: logo.png always carries the name or the header logo
        "foregroundColor": hex_to_rgb(branding.label_color),
        "backgroundColor": hex_to_rgb(branding.background.color),
        "labelColor": hex_to_rgb(branding.label_color),
        "storeCard": {
            "headerFields": [
                {"key": "stamps", "label": "STAMPS", "value": stamp_display},
            ],
            "secondaryFields": [],
            "backFields": [
                {
                    "key": "terms",
                    "label": "Terms & Conditions",
                    "value": (
                        f"Collect {merchant.reward_goal} stamps to earn a free reward. "
                        "One stamp per visit. Stamps expire after 12 months of inactivity."
                    ),
                },
                {"key": "merchant", "label": "About", "value": merchant.name},
            ],
        },
        "barcode": dict(barcode),
        "barcodes": [dict(barcode)],
    }

    if pass_input.member_name:
        pass_json["storeCard"]["secondaryFields"].append(
            {"key": "member", "label": "MEMBER", "value": pass_input.member_name}
        )

    if is_public_service_url(base_url):
        pass_json["webServiceURL"] = f"{base_url}/passkit/v1"
        pass_json["authenticationToken"] = pass_input.auth_token

    return pass_json


def serialize_pass_json(pass_json: dict) -> bytes:
    return json.dumps(pass_json, indent=2, ensure_ascii=False).encode("utf-8")


def create_pass_json_content(pass_input: PassInput, config: PassBuilderConfig) -> str:
    """Just the pass.json text (useful for pass updates)."""
    return serialize_pass_json(create_pass_json(pass_input, config)).decode("utf-8")


class PassGenerator:
    def __init__(
        self,
        config: PassBuilderConfig,
        fetch_logo: LogoFetcher = download_logo,
        signer: Optional[ManifestSigner] = None,
        strip_cache: Optional[StripCache] = None,
    ):
        self.config = config
        self.fetch_logo = fetch_logo
        self.signer = signer or ManifestSigner(config.signer_config)
        self.strip_cache = strip_cache

    def preload(self) -> None:
        """Load signing credentials now (fail fast on bad configuration)."""
        self.signer.preload()

    def _fetch_optional(self, url: str, purpose: str) -> Optional[bytes]:
        """Fetch a logo, or None on failure. Fetch failures never fail a build."""
        try:
            return self.fetch_logo(url)
        except LogoFetchError as e:
            logger.warning(f"Could not fetch {purpose}, using fallback: {e}")
            return None

    def _get_strip_files(self, pass_input: PassInput) -> dict[str, bytes]:
        merchant = pass_input.merchant
        member = pass_input.member
        branding = pass_input.branding
        cacheable = self.strip_cache is not None and branding == merchant.branding

        if cacheable:
            cached = self.strip_cache.get_strips(
                merchant.id, merchant.branding_version, merchant.reward_goal, member.stamp_count
            )
            if cached:
                return cached

        stamp_logo = None
        if branding.stamp.shape == "logo" and branding.logo_url:
            stamp_logo = prepare_stamp_logo(
                self._fetch_optional(branding.logo_url, "stamp logo"),
                branding.logo_url,
            )

        generator = StripImageGenerator(branding, merchant.reward_goal, stamp_logo)
        strips = generator.generate_all_resolutions(member.stamp_count)

        # A degraded render (logo stamps drawn as circles) is never cached
        if cacheable and generator.shape == branding.stamp.shape:
            self.strip_cache.set_strips(
                merchant.id, merchant.branding_version, merchant.reward_goal,
                member.stamp_count, strips,
            )
        return strips

    def _get_asset_files(self, pass_input: PassInput) -> dict[str, bytes]:
        """Generate icons, logos and the stamp strip."""
        branding = pass_input.branding
        files = generate_icons(branding)

        header_logo = None
        if branding.header_logo_url:
            header_logo = self._fetch_optional(branding.header_logo_url, "header logo")

        files.update(generate_logos(
            pass_input.merchant.name, branding, header_logo, branding.header_logo_url
        ))
        files.update(self._get_strip_files(pass_input))
        return files

    def _create_manifest(self, files: dict[str, bytes]) -> bytes:
        """Create manifest.json with SHA-1 hashes of all files."""
        manifest = {filename: sha1_hash(content) for filename, content in files.items()}
        return json.dumps(manifest, separators=(",", ":")).encode("utf-8")

    def _package(self, files: dict[str, bytes]) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            for filename, content in files.items():
                info = zipfile.ZipInfo(filename, date_time=ZIP_TIMESTAMP)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                zf.writestr(info, content, compresslevel=9)
        return buffer.getvalue()

    def generate_pass(self, pass_input: PassInput) -> bytes:
        """Generate a complete .pkpass file.

        Raises:
            PassBuildError: asset generation, signing or packaging failed
            CredentialError: the signing certificate cannot be loaded
        """
        try:
            pass_json = serialize_pass_json(create_pass_json(pass_input, self.config))
        except (TypeError, ValueError) as e:
            raise PassBuildError("pass.json", e) from e

        try:
            assets = self._get_asset_files(pass_input)
        except (AssetGenerationError, OSError, ValueError) as e:
            raise PassBuildError("assets", e) from e

        files = {"pass.json": pass_json, **assets}
        manifest = self._create_manifest(files)

        try:
            signature = self.signer.sign(manifest)
        except SigningError as e:
            raise PassBuildError("signing", e) from e

        files["manifest.json"] = manifest
        files["signature"] = signature

        try:
            bundle = self._package(files)
        except (OSError, zipfile.LargeZipFile) as e:
            raise PassBuildError("packaging", e) from e

        logger.info(
            f"Built pass {serial_for_member(pass_input.member.id)} "
            f"({len(files)} files, {len(bundle)} bytes)"
        )
        return bundle


def build_pass_bundle(
    pass_input: PassInput,
    config: PassBuilderConfig,
    fetch_logo: LogoFetcher = download_logo,
) -> bytes:
    """Build a .pkpass for one member."""
    return PassGenerator(config, fetch_logo=fetch_logo).generate_pass(pass_input)


def get_pass_builder_config() -> Optional[PassBuilderConfig]:
    """PassBuilderConfig from settings, or None if PassKit is not configured."""
    from tapstamp.core.config import is_passkit_configured, settings

    if not is_passkit_configured():
        return None

    return PassBuilderConfig(
        pass_type_id=settings.apple_pass_type_id,
        team_id=settings.apple_team_id,
        web_service_url=settings.web_service_url,
        signer_config=SignerConfig(
            cert_path=settings.passkit_cert_path,
            cert_password=settings.passkit_cert_password,
            wwdr_cert_path=settings.wwdr_cert_path,
            backend=settings.signing_backend,
        ),
    )


def create_pass_generator() -> Optional[PassGenerator]:
    """Factory function to create PassGenerator from settings."""
    config = get_pass_builder_config()
    if config is None:
        return None
    return PassGenerator(config, strip_cache=StripCache())
