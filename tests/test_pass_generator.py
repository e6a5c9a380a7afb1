import hashlib
import io
import json
import zipfile

import pytest
from cryptography.hazmat.primitives.serialization import pkcs7

from tapstamp.core.security import generate_auth_token
from tapstamp.domain.errors import DecryptionError, LogoFetchError, PassBuildError, SigningError
from tapstamp.domain.schemas import StampStyle
from tapstamp.services.pass_generator import (
    REWARD_READY_LABEL,
    PassBuilderConfig,
    PassGenerator,
    PassInput,
    build_pass_bundle,
    create_pass_json,
    create_pass_json_content,
    hex_to_rgb,
    is_public_service_url,
)
from tapstamp.services.signer import ManifestSigner, SignerConfig

from conftest import PASS_TYPE_ID, TEAM_ID, openssl_verifies, requires_openssl

PUBLIC_URL = "https://stamp.example.com"


def no_logo(url: str) -> bytes:
    raise LogoFetchError(url, "offline")


class FixedSigner:
    """Deterministic stand-in for ManifestSigner."""

    def __init__(self):
        self.manifests = []

    def sign(self, manifest: bytes) -> bytes:
        self.manifests.append(manifest)
        return b"signature:" + hashlib.sha256(manifest).digest()


class FailingSigner:
    def sign(self, manifest: bytes) -> bytes:
        raise SigningError("HSM offline")


@pytest.fixture
def builder_config(signer_config):
    return PassBuilderConfig(
        pass_type_id=PASS_TYPE_ID,
        team_id=TEAM_ID,
        web_service_url=PUBLIC_URL,
        signer_config=signer_config,
    )


@pytest.fixture
def pass_input(merchant, member):
    return PassInput(
        merchant=merchant,
        member=member,
        auth_token=generate_auth_token(member.id, "test-secret"),
        member_name=member.name,
    )


def read_bundle(data: bytes) -> dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {name: zf.read(name) for name in zf.namelist()}


class TestHelpers:
    def test_hex_to_rgb(self):
        assert hex_to_rgb("#8B5A2B") == "rgb(139, 90, 43)"
        assert hex_to_rgb("ffffff") == "rgb(255, 255, 255)"
        assert hex_to_rgb("#zzzzzz") == "rgb(0, 0, 0)"
        assert hex_to_rgb("#fff") == "rgb(0, 0, 0)"

    @pytest.mark.parametrize("url", [
        "http://localhost:8000",
        "http://api.localhost",
        "http://macbook.local:3000",
        "http://127.0.0.1:8000",
        "http://[::1]:8000",
        "http://0.0.0.0",
        "http://192.168.1.20:8000",
        "",
    ])
    def test_local_urls(self, url):
        assert is_public_service_url(url) is False

    def test_public_urls(self):
        assert is_public_service_url("https://stamp.example.com") is True
        assert is_public_service_url("https://8.8.8.8") is True


class TestPassJson:
    def test_fields(self, pass_input, builder_config):
        data = create_pass_json(pass_input, builder_config)
        assert data["formatVersion"] == 1
        assert data["passTypeIdentifier"] == PASS_TYPE_ID
        assert data["teamIdentifier"] == TEAM_ID
        assert data["serialNumber"] == "apple-member-1"
        assert data["organizationName"] == "Corner Cafe"
        assert data["storeCard"]["headerFields"][0]["value"] == "3 / 8"
        assert data["storeCard"]["secondaryFields"] == [
            {"key": "member", "label": "MEMBER", "value": "Ada"}
        ]
        assert data["backgroundColor"] == "rgb(255, 255, 255)"

    def test_barcode(self, pass_input, builder_config):
        data = create_pass_json(pass_input, builder_config)
        expected = {
            "format": "PKBarcodeFormatQR",
            "message": f"{PUBLIC_URL}/stamp/member-1",
            "messageEncoding": "iso-8859-1",
        }
        assert data["barcode"] == expected
        assert data["barcodes"] == [expected]

    def test_reward_ready_label(self, pass_input, builder_config):
        pass_input.member = pass_input.member.model_copy(
            update={"stamp_count": 8, "reward_available": True}
        )
        data = create_pass_json(pass_input, builder_config)
        assert data["storeCard"]["headerFields"][0]["value"] == REWARD_READY_LABEL

    def test_public_url_enables_updates(self, pass_input, builder_config):
        data = create_pass_json(pass_input, builder_config)
        assert data["webServiceURL"] == f"{PUBLIC_URL}/passkit/v1"
        assert data["authenticationToken"] == pass_input.auth_token

    def test_local_url_omits_web_service(self, pass_input, builder_config):
        builder_config.web_service_url = "http://localhost:8000"
        data = create_pass_json(pass_input, builder_config)
        assert "webServiceURL" not in data
        assert "authenticationToken" not in data

    def test_no_member_name(self, merchant, member, builder_config):
        pass_input = PassInput(merchant=merchant, member=member, auth_token="t")
        assert create_pass_json(pass_input, builder_config)["storeCard"]["secondaryFields"] == []

    def test_content_is_indented_json(self, pass_input, builder_config):
        text = create_pass_json_content(pass_input, builder_config)
        assert text.startswith("{\n  \"formatVersion\": 1")
        assert json.loads(text) == create_pass_json(pass_input, builder_config)

    def test_branding_defaults_to_merchant(self, merchant, member):
        assert PassInput(merchant=merchant, member=member, auth_token="t").branding is merchant.branding


class TestGeneratePass:
    def test_bundle_contents(self, pass_input, builder_config, certificate_manager):
        generator = PassGenerator(
            builder_config,
            fetch_logo=no_logo,
            signer=ManifestSigner(builder_config.signer_config, certificate_manager),
        )
        files = read_bundle(generator.generate_pass(pass_input))

        assert list(files) == [
            "pass.json",
            "icon.png", "icon@2x.png", "icon@3x.png",
            "logo.png", "logo@2x.png",
            "strip.png", "strip@2x.png", "strip@3x.png",
            "manifest.json",
            "signature",
        ]

        manifest = json.loads(files["manifest.json"])
        assert set(manifest) == set(files) - {"manifest.json", "signature"}
        for name, digest in manifest.items():
            assert hashlib.sha1(files[name]).hexdigest() == digest

        assert json.loads(files["pass.json"])["serialNumber"] == "apple-member-1"

    def test_signature_covers_manifest(
        self, pass_input, builder_config, certificate_manager, signer_cert, wwdr_cert
    ):
        generator = PassGenerator(
            builder_config,
            fetch_logo=no_logo,
            signer=ManifestSigner(builder_config.signer_config, certificate_manager),
        )
        files = read_bundle(generator.generate_pass(pass_input))
        signature = files["signature"]

        certs = pkcs7.load_der_pkcs7_certificates(signature)
        assert signer_cert in certs
        assert wwdr_cert in certs

        # messageDigest attribute: OCTET STRING holding SHA-256 of manifest.json
        digest = hashlib.sha256(files["manifest.json"]).digest()
        assert b"\x04\x20" + digest in signature
        assert files["manifest.json"] not in signature

    @requires_openssl
    def test_signature_verifies_with_openssl(
        self, pass_input, builder_config, certificate_manager, tmp_path
    ):
        generator = PassGenerator(
            builder_config,
            fetch_logo=no_logo,
            signer=ManifestSigner(builder_config.signer_config, certificate_manager),
        )
        files = read_bundle(generator.generate_pass(pass_input))

        assert openssl_verifies(files["signature"], files["manifest.json"], tmp_path)
        assert not openssl_verifies(files["signature"], files["manifest.json"] + b" ", tmp_path)

    def test_byte_identical_builds(self, pass_input, builder_config):
        generator = PassGenerator(builder_config, fetch_logo=no_logo, signer=FixedSigner())
        assert generator.generate_pass(pass_input) == generator.generate_pass(pass_input)

    def test_zip_entries_have_fixed_timestamp(self, pass_input, builder_config):
        generator = PassGenerator(builder_config, fetch_logo=no_logo, signer=FixedSigner())
        with zipfile.ZipFile(io.BytesIO(generator.generate_pass(pass_input))) as zf:
            for info in zf.infolist():
                assert info.date_time == (1980, 1, 1, 0, 0, 0)
                assert info.compress_type == zipfile.ZIP_DEFLATED

    def test_signs_exact_manifest_bytes(self, pass_input, builder_config):
        signer = FixedSigner()
        generator = PassGenerator(builder_config, fetch_logo=no_logo, signer=signer)
        files = read_bundle(generator.generate_pass(pass_input))
        assert signer.manifests == [files["manifest.json"]]

    def test_unreachable_stamp_logo_falls_back(self, merchant, member, builder_config):
        logo_branding = merchant.branding.model_copy(update={
            "logo_url": "https://cdn.example.com/logo.png",
            "stamp": StampStyle(shape="logo"),
        })
        fallback = PassInput(merchant=merchant, member=member, auth_token="t", branding=logo_branding)
        circles = PassInput(merchant=merchant, member=member, auth_token="t")
        generator = PassGenerator(builder_config, fetch_logo=no_logo, signer=FixedSigner())

        fallback_files = read_bundle(generator.generate_pass(fallback))
        circle_files = read_bundle(generator.generate_pass(circles))
        assert fallback_files["strip@2x.png"] == circle_files["strip@2x.png"]

    def test_header_logo_is_used(self, merchant, member, builder_config, make_png):
        branded = merchant.branding.model_copy(update={"header_logo_url": "https://cdn.example.com/h.png"})
        pass_input = PassInput(merchant=merchant, member=member, auth_token="t", branding=branded)
        fetched = []

        def fetch(url):
            fetched.append(url)
            return make_png(size=(320, 100))

        generator = PassGenerator(builder_config, fetch_logo=fetch, signer=FixedSigner())
        with_logo = read_bundle(generator.generate_pass(pass_input))
        text_logo = read_bundle(
            PassGenerator(builder_config, fetch_logo=no_logo, signer=FixedSigner()).generate_pass(pass_input)
        )
        assert fetched == ["https://cdn.example.com/h.png"]
        assert with_logo["logo.png"] != text_logo["logo.png"]

    def test_signing_failure(self, pass_input, builder_config):
        generator = PassGenerator(builder_config, fetch_logo=no_logo, signer=FailingSigner())
        with pytest.raises(PassBuildError) as exc_info:
            generator.generate_pass(pass_input)
        assert exc_info.value.stage == "signing"

    def test_credential_errors_propagate(self, pass_input, builder_config, p12_bytes, certificate_manager):
        bad = SignerConfig(cert_data=p12_bytes, cert_password="wrong")
        generator = PassGenerator(
            builder_config, fetch_logo=no_logo, signer=ManifestSigner(bad, certificate_manager)
        )
        with pytest.raises(DecryptionError):
            generator.generate_pass(pass_input)


def test_build_pass_bundle(pass_input, builder_config):
    files = read_bundle(build_pass_bundle(pass_input, builder_config, fetch_logo=no_logo))
    manifest = json.loads(files["manifest.json"])
    assert manifest["pass.json"] == hashlib.sha1(files["pass.json"]).hexdigest()


class FakeStripCache:
    def __init__(self, strips=None):
        self.strips = strips
        self.stored = []

    def get_strips(self, merchant_id, branding_version, reward_goal, stamps):
        return self.strips

    def set_strips(self, merchant_id, branding_version, reward_goal, stamps, strips):
        self.stored.append((merchant_id, branding_version, reward_goal, stamps))


class TestStripCaching:
    def test_stores_rendered_strips(self, pass_input, builder_config):
        cache = FakeStripCache()
        PassGenerator(builder_config, fetch_logo=no_logo, signer=FixedSigner(), strip_cache=cache).generate_pass(pass_input)
        assert cache.stored == [("merchant-1", 1, 8, 3)]

    def test_uses_cached_strips(self, pass_input, builder_config):
        cached = {"strip.png": b"a", "strip@2x.png": b"b", "strip@3x.png": b"c"}
        generator = PassGenerator(
            builder_config, fetch_logo=no_logo, signer=FixedSigner(), strip_cache=FakeStripCache(cached)
        )
        files = read_bundle(generator.generate_pass(pass_input))
        assert files["strip@2x.png"] == b"b"

    def test_degraded_strips_not_cached(self, merchant, member, builder_config):
        logo_branding = merchant.branding.model_copy(update={
            "logo_url": "https://cdn.example.com/logo.png",
            "stamp": StampStyle(shape="logo"),
        })
        logo_merchant = merchant.model_copy(update={"branding": logo_branding})
        cache = FakeStripCache()
        generator = PassGenerator(builder_config, fetch_logo=no_logo, signer=FixedSigner(), strip_cache=cache)
        generator.generate_pass(PassInput(merchant=logo_merchant, member=member, auth_token="t"))
        assert cache.stored == []
