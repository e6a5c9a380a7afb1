import datetime as dt
import io
import shutil
import subprocess
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from PIL import Image

from tapstamp.domain.schemas import BackgroundStyle, Branding, Member, Merchant, StampStyle
from tapstamp.services.certificate_manager import CertificateManager
from tapstamp.services.signer import SignerConfig

P12_PASSWORD = "correct horse"
PASS_TYPE_ID = "pass.com.example.loyalty"
TEAM_ID = "ABCDE12345"

requires_openssl = pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl CLI not installed")


def openssl_verifies(signature: bytes, content: bytes, tmp_path: Path) -> bool:
    """Check the detached signature over `content` (chain trust not checked)."""
    sig_path = tmp_path / "signature"
    content_path = tmp_path / "manifest.json"
    sig_path.write_bytes(signature)
    content_path.write_bytes(content)
    result = subprocess.run(
        [
            "openssl", "smime", "-verify", "-noverify", "-binary",
            "-inform", "DER", "-in", str(sig_path),
            "-content", str(content_path), "-out", str(tmp_path / "out"),
        ],
        capture_output=True,
    )
    return result.returncode == 0


def _build_cert(subject, issuer, public_key, signing_key, is_ca=False, days=365):
    now = dt.datetime.now(dt.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(days=1))
        .not_valid_after(now + dt.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def ca_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def wwdr_cert(ca_key):
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, "Test WWDR Intermediate"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test CA"),
    ])
    return _build_cert(name, name, ca_key.public_key(), ca_key, is_ca=True)


@pytest.fixture(scope="session")
def signer_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def signer_cert(signer_key, ca_key, wwdr_cert):
    subject = x509.Name([
        x509.NameAttribute(NameOID.USER_ID, PASS_TYPE_ID),
        x509.NameAttribute(NameOID.COMMON_NAME, f"Pass Type ID: {PASS_TYPE_ID}"),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, TEAM_ID),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Coffee Ltd"),
    ])
    return _build_cert(subject, wwdr_cert.subject, signer_key.public_key(), ca_key)


@pytest.fixture(scope="session")
def p12_bytes(signer_key, signer_cert):
    return pkcs12.serialize_key_and_certificates(
        b"pass",
        signer_key,
        signer_cert,
        None,
        serialization.BestAvailableEncryption(P12_PASSWORD.encode()),
    )


@pytest.fixture(scope="session")
def wwdr_pem_path(wwdr_cert, tmp_path_factory):
    path = tmp_path_factory.mktemp("certs") / "wwdr.pem"
    path.write_bytes(wwdr_cert.public_bytes(serialization.Encoding.PEM))
    return str(path)


@pytest.fixture
def signer_config(p12_bytes, wwdr_pem_path):
    return SignerConfig(
        cert_data=p12_bytes,
        cert_password=P12_PASSWORD,
        wwdr_cert_path=wwdr_pem_path,
    )


@pytest.fixture
def certificate_manager():
    return CertificateManager()


@pytest.fixture(scope="session")
def apns_key_pem():
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


@pytest.fixture
def make_png():
    """Factory for small solid PNG images."""
    def _make(size=(64, 64), color=(200, 30, 30, 255)) -> bytes:
        buffer = io.BytesIO()
        Image.new("RGBA", size, color).save(buffer, format="PNG")
        return buffer.getvalue()
    return _make


@pytest.fixture
def branding():
    return Branding(
        primary_color="#8B5A2B",
        secondary_color="#F5F0EB",
        label_color="#1A1A1A",
        background=BackgroundStyle(color="#FFFFFF"),
        stamp=StampStyle(shape="circle"),
    )


@pytest.fixture
def merchant(branding):
    return Merchant(id="merchant-1", slug="corner-cafe", name="Corner Cafe", reward_goal=8, branding=branding)


@pytest.fixture
def member():
    return Member(id="member-1", merchant_id="merchant-1", stamp_count=3, name="Ada")
