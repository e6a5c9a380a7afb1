"""
Certificate Manager for Apple Pass Type ID signing credentials.

Handles:
- .p12 extraction (signing cert, private key, auxiliary CA certs)
- Apple WWDR intermediate loading (PEM or DER)
- Pass Type ID verification from the certificate subject
- Process-wide caching so each .p12 is parsed once
"""

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from tapstamp.domain.errors import (
    CertificateParseError,
    CredentialError,
    DecryptionError,
    NoCertificateFound,
    NoPrivateKeyFound,
)

if TYPE_CHECKING:
    from tapstamp.services.signer import SignerConfig

logger = logging.getLogger(__name__)

P12Source = Union[bytes, str, Path]


@dataclass
class SigningCredentials:
    certificate: x509.Certificate
    private_key: object
    ca_certificates: list[x509.Certificate] = field(default_factory=list)


def _read_source(source: P12Source) -> bytes:
    if isinstance(source, bytes):
        return source
    try:
        return Path(source).read_bytes()
    except OSError as e:
        raise CertificateParseError(f"Cannot read certificate file {source}: {e}") from e


def _looks_like_pfx(data: bytes) -> bool:
    """Check the framing of a PKCS#12 PFX: SEQUENCE { INTEGER 3, ... }.

    A definite-length outer SEQUENCE must span exactly the data, so truncated
    or padded files are rejected here. Damage inside an intact frame fails
    the MAC check, which OpenSSL cannot tell apart from a wrong passphrase.
    """
    if len(data) < 5 or data[0] != 0x30:
        return False
    length_byte = data[1]
    if length_byte == 0x80:
        # BER indefinite length
        offset = 2
        length = None
    elif length_byte & 0x80:
        num_bytes = length_byte & 0x7F
        if num_bytes == 0 or num_bytes > 4:
            return False
        offset = 2 + num_bytes
        length = int.from_bytes(data[2:offset], "big")
    else:
        offset = 2
        length = length_byte
    if length is not None and offset + length != len(data):
        return False
    return data[offset:offset + 3] == b"\x02\x01\x03"


def _matches_key(certificate: x509.Certificate, private_key) -> bool:
    """True if the certificate's public key belongs to the private key."""
    cert_key = certificate.public_key()
    if isinstance(private_key, rsa.RSAPrivateKey):
        return (
            isinstance(cert_key, rsa.RSAPublicKey)
            and cert_key.public_numbers().n == private_key.public_key().public_numbers().n
        )
    try:
        return cert_key.public_numbers() == private_key.public_key().public_numbers()
    except AttributeError:
        return False


def load_p12_certificate(source: P12Source, password: str | None = None) -> SigningCredentials:
    """Parse a .p12 bundle into signing certificate, key and auxiliary CAs.

    Args:
        source: Raw .p12 bytes or a path to the file
        password: Passphrase protecting the bundle

    Raises:
        CertificateParseError: the data is not a PKCS#12 structure
        DecryptionError: the passphrase does not open the bundle
        NoPrivateKeyFound / NoCertificateFound: a required bag is missing
    """
    data = _read_source(source)
    if not _looks_like_pfx(data):
        raise CertificateParseError("Data is not a PKCS#12 (.p12) bundle")

    pwd = password.encode() if password else None
    try:
        bundle = pkcs12.load_pkcs12(data, pwd)
    except (ValueError, TypeError) as e:
        raise DecryptionError(f"Could not open .p12 bundle (wrong passphrase?): {e}") from e

    certificates = []
    if bundle.cert is not None:
        certificates.append(bundle.cert.certificate)
    certificates.extend(c.certificate for c in bundle.additional_certs)

    if not certificates:
        raise NoCertificateFound("No certificate found in .p12 file")
    if bundle.key is None:
        raise NoPrivateKeyFound("No private key found in .p12 file")

    signing_cert = None
    ca_certs = []
    for cert in certificates:
        if signing_cert is None and _matches_key(cert, bundle.key):
            signing_cert = cert
        else:
            ca_certs.append(cert)

    if signing_cert is None:
        logger.warning("No certificate in .p12 matches the private key, using the first one")
        signing_cert = certificates[0]
        ca_certs = certificates[1:]

    return SigningCredentials(
        certificate=signing_cert,
        private_key=bundle.key,
        ca_certificates=ca_certs,
    )


def load_wwdr_certificate(path: str | None) -> Optional[x509.Certificate]:
    """Load Apple's WWDR intermediate certificate (PEM or DER)."""
    if not path:
        return None

    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise CertificateParseError(f"Cannot read WWDR certificate {path}: {e}") from e

    try:
        if b"-----BEGIN CERTIFICATE-----" in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise CertificateParseError(f"Invalid WWDR certificate {path}: {e}") from e


def _subject_value(certificate: x509.Certificate, oid) -> str | None:
    attrs = certificate.subject.get_attributes_for_oid(oid)
    return str(attrs[0].value) if attrs else None


def verify_certificate(
    config: "SignerConfig",
    expected_pass_type_id: str | None = None,
) -> dict:
    """Check a .p12 is usable for PassKit signing without signing anything.

    Returns:
        Dict with 'valid', 'pass_type_id', 'team_id' and 'error' keys
    """
    try:
        credentials = load_p12_certificate(config.cert_source, config.cert_password)
    except CredentialError as e:
        return {"valid": False, "pass_type_id": None, "team_id": None, "error": str(e)}

    certificate = credentials.certificate
    pass_type_id = _subject_value(certificate, NameOID.USER_ID)
    team_id = _subject_value(certificate, NameOID.ORGANIZATIONAL_UNIT_NAME)
    result = {"valid": True, "pass_type_id": pass_type_id, "team_id": team_id, "error": None}

    if not pass_type_id:
        result.update(valid=False, error="Certificate does not contain a Pass Type ID (UID field)")
    elif expected_pass_type_id and pass_type_id != expected_pass_type_id:
        result.update(
            valid=False,
            error=f"Certificate is for {pass_type_id}, expected {expected_pass_type_id}",
        )
    elif certificate.not_valid_after_utc < datetime.now(timezone.utc):
        result.update(valid=False, error="Certificate has expired")

    return result


class CertificateManager:
    """Caches parsed signing credentials for the life of the process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._credentials: dict[str, SigningCredentials] = {}
        self._wwdr: dict[str, Optional[x509.Certificate]] = {}

    @staticmethod
    def _cache_key(config: "SignerConfig") -> str:
        source = config.cert_source
        digest = hashlib.sha256(source if isinstance(source, bytes) else str(source).encode())
        digest.update((config.cert_password or "").encode())
        return digest.hexdigest()

    def get_credentials(self, config: "SignerConfig") -> SigningCredentials:
        key = self._cache_key(config)
        with self._lock:
            cached = self._credentials.get(key)
            if cached is None:
                cached = load_p12_certificate(config.cert_source, config.cert_password)
                self._credentials[key] = cached
                logger.info(
                    f"Loaded signing certificate {cached.certificate.subject.rfc4514_string()}"
                )
            return cached

    def get_wwdr(self, path: str | None) -> Optional[x509.Certificate]:
        if not path:
            return None
        with self._lock:
            if path not in self._wwdr:
                if not Path(path).exists():
                    logger.warning(f"WWDR certificate not found at {path}, signing without it")
                    self._wwdr[path] = None
                else:
                    self._wwdr[path] = load_wwdr_certificate(path)
            return self._wwdr[path]

    def clear(self) -> None:
        with self._lock:
            self._credentials.clear()
            self._wwdr.clear()


# Singleton
_manager: Optional[CertificateManager] = None


def get_certificate_manager() -> CertificateManager:
    """Get or create the singleton CertificateManager."""
    global _manager
    if _manager is None:
        _manager = CertificateManager()
    return _manager
