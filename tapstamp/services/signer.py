"""
Manifest signing for Apple Wallet passes.

Produces the `signature` file of a .pkpass: a DER-encoded, detached PKCS#7
SignedData over the exact bytes of manifest.json, carrying the signer
certificate and Apple's WWDR intermediate.
"""

import hashlib
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs7,
)

from tapstamp.domain.errors import SigningError
from tapstamp.services.certificate_manager import (
    CertificateManager,
    SigningCredentials,
    get_certificate_manager,
)

logger = logging.getLogger(__name__)

SIGNING_BACKENDS = ("cryptography", "openssl")


@dataclass
class SignerConfig:
    """Where the signing credentials come from."""

    cert_path: Optional[str] = None
    cert_data: Optional[bytes] = None  # raw .p12 bytes, takes precedence over cert_path
    cert_password: Optional[str] = None
    wwdr_cert_path: Optional[str] = None
    backend: str = "cryptography"

    def __post_init__(self):
        if self.cert_path is None and self.cert_data is None:
            raise ValueError("Either cert_path or cert_data must be provided")
        if self.backend not in SIGNING_BACKENDS:
            raise ValueError(f"Unknown signing backend: {self.backend}")

    @property
    def cert_source(self):
        return self.cert_data if self.cert_data is not None else self.cert_path


def sha1_hash(data: bytes | str) -> str:
    """SHA-1 hex digest, as used for manifest.json entries."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha1(data).hexdigest()


class ManifestSigner:
    """Signs manifests with one set of credentials."""

    def __init__(
        self,
        config: SignerConfig,
        certificate_manager: Optional[CertificateManager] = None,
    ):
        self.config = config
        self._certificates = certificate_manager or get_certificate_manager()

    def preload(self) -> SigningCredentials:
        """Load credentials now so configuration errors surface at startup."""
        credentials = self._certificates.get_credentials(self.config)
        self._certificates.get_wwdr(self.config.wwdr_cert_path)
        return credentials

    def _chain(self, credentials: SigningCredentials) -> list[x509.Certificate]:
        chain = []
        wwdr = self._certificates.get_wwdr(self.config.wwdr_cert_path)
        if wwdr is not None:
            chain.append(wwdr)
        for cert in credentials.ca_certificates:
            if cert not in chain:
                chain.append(cert)
        return chain

    def sign(self, manifest: bytes) -> bytes:
        """Return the DER detached PKCS#7 signature of `manifest`."""
        credentials = self._certificates.get_credentials(self.config)
        chain = self._chain(credentials)

        if self.config.backend == "openssl":
            return self._sign_openssl(manifest, credentials, chain)
        return self._sign_in_process(manifest, credentials, chain)

    def _sign_in_process(
        self,
        manifest: bytes,
        credentials: SigningCredentials,
        chain: list[x509.Certificate],
    ) -> bytes:
        builder = (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(manifest)
            .add_signer(credentials.certificate, credentials.private_key, hashes.SHA256())
        )
        for cert in chain:
            builder = builder.add_certificate(cert)

        try:
            return builder.sign(
                Encoding.DER,
                [pkcs7.PKCS7Options.DetachedSignature, pkcs7.PKCS7Options.Binary],
            )
        except (ValueError, TypeError) as e:
            raise SigningError(f"PKCS#7 signing failed: {e}") from e

    def _sign_openssl(
        self,
        manifest: bytes,
        credentials: SigningCredentials,
        chain: list[x509.Certificate],
    ) -> bytes:
        """Create the signature with the OpenSSL CLI.

        Key material only lives in a private temp directory that is removed
        on every exit path.
        """
        try:
            with tempfile.TemporaryDirectory(prefix="passkit-") as tmpdir:
                return self._run_openssl(Path(tmpdir), manifest, credentials, chain)
        except OSError as e:
            raise SigningError(f"OpenSSL signing I/O failed: {e}") from e

    def _run_openssl(
        self,
        tmp: Path,
        manifest: bytes,
        credentials: SigningCredentials,
        chain: list[x509.Certificate],
    ) -> bytes:
        manifest_path = tmp / "manifest.json"
        cert_path = tmp / "signer.pem"
        key_path = tmp / "signer.key"
        chain_path = tmp / "chain.pem"
        signature_path = tmp / "signature"

        manifest_path.write_bytes(manifest)
        cert_path.write_bytes(credentials.certificate.public_bytes(Encoding.PEM))
        key_path.write_bytes(
            credentials.private_key.private_bytes(
                Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
            )
        )
        os.chmod(key_path, 0o600)

        cmd = [
            "openssl", "smime", "-sign",
            "-signer", str(cert_path),
            "-inkey", str(key_path),
            "-in", str(manifest_path),
            "-out", str(signature_path),
            "-outform", "DER",
            "-binary",
        ]

        if chain:
            chain_path.write_bytes(b"".join(c.public_bytes(Encoding.PEM) for c in chain))
            cmd[5:5] = ["-certfile", str(chain_path)]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise SigningError(f"Could not run openssl: {e}") from e

        if result.returncode != 0:
            raise SigningError(f"OpenSSL signing failed: {result.stderr.strip()}")

        return signature_path.read_bytes()


def sign_manifest(manifest: bytes | str, config: SignerConfig) -> bytes:
    """Sign manifest.json content with the credentials in `config`."""
    if isinstance(manifest, str):
        manifest = manifest.encode("utf-8")
    return ManifestSigner(config).sign(manifest)
