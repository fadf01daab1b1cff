"""TLS material for service containers.

This module provides:
- Self-issued material: a fresh CA plus an end-entity certificate signed by it
- Externally supplied material wrapped verbatim
- Persisting certificate and key under fixed file names into a directory a
  container bind-mounts

Usage:
    from ephemeral_services.core.tls import TlsMaterial

    material = TlsMaterial.issue("git.example.test")
    material.store_to(Path("runtime/gitea-runtime/config"))

    # Trust-pin the synthesized CA in test clients
    ca_pem = material.ca_pem
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ephemeral_services.core.exceptions import StorageIOError
from ephemeral_services.core.logging import get_logger

logger = get_logger(__name__)

CERT_FILE_NAME = "cert.pem"
KEY_FILE_NAME = "key.pem"

LOCALHOST_NAMES = ("localhost", "127.0.0.1", "::1")

_ORGANIZATION = "Ephemeral Services"
_DAYS_VALID = 365
_KEY_SIZE = 2048


def subject_alt_names(hostname: str) -> list[str]:
    """Return the SAN set for ``hostname``, hostname first, no duplicates."""
    return [hostname, *(name for name in LOCALHOST_NAMES if name != hostname)]


def _general_name(name: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(name))
    except ValueError:
        return x509.DNSName(name)


def _generate_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=_KEY_SIZE)


def _key_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def _build_ca(key: rsa.RSAPrivateKey, now: datetime) -> x509.Certificate:
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, _ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, f"{_ORGANIZATION} CA"),
        ]
    )
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=_DAYS_VALID))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )


def _build_leaf(
    hostname: str,
    key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    ca_key: rsa.RSAPrivateKey,
    now: datetime,
) -> x509.Certificate:
    san_names = subject_alt_names(hostname)
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, _ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, san_names[0]),
        ]
    )
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=_DAYS_VALID))
        .add_extension(
            x509.SubjectAlternativeName([_general_name(n) for n in san_names]),
            critical=False,
        )
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )


@dataclass(frozen=True, slots=True)
class TlsMaterial:
    """PEM-encoded certificate, key and (when self-issued) the issuing CA."""

    cert_pem: str
    key_pem: str
    ca_pem: str | None = None

    @classmethod
    def issue(cls, hostname: str = "localhost") -> TlsMaterial:
        """Generate a CA and a server certificate for ``hostname``.

        The certificate's SANs are ``hostname`` (unless it is ``localhost``),
        ``localhost``, ``127.0.0.1`` and ``::1``, in that order.
        """
        now = datetime.now(UTC)
        ca_key = _generate_key()
        ca_cert = _build_ca(ca_key, now)
        leaf_key = _generate_key()
        leaf_cert = _build_leaf(hostname, leaf_key, ca_cert, ca_key, now)

        logger.info(
            "Issued self-signed TLS material",
            extra={"hostname": hostname, "days_valid": _DAYS_VALID},
        )
        return cls(
            cert_pem=_cert_pem(leaf_cert),
            key_pem=_key_pem(leaf_key),
            ca_pem=_cert_pem(ca_cert),
        )

    @classmethod
    def accept(cls, cert_pem: str, key_pem: str) -> TlsMaterial:
        """Wrap externally issued material; there is no CA to expose."""
        return cls(cert_pem=cert_pem, key_pem=key_pem, ca_pem=None)

    def store_to(self, directory: Path) -> tuple[Path, Path]:
        """Write ``cert.pem`` and ``key.pem`` into ``directory``.

        Returns:
            Tuple of (cert_path, key_path)

        Raises:
            StorageIOError: If the directory is not writable.
        """
        cert_path = directory / CERT_FILE_NAME
        key_path = directory / KEY_FILE_NAME
        try:
            cert_path.write_text(self.cert_pem, encoding="ascii")
            key_path.write_text(self.key_pem, encoding="ascii")
        except OSError as e:
            raise StorageIOError(
                f"Failed to store TLS material: {e}",
                path=str(directory),
            ) from e

        logger.debug("TLS material stored", extra={"directory": str(directory)})
        return cert_path, key_path
