"""Random credentials and self-signed TLS material.

Nothing here checks whether material already exists: callers must look the
secret up first and only generate on absence, since downstream components
persist these values and rotation would invalidate them.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .errors import MaterialGenerationError

logger = logging.getLogger(__name__)

CORE_SECRET_NAME = "honsefarm-secrets"
TLS_SECRET_NAME = "honsefarm-tls"

SIGNING_KEY_BYTES = 32
PASSWORD_BYTES = 24
RSA_KEY_SIZE = 2048
CERT_BACKDATE = timedelta(minutes=5)
MAX_COMMON_NAME = 64


@dataclass(frozen=True)
class CoreCredentials:
    """Random signing key and passwords for the core secret."""

    keys: tuple[tuple[str, int], ...] = (
        ("jwtSecret", SIGNING_KEY_BYTES),
        ("databasePassword", PASSWORD_BYTES),
        ("redisPassword", PASSWORD_BYTES),
    )


@dataclass(frozen=True)
class TLSMaterial:
    """Self-signed certificate and key for the given names."""

    common_name: str = ""
    dns_names: tuple[str, ...] = field(default_factory=tuple)


Material = Union[CoreCredentials, TLSMaterial]


def random_token(n: int) -> str:
    """
    Return ``n`` random bytes, base64url encoded without padding.

    Raises:
        MaterialGenerationError: If the system entropy source fails
    """
    try:
        return secrets.token_urlsafe(n)
    except Exception as e:
        raise MaterialGenerationError(f"failed to read {n} random bytes: {e}") from e


def generate_core_credentials(material: Optional[CoreCredentials] = None) -> dict[str, str]:
    """
    Generate the core credential set.

    Returns:
        Mapping of secret key to random token
    """
    material = material or CoreCredentials()
    return {key: random_token(size) for key, size in material.keys}


def _one_year_after(moment: datetime) -> datetime:
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        # Feb 29 has no counterpart next year.
        return moment + timedelta(days=365)


def subject_common_name(common_name: str, dns_names: list[str]) -> str:
    """
    Pick the subject common name: the explicit one, else the first DNS name.

    Candidates over the X.509 limit of 64 characters are skipped. Returns an
    empty string when nothing fits.
    """
    for candidate in [common_name, *dns_names]:
        if candidate and len(candidate) <= MAX_COMMON_NAME:
            return candidate
        if candidate:
            logger.debug(f"Skipping common name {candidate!r}: longer than {MAX_COMMON_NAME} characters")
    return ""


def generate_self_signed_cert(
    common_name: str, dns_names: list[str]
) -> tuple[bytes, bytes]:
    """
    Generate a self-signed server certificate.

    The certificate is valid from five minutes before issuance until one year
    after it, carries every DNS name as a subject alternative name and uses the
    first DNS name as subject common name unless one is given explicitly.
    Candidates longer than 64 characters are only used as alternative names.

    Args:
        common_name: Subject common name, may be empty
        dns_names: Subject alternative names

    Returns:
        Tuple of (certificate PEM, PKCS#1 private key PEM)

    Raises:
        MaterialGenerationError: If key or certificate generation fails
    """
    common_name = subject_common_name(common_name, dns_names)

    try:
        key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)

        now = datetime.now(timezone.utc)
        attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)] if common_name else []
        name = x509.Name(attributes)
        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(secrets.randbits(128) or 1)
            .not_valid_before(now - CERT_BACKDATE)
            .not_valid_after(_one_year_after(now))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
        )
        if dns_names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
                critical=False,
            )
        cert = builder.sign(private_key=key, algorithm=hashes.SHA256())
    except Exception as e:
        raise MaterialGenerationError(f"failed to generate certificate for {common_name!r}: {e}") from e

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    logger.info(f"Generated self-signed certificate for {common_name} ({len(dns_names)} SANs)")
    return cert_pem, key_pem


def generate_material(material: Material) -> dict[str, str]:
    """
    Generate the string data of a secret from its material description.

    Args:
        material: Description carried by a secret descriptor

    Returns:
        Secret ``stringData`` mapping
    """
    if isinstance(material, TLSMaterial):
        cert_pem, key_pem = generate_self_signed_cert(
            material.common_name, list(material.dns_names)
        )
        return {"tls.crt": cert_pem.decode("ascii"), "tls.key": key_pem.decode("ascii")}
    return generate_core_credentials(material)
