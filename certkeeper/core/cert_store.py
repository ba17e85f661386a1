"""
Certificate store: placeholder generation, installation and removal.

Placeholders are short-lived self-signed certificates with CN=localhost
that let nginx start before any real certificate exists.
"""

import asyncio
import logging
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dh, rsa
from cryptography.x509.oid import NameOID

from certkeeper.models.certificate import (
    CERT_FILE,
    CHAIN_FILE,
    FULLCHAIN_FILE,
    PLACEHOLDER_COMMON_NAME,
    PRIVKEY_FILE,
    IssuedCertificate,
)

logger = logging.getLogger(__name__)


def generate_placeholder_pem(days: int = 1, key_size: int = 4096) -> tuple[bytes, bytes]:
    """
    Generate a self-signed CN=localhost certificate.

    Returns:
        Tuple of (certificate_pem, private_key_pem)
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, PLACEHOLDER_COMMON_NAME)])
    now = datetime.now(timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days))
        .sign(private_key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def write_placeholder(cert_dir: str | Path, days: int = 1, key_size: int = 4096) -> Path:
    """
    Write placeholder material into a domain directory.

    fullchain.pem and privkey.pem are generated; chain.pem and cert.pem
    are copies of fullchain.pem so every path nginx references exists.
    """
    directory = Path(cert_dir)
    directory.mkdir(parents=True, exist_ok=True)

    cert_pem, key_pem = generate_placeholder_pem(days=days, key_size=key_size)

    key_path = directory / PRIVKEY_FILE
    key_path.write_bytes(key_pem)
    key_path.chmod(0o600)

    fullchain_path = directory / FULLCHAIN_FILE
    fullchain_path.write_bytes(cert_pem)
    shutil.copyfile(fullchain_path, directory / CHAIN_FILE)
    shutil.copyfile(fullchain_path, directory / CERT_FILE)

    logger.info(f"Dummy certificate created at {directory}")
    return directory


async def create_placeholder(cert_dir: str | Path, days: int = 1, key_size: int = 4096) -> Path:
    """Async wrapper; RSA key generation is CPU bound."""
    return await asyncio.to_thread(write_placeholder, cert_dir, days, key_size)


async def ensure_dhparam(path: str | Path, key_size: int = 2048) -> bool:
    """
    Generate dhparam.pem if it does not exist yet.

    Returns:
        True if a new file was generated
    """
    dhparam_path = Path(path)
    if dhparam_path.exists():
        logger.info(f"{dhparam_path.name} already exists, skipping")
        return False

    logger.info(f"Generating {dhparam_path.name} with {key_size} bits...")

    def generate() -> bytes:
        parameters = dh.generate_parameters(generator=2, key_size=key_size)
        return parameters.parameter_bytes(serialization.Encoding.PEM, serialization.ParameterFormat.PKCS3)

    pem = await asyncio.to_thread(generate)
    dhparam_path.parent.mkdir(parents=True, exist_ok=True)
    dhparam_path.write_bytes(pem)
    return True


def install_certificate(cert_dir: str | Path, issued: IssuedCertificate) -> Path:
    """Write issued material using the certbot `live/` file names."""
    directory = Path(cert_dir)
    directory.mkdir(parents=True, exist_ok=True)

    key_path = directory / PRIVKEY_FILE
    key_path.write_bytes(issued.private_key_pem)
    key_path.chmod(0o600)

    (directory / CERT_FILE).write_bytes(issued.cert_pem)
    (directory / CHAIN_FILE).write_bytes(issued.chain_pem)
    (directory / FULLCHAIN_FILE).write_bytes(issued.fullchain_pem)

    logger.info(f"Installed certificate for {issued.domain} at {directory}")
    return directory


def remove_certificate(cert_dir: str | Path) -> bool:
    """
    Delete a domain's certificate directory.

    Returns:
        True if something was removed
    """
    directory = Path(cert_dir)
    if not directory.exists():
        return False
    shutil.rmtree(directory)
    logger.info(f"Deleted certificate material at {directory}")
    return True
