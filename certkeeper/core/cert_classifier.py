"""
Certificate state classification.

Inspects a domain's fullchain.pem and decides whether it still needs a
real certificate: missing, placeholder, expiring soon, or valid.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID

from certkeeper.models.certificate import (
    FULLCHAIN_FILE,
    CertificateClassification,
    CertificateRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_MARGIN_DAYS = 7


class CertificateParseError(Exception):
    """An existing certificate file could not be read or parsed."""

    def __init__(self, message: str, path: Path | None = None, suggestion: str | None = None):
        self.message = message
        self.path = path
        self.suggestion = suggestion
        super().__init__(message)


def parse_certificate(cert_pem: bytes, directory: Path) -> CertificateRecord:
    """
    Parse the leaf certificate of a PEM bundle.

    Args:
        cert_pem: PEM-encoded certificate (first certificate is the leaf)
        directory: Directory the material was read from

    Returns:
        CertificateRecord with subject, issuer and expiry details
    """
    cert = x509.load_pem_x509_certificate(cert_pem)

    cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    common_name = str(cn_attrs[0].value) if cn_attrs else None

    alt_names = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        alt_names = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return CertificateRecord(
        directory=directory,
        common_name=common_name,
        not_after=cert.not_valid_after_utc,
        issuer=cert.issuer.rfc4514_string(),
        alt_names=alt_names,
    )


def read_certificate(cert_dir: str | Path) -> CertificateRecord | None:
    """
    Read the certificate record for a domain directory.

    Returns:
        The parsed record, or None if fullchain.pem does not exist

    Raises:
        CertificateParseError: If the file exists but is not a valid certificate
    """
    directory = Path(cert_dir)
    cert_path = directory / FULLCHAIN_FILE

    if not cert_path.is_file():
        return None

    try:
        return parse_certificate(cert_path.read_bytes(), directory)
    except (ValueError, OSError) as e:
        raise CertificateParseError(
            f"Malformed certificate at {cert_path}: {e}",
            path=cert_path,
            suggestion="Remove the directory so a placeholder can be generated",
        )


def classify(
    cert_dir: str | Path,
    now: datetime | None = None,
    margin_days: int = DEFAULT_RENEWAL_MARGIN_DAYS,
) -> CertificateClassification:
    """
    Classify the certificate held in a domain directory.

    Args:
        cert_dir: Per-domain certificate directory
        now: Reference time (defaults to the current UTC time)
        margin_days: Certificates with fewer whole days left are expiring soon

    Returns:
        The classification; never cached since files change underneath us
    """
    record = read_certificate(cert_dir)

    if record is None:
        logger.info(f"{cert_dir}: certificate file does not exist")
        return CertificateClassification.MISSING

    if record.is_placeholder:
        logger.info(f"{cert_dir}: common name is localhost")
        return CertificateClassification.PLACEHOLDER

    now = now or datetime.now(timezone.utc)
    days_left = record.days_until_expiry(now)
    if days_left < margin_days:
        logger.info(f"{cert_dir}: certificate expires in less than {margin_days} days ({days_left} days left)")
        return CertificateClassification.EXPIRING_SOON

    logger.info(f"{cert_dir}: certificate is valid and not expiring soon (expires in {days_left} days)")
    return CertificateClassification.VALID
