"""
Certificate models for the provisioning workflow.

Provides Pydantic models for on-disk certificate material, the derived
classification, and per-domain provisioning outcomes.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

PLACEHOLDER_COMMON_NAME = "localhost"

FULLCHAIN_FILE = "fullchain.pem"
PRIVKEY_FILE = "privkey.pem"
CHAIN_FILE = "chain.pem"
CERT_FILE = "cert.pem"


class CertificateClassification(str, Enum):
    """State of a domain's certificate, computed fresh on every check."""
    MISSING = "missing"              # No fullchain.pem on disk
    PLACEHOLDER = "placeholder"      # Self-signed CN=localhost dummy
    EXPIRING_SOON = "expiring-soon"  # Inside the renewal margin
    VALID = "valid"                  # Real certificate, nothing to do

    @property
    def needs_issuance(self) -> bool:
        """Everything except a valid certificate needs a real one."""
        return self is not CertificateClassification.VALID


class IssuanceErrorKind(str, Enum):
    """Why the certificate authority did not issue a certificate."""
    RATE_LIMITED = "rate_limited"
    VALIDATION_FAILED = "validation_failed"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class CertificateRecord(BaseModel):
    """
    Certificate material for one domain as found on disk.

    The directory always follows the certbot `live/` layout.
    """
    directory: Path = Field(..., description="Per-domain certificate directory")
    common_name: Optional[str] = Field(None, description="Subject CN of the leaf certificate")
    not_after: datetime = Field(..., description="Certificate expiry (UTC)")
    issuer: Optional[str] = Field(None, description="Issuer distinguished name")
    alt_names: List[str] = Field(default_factory=list, description="Subject Alternative Names")

    @property
    def is_placeholder(self) -> bool:
        return self.common_name == PLACEHOLDER_COMMON_NAME

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        """Whole days left, floored like integer division of epoch seconds."""
        now = now or datetime.now(timezone.utc)
        not_after = self.not_after
        if not_after.tzinfo is None:
            not_after = not_after.replace(tzinfo=timezone.utc)
        seconds = int(not_after.timestamp()) - int(now.timestamp())
        return seconds // 86400


class IssuedCertificate(BaseModel):
    """PEM material returned by the certificate authority."""
    domain: str
    cert_pem: bytes
    chain_pem: bytes
    fullchain_pem: bytes
    private_key_pem: bytes


class DomainResult(BaseModel):
    """Outcome of one provisioning run for a single domain."""
    domain: str
    initial_classification: Optional[CertificateClassification] = None
    placeholder_created: bool = False
    issued: bool = False
    skipped: bool = False
    error: Optional[str] = Field(None, description="Failure message, if the domain failed")
    error_kind: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class ProvisionResult(BaseModel):
    """Per-domain results reduced to an overall status."""
    domains: List[DomainResult] = Field(default_factory=list)
    aborted: bool = Field(default=False, description="Run stopped before all passes completed")
    abort_reason: Optional[str] = None

    @property
    def failed_domains(self) -> List[str]:
        return [r.domain for r in self.domains if r.failed]

    @property
    def success(self) -> bool:
        return not self.aborted and not self.failed_domains

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def get(self, domain: str) -> Optional[DomainResult]:
        for result in self.domains:
            if result.domain == domain:
                return result
        return None
