"""
ACME service for Let's Encrypt certificate issuance.

Obtains certificates with HTTP-01 webroot validation: challenge files are
written below the webroot nginx already serves, so nginx must be up
before `issue()` is called.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path

import josepy as jose
import requests
from acme import challenges, client, messages
from acme import errors as acme_errors
from acme.client import ClientV2
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from certkeeper.config import Settings
from certkeeper.models.certificate import IssuanceErrorKind, IssuedCertificate

logger = logging.getLogger(__name__)

# ACME problem types that mean the CA could not validate domain control
_VALIDATION_PROBLEMS = {
    "unauthorized",
    "connection",
    "dns",
    "caa",
    "incorrectResponse",
    "rejectedIdentifier",
    "tls",
}


class IssuanceError(Exception):
    """The certificate authority did not issue a certificate."""

    def __init__(
        self,
        message: str,
        domain: str | None = None,
        kind: IssuanceErrorKind = IssuanceErrorKind.UNKNOWN,
        suggestion: str | None = None,
    ):
        self.message = message
        self.domain = domain
        self.kind = kind
        self.suggestion = suggestion
        super().__init__(message)


def _kind_for_problem(problem: messages.Error | None) -> IssuanceErrorKind:
    if problem is None:
        return IssuanceErrorKind.UNKNOWN
    code = problem.code
    if code == "rateLimited":
        return IssuanceErrorKind.RATE_LIMITED
    if code in _VALIDATION_PROBLEMS:
        return IssuanceErrorKind.VALIDATION_FAILED
    return IssuanceErrorKind.UNKNOWN


def classify_acme_exception(exc: Exception) -> IssuanceErrorKind:
    """Map exceptions raised by the acme client to an issuance error kind."""
    if isinstance(exc, messages.Error):
        return _kind_for_problem(exc)
    if isinstance(exc, acme_errors.ValidationError):
        return IssuanceErrorKind.VALIDATION_FAILED
    if isinstance(exc, acme_errors.IssuanceError):
        return _kind_for_problem(exc.error)
    if isinstance(exc, (acme_errors.TimeoutError, requests.exceptions.RequestException)):
        return IssuanceErrorKind.NETWORK_ERROR
    return IssuanceErrorKind.UNKNOWN


_SUGGESTIONS = {
    IssuanceErrorKind.RATE_LIMITED: "Use --staging while testing; production limits reset after a week",
    IssuanceErrorKind.VALIDATION_FAILED: "Check that the domain points to this server and port 80 serves the webroot",
    IssuanceErrorKind.NETWORK_ERROR: "Check outbound connectivity to the ACME server",
    IssuanceErrorKind.UNKNOWN: None,
}


def split_fullchain(fullchain_pem: bytes) -> tuple[bytes, bytes]:
    """Split a fullchain PEM into (leaf certificate, intermediate chain)."""
    certs = fullchain_pem.split(b"-----END CERTIFICATE-----")
    cert_pem = certs[0].strip() + b"\n-----END CERTIFICATE-----\n"
    chain_pem = b"-----END CERTIFICATE-----".join(certs[1:])
    if chain_pem.strip():
        chain_pem = chain_pem.strip() + b"\n"
    else:
        chain_pem = b""
    return cert_pem, chain_pem


class ACMEService:
    """
    Webroot-based certificate issuance against an ACME directory.

    The account key is persisted on disk and reused across runs.
    """

    def __init__(self, settings: Settings, directory_url: str | None = None):
        self._client: ClientV2 | None = None
        self._account_key: jose.JWK | None = None
        self.directory_url = directory_url or settings.directory_url
        self.account_key_path = Path(settings.acme_account_key_path)
        self.key_size = settings.rsa_key_size
        self.timeout = settings.acme_timeout

    def reset(self):
        """Reset client state. Call after failures to prevent stale client reuse."""
        logger.info("Resetting ACME client state")
        self._client = None

    def _get_or_create_account_key(self) -> jose.JWK:
        """Load the account key from disk, or generate and store a new one."""
        if self._account_key:
            return self._account_key

        if self.account_key_path.exists():
            logger.info(f"Loading ACME account key from {self.account_key_path}")
            private_key = serialization.load_pem_private_key(self.account_key_path.read_bytes(), password=None)
        else:
            logger.info("Generating new ACME account key")
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            self.account_key_path.parent.mkdir(parents=True, exist_ok=True)
            self.account_key_path.write_bytes(
                private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption(),
                )
            )
            self.account_key_path.chmod(0o600)

        self._account_key = jose.JWKRSA(key=private_key)
        return self._account_key

    def _get_client(self, email: str | None) -> ClientV2:
        """Get or create a registered ACME client."""
        if self._client:
            return self._client

        account_key = self._get_or_create_account_key()
        net = client.ClientNetwork(account_key, user_agent="certkeeper/1.0")
        directory = messages.Directory.from_json(net.get(self.directory_url).json())
        acme_client = ClientV2(directory, net=net)

        if email:
            regr = messages.NewRegistration.from_data(email=email, terms_of_service_agreed=True)
        else:
            logger.warning("No SSL_EMAIL set, registering without contact email")
            regr = messages.NewRegistration.from_data(terms_of_service_agreed=True)

        try:
            acme_client.new_account(regr)
            logger.info("Created new ACME account")
        except acme_errors.ConflictError as conflict:
            # Account already exists for this key
            logger.info(f"ACME account already exists at {conflict.location}, retrieving")
            existing_regr = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
            acme_client.query_registration(existing_regr)

        self._client = acme_client
        return self._client

    def _make_csr(self, domain: str) -> tuple[bytes, bytes]:
        """
        Create a key and CSR for the domain.

        Returns:
            Tuple of (csr_pem, private_key_pem)
        """
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)

        builder = x509.CertificateSigningRequestBuilder()
        builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        builder = builder.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        csr = builder.sign(private_key, hashes.SHA256())

        key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return csr.public_bytes(serialization.Encoding.PEM), key_pem

    def _issue_sync(self, domain: str, webroot: Path, email: str | None) -> IssuedCertificate:
        acme_client = self._get_client(email)
        csr_pem, key_pem = self._make_csr(domain)

        order = acme_client.new_order(csr_pem)
        logger.info(f"Created ACME order for {domain}")

        challenge_files: list[Path] = []
        try:
            for authz in order.authorizations:
                challb = next(
                    (c for c in authz.body.challenges if isinstance(c.chall, challenges.HTTP01)),
                    None,
                )
                if challb is None:
                    raise IssuanceError(
                        f"No HTTP-01 challenge offered for {domain}",
                        domain=domain,
                        kind=IssuanceErrorKind.VALIDATION_FAILED,
                        suggestion="Server may only support DNS-01 challenges",
                    )

                response, validation = challb.chall.response_and_validation(acme_client.net.key)
                challenge_path = webroot / challb.chall.path.lstrip("/")
                challenge_path.parent.mkdir(parents=True, exist_ok=True)
                challenge_path.write_text(validation)
                challenge_files.append(challenge_path)
                logger.info(f"Created challenge file at {challenge_path}")

                acme_client.answer_challenge(challb, response)

            deadline = datetime.now() + timedelta(seconds=self.timeout)
            finalized = acme_client.poll_and_finalize(order, deadline)
        finally:
            for path in challenge_files:
                path.unlink(missing_ok=True)

        fullchain_pem = finalized.fullchain_pem.encode("utf-8")
        cert_pem, chain_pem = split_fullchain(fullchain_pem)

        logger.info(f"Successfully obtained certificate for {domain}")
        return IssuedCertificate(
            domain=domain,
            cert_pem=cert_pem,
            chain_pem=chain_pem,
            fullchain_pem=fullchain_pem,
            private_key_pem=key_pem,
        )

    async def issue(self, domain: str, webroot: str | Path, email: str | None = None) -> IssuedCertificate:
        """
        Obtain a certificate for one domain.

        Args:
            domain: Domain name to validate and certify
            webroot: Directory nginx serves at /.well-known/acme-challenge/
            email: Optional contact email for the account

        Returns:
            IssuedCertificate with PEM material

        Raises:
            IssuanceError: Classified as rate-limited, validation-failed or network-error
        """
        logger.info(f"Requesting real certificate for {domain}...")
        try:
            return await asyncio.to_thread(self._issue_sync, domain, Path(webroot), email or None)
        except IssuanceError:
            self.reset()
            raise
        except Exception as e:
            self.reset()
            kind = classify_acme_exception(e)
            raise IssuanceError(
                f"Certificate issuance for {domain} failed: {e}",
                domain=domain,
                kind=kind,
                suggestion=_SUGGESTIONS[kind],
            ) from e
