"""
Certificate provisioning: placeholders first, real certificates second.

A provisioning run works in two full passes over the domain list:

1. Placeholder pass: every domain without a valid certificate gets a
   self-signed CN=localhost certificate, so an nginx configuration that
   references all domains can start.
2. Issuance pass: with nginx up and serving the webroot, each domain that
   still lacks a valid certificate is re-issued by the ACME CA and nginx
   is reloaded.

The renewal lock is held for the whole run so the config watcher does not
reload nginx while certificate material is in flux.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence

from certkeeper.config import Settings
from certkeeper.core import cert_store
from certkeeper.core.acme_service import ACMEService, IssuanceError
from certkeeper.core.cert_classifier import CertificateParseError, classify
from certkeeper.core.docker_service import ProxyControlError
from certkeeper.core.health_checker import StartupTimeout
from certkeeper.core.proxy_controller import ConfigValidationError, ProxyController
from certkeeper.core.renewal_lock import RenewalLock
from certkeeper.models.certificate import (
    CertificateClassification,
    DomainResult,
    ProvisionResult,
)

logger = logging.getLogger(__name__)

# Called before each issuance; used by --test mode to pause
ConfirmHook = Callable[[str], Awaitable[None]]


class CertificateProvisioner:
    """Drives the placeholder -> bring-up -> issuance sequence."""

    def __init__(
        self,
        settings: Settings,
        proxy: ProxyController,
        acme: ACMEService,
        lock: RenewalLock | None = None,
        before_issue: ConfirmHook | None = None,
    ):
        self.settings = settings
        self.proxy = proxy
        self.acme = acme
        self.lock = lock or RenewalLock(settings.certbot_lock_file, stale_after=settings.lock_stale_after)
        self.before_issue = before_issue

    def classify(self, domain: str) -> CertificateClassification:
        return classify(self.settings.cert_dir(domain), margin_days=self.settings.cert_renewal_margin_days)

    async def ensure_placeholder(self, domain: str, result: DomainResult) -> None:
        """Placeholder pass for a single domain."""
        classification = self.classify(domain)
        result.initial_classification = classification

        if not classification.needs_issuance:
            logger.info(f"{domain}: keeping existing valid certificate")
            return

        logger.info(f"{domain}: creating dummy certificate ({classification.value})")
        await cert_store.create_placeholder(
            self.settings.cert_dir(domain),
            days=self.settings.dummy_days,
            key_size=self.settings.rsa_key_size,
        )
        result.placeholder_created = True

    async def issue_real(self, domain: str, result: DomainResult) -> None:
        """Issuance pass for a single domain."""
        classification = self.classify(domain)
        if not classification.needs_issuance:
            logger.info(f"{domain} already has a real certificate")
            result.skipped = True
            return

        if self.before_issue is not None:
            await self.before_issue(domain)

        cert_dir = self.settings.cert_dir(domain)
        logger.info(f"Deleting dummy certificate for {domain} ...")
        cert_store.remove_certificate(cert_dir)

        issued = await self.acme.issue(domain, self.settings.certbot_webroot, self.settings.ssl_email)
        cert_store.install_certificate(cert_dir, issued)
        result.issued = True
        logger.info(f"Real certificate obtained for {domain}")

        await self.proxy.reload()

    async def provision(self, domains: Sequence[str]) -> ProvisionResult:
        """
        Run both passes over the domains while holding the renewal lock.

        Per-domain failures are recorded and do not stop other domains.
        Bring-up failures abort the run. The lock is always released.

        Raises:
            LockHeldError: If another provisioning run holds the lock
        """
        results = {domain: DomainResult(domain=domain) for domain in domains}
        outcome = ProvisionResult(domains=list(results.values()))

        with self.lock.hold():
            # First pass: placeholders for all domains so nginx can start
            for domain in domains:
                result = results[domain]
                try:
                    await self.ensure_placeholder(domain, result)
                except CertificateParseError as e:
                    logger.error(f"{domain}: {e.message}")
                    result.error = e.message
                    result.error_kind = "certificate_parse"
                except OSError as e:
                    logger.error(f"{domain}: failed to write dummy certificate: {e}")
                    result.error = str(e)
                    result.error_kind = "filesystem"

            logger.info("### Starting nginx ...")
            try:
                await self.proxy.start()
                await self.proxy.wait_until_ready()
            except (ProxyControlError, StartupTimeout) as e:
                logger.error(f"Nginx bring-up failed: {e}")
                outcome.aborted = True
                outcome.abort_reason = str(e)
                return outcome

            # Second pass: real certificates, only after every placeholder exists
            for domain in domains:
                result = results[domain]
                if result.failed:
                    continue
                try:
                    await self.issue_real(domain, result)
                except IssuanceError as e:
                    logger.error(f"{domain}: {e.message}")
                    result.error = e.message
                    result.error_kind = e.kind.value
                except (ConfigValidationError, ProxyControlError) as e:
                    logger.error(f"{domain}: certificate installed but nginx reload failed: {e}")
                    result.error = str(e)
                    result.error_kind = "reload"
                except CertificateParseError as e:
                    logger.error(f"{domain}: {e.message}")
                    result.error = e.message
                    result.error_kind = "certificate_parse"
                except OSError as e:
                    logger.error(f"{domain}: failed to replace certificate files: {e}")
                    result.error = str(e)
                    result.error_kind = "filesystem"

        if outcome.success:
            logger.info(f"Provisioning finished for {len(outcome.domains)} domain(s)")
        else:
            logger.error(f"Provisioning failed for: {', '.join(outcome.failed_domains)}")
        return outcome
