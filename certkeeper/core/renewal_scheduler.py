"""
Certificate renewal scheduler.

Re-runs provisioning daily with APScheduler so certificates that entered
the renewal margin are re-issued without operator action.
"""

import logging
from collections.abc import Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from certkeeper.core.cert_provisioner import CertificateProvisioner
from certkeeper.core.renewal_lock import LockHeldError
from certkeeper.models.certificate import ProvisionResult

logger = logging.getLogger(__name__)


class RenewalScheduler:
    """Background job that periodically re-provisions all domains."""

    def __init__(self, provisioner: CertificateProvisioner, domains: Sequence[str], hour: int = 3):
        self.scheduler = AsyncIOScheduler()
        self.provisioner = provisioner
        self.domains = list(domains)
        self.hour = hour
        self._started = False

    def start(self) -> None:
        """Start the renewal scheduler. Must be called with a running event loop."""
        if self._started:
            logger.warning("Renewal scheduler already started")
            return

        self.scheduler.add_job(
            self.check_renewals,
            CronTrigger(hour=self.hour, minute=0),
            id="cert_renewal_check",
            name="Certificate Renewal Check",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        self._started = True
        logger.info(f"Renewal scheduler started (daily at {self.hour:02d}:00)")

    def stop(self) -> None:
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Renewal scheduler stopped")

    async def check_renewals(self) -> ProvisionResult | None:
        """
        Run one provisioning pass over all domains.

        Valid certificates are left alone, so this is a no-op unless a
        certificate is missing, a placeholder, or expiring soon.
        """
        logger.info("Starting certificate renewal check")
        try:
            result = await self.provisioner.provision(self.domains)
        except LockHeldError as e:
            logger.warning(f"Skipping renewal check: {e.message}")
            return None

        logger.info(
            f"Certificate renewal check complete: "
            f"{sum(1 for r in result.domains if r.issued)} issued, {len(result.failed_domains)} failed"
        )
        return result

    def get_next_run_time(self) -> str | None:
        job = self.scheduler.get_job("cert_renewal_check")
        next_run = getattr(job, "next_run_time", None)
        return next_run.isoformat() if next_run else None
