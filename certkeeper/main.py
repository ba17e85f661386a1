"""
certkeeper command line interface.

Provisions placeholder and real certificates for an nginx stack, and
keeps nginx reloaded when templates or certificates change.
"""

import asyncio
import logging
import shutil
import signal
import sys
from pathlib import Path

import click

from certkeeper.config import ConfigError, Settings, ensure_directories, load_settings
from certkeeper.core.acme_service import ACMEService
from certkeeper.core.cert_classifier import CertificateParseError, classify
from certkeeper.core.cert_provisioner import CertificateProvisioner
from certkeeper.core.cert_store import ensure_dhparam
from certkeeper.core.config_watcher import ConfigWatcher
from certkeeper.core.docker_service import ProxyControlError
from certkeeper.core.proxy_controller import ProxyController
from certkeeper.core.renewal_lock import LockHeldError, RenewalLock
from certkeeper.core.renewal_scheduler import RenewalScheduler
from certkeeper.models.certificate import ProvisionResult

logger = logging.getLogger("certkeeper")

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def cleanup_targets(settings: Settings) -> list[Path]:
    """Generated state removed by --clean."""
    stack = Path(settings.stack_dir)
    return [stack / "ssl", stack / "conf.d", stack / "stream-conf.d", stack / "locations"]


def _fail(message: str, suggestion: str | None = None) -> None:
    click.echo(f"Error: {message}", err=True)
    if suggestion:
        click.echo(f"Hint: {suggestion}", err=True)
    sys.exit(1)


def _install_signal_handlers(callback) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass


async def _confirm_issue(domain: str) -> None:
    click.echo(f"\nTESTING mode active. Ready to request a certificate for {domain}.")
    await asyncio.to_thread(click.prompt, "Press Enter to continue", default="", show_default=False)


def build_provisioner(settings: Settings, env_file: str, testing: bool = False) -> CertificateProvisioner:
    proxy = ProxyController(settings, env_file=env_file)
    return CertificateProvisioner(
        settings,
        proxy=proxy,
        acme=ACMEService(settings),
        before_issue=_confirm_issue if testing else None,
    )


def build_watcher(settings: Settings) -> ConfigWatcher:
    return ConfigWatcher(
        ProxyController(settings),
        RenewalLock(settings.certbot_lock_file, stale_after=settings.lock_stale_after),
        settings.watch_paths,
        debounce=settings.watcher_debounce_time,
    )


def print_summary(settings: Settings, testing: bool, cleanup: bool) -> None:
    click.echo()
    click.echo(f"Certificates: {'STAGING' if settings.staging else 'PROD'}")
    click.echo(f"Mode:         {'TESTING' if testing else 'PROD'}")
    click.echo(f"Cleanup:      {'ON' if cleanup else 'OFF'}")
    click.echo(f"Domains:      {', '.join(settings.domains) or '-'}")
    click.echo()


def print_results(result: ProvisionResult) -> None:
    for item in result.domains:
        if item.failed:
            state = f"FAILED ({item.error_kind}): {item.error}"
        elif item.issued:
            state = "issued"
        elif item.skipped:
            state = "already valid"
        else:
            state = "not processed"
        click.echo(f"  {item.domain}: {state}")
    if result.aborted:
        click.echo(f"Run aborted: {result.abort_reason}", err=True)


def _load(ctx: click.Context, **overrides) -> Settings:
    try:
        settings = load_settings(ctx.obj["env_file"], **overrides)
        settings.validate_paths()
    except ConfigError as e:
        _fail(e.message, e.suggestion)
    except ValueError as e:
        # pydantic validation errors for malformed values
        _fail(f"Invalid configuration: {e}")
    configure_logging(settings.log_level)
    return settings


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("--env-file", default=".env", show_default=True, help="Environment file to load")
@click.pass_context
def cli(ctx: click.Context, env_file: str):
    """Certificate lifecycle management for an nginx reverse proxy."""
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


@cli.command()
@click.option("--staging", is_flag=True, help="Use the ACME staging environment")
@click.option("--test", "testing", is_flag=True, help="Pause before each issuance (implies --staging)")
@click.option("--clean", "cleanup", is_flag=True, help="Remove generated state before provisioning")
@click.pass_context
def provision(ctx: click.Context, staging: bool, testing: bool, cleanup: bool):
    """Create placeholder certificates, start nginx, then obtain real certificates."""
    overrides = {"staging": True} if staging or testing else {}
    settings = _load(ctx, **overrides)

    print_summary(settings, testing, cleanup)

    domains = settings.domains
    if not domains:
        _fail("No domains configured", "Set CERTBOT_DOMAINS in .env")

    provisioner = build_provisioner(settings, ctx.obj["env_file"], testing=testing)

    # Infrastructure must be reachable before anything on disk is touched
    try:
        asyncio.run(provisioner.proxy.preflight())
    except ProxyControlError as e:
        _fail(e.message, e.suggestion)

    if cleanup:
        targets = cleanup_targets(settings)
        click.echo("WARNING: the following directories will be removed:")
        for target in targets:
            click.echo(f"  {target}")
        click.confirm("Continue?", abort=True)
        for target in targets:
            shutil.rmtree(target, ignore_errors=True)
        click.echo("Cleanup complete.")

    for directory in ensure_directories(settings):
        logger.info(f"Created directory: {directory}")

    async def _run() -> ProvisionResult:
        await ensure_dhparam(settings.dhparam_path, settings.dh_param_size)
        return await provisioner.provision(domains)

    try:
        result = asyncio.run(_run())
    except ProxyControlError as e:
        _fail(e.message, e.suggestion)
    except LockHeldError as e:
        _fail(e.message, e.suggestion)

    print_results(result)
    sys.exit(result.exit_code)


@cli.command()
@click.pass_context
def watch(ctx: click.Context):
    """Reload nginx when templates, config or certificates change."""
    settings = _load(ctx)
    watcher = build_watcher(settings)

    async def _run() -> None:
        _install_signal_handlers(watcher.stop)
        await watcher.run()

    asyncio.run(_run())


@cli.command()
@click.option("--staging", is_flag=True, help="Use the ACME staging environment")
@click.pass_context
def run(ctx: click.Context, staging: bool):
    """Watch for changes while provisioning, then renew daily."""
    settings = _load(ctx, **({"staging": True} if staging else {}))
    domains = settings.domains

    provisioner = build_provisioner(settings, ctx.obj["env_file"])
    try:
        asyncio.run(provisioner.proxy.preflight())
    except ProxyControlError as e:
        _fail(e.message, e.suggestion)
    ensure_directories(settings)

    watcher = build_watcher(settings)
    scheduler = RenewalScheduler(provisioner, domains, hour=settings.renewal_cron_hour)

    async def _run() -> None:
        _install_signal_handlers(watcher.stop)
        watch_task = asyncio.create_task(watcher.run())

        try:
            await ensure_dhparam(settings.dhparam_path, settings.dh_param_size)
            if domains:
                result = await provisioner.provision(domains)
                print_results(result)
            scheduler.start()
            await watch_task
        except (ProxyControlError, LockHeldError) as e:
            logger.error(f"Provisioning could not run: {e}")
            watcher.stop()
            await watch_task
            raise
        finally:
            scheduler.stop()

    try:
        asyncio.run(_run())
    except (ProxyControlError, LockHeldError) as e:
        _fail(e.message, e.suggestion)


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show the certificate classification of every configured domain."""
    settings = _load(ctx)
    exit_code = 0
    for domain in settings.domains:
        try:
            state = classify(settings.cert_dir(domain), margin_days=settings.cert_renewal_margin_days).value
        except CertificateParseError as e:
            state = f"unreadable ({e.message})"
            exit_code = 1
        click.echo(f"{domain}: {state}")
    sys.exit(exit_code)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
