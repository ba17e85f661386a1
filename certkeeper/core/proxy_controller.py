"""
Proxy controller: the only way configuration changes reach nginx.

Every change goes through render -> validate -> reload. A configuration
that fails `nginx -t` is never applied; the running configuration stays
in place.
"""

import logging
from pathlib import Path

from certkeeper.config import Settings
from certkeeper.core.docker_service import ProxyBackend, ProxyControlError, get_proxy_backend
from certkeeper.core.env_loader import template_variables
from certkeeper.core.health_checker import HealthChecker, StartupTimeout
from certkeeper.core.template_renderer import TemplateRenderer, TemplateRenderError
from certkeeper.models.watch import ProxyActionResult

logger = logging.getLogger(__name__)

__all__ = ["ConfigValidationError", "ProxyController", "StartupTimeout"]


class ConfigValidationError(Exception):
    """nginx rejected the configuration; reload was skipped."""

    def __init__(self, message: str, output: str = "", suggestion: str | None = None):
        self.message = message
        self.output = output
        self.suggestion = suggestion
        super().__init__(message)


class ProxyController:
    """Start, validate and reload nginx with a test-then-apply discipline."""

    def __init__(
        self,
        settings: Settings,
        backend: ProxyBackend | None = None,
        renderer: TemplateRenderer | None = None,
        health_checker: HealthChecker | None = None,
        env_file: str | Path | None = None,
    ):
        self.settings = settings
        self.backend = backend or get_proxy_backend(settings)
        self.renderer = renderer or TemplateRenderer(
            Path(settings.nginx_template_dir),
            Path(settings.nginx_output_dir),
            suffix=settings.nginx_template_suffix,
        )
        self.health_checker = health_checker or HealthChecker(
            settings.proxy_ready_url,
            interval=settings.proxy_ready_interval,
            timeout=settings.proxy_ready_timeout,
        )
        self.env_file = env_file if env_file is not None else settings.watcher_env_file

    async def validate(self) -> tuple[bool, str]:
        """Run the proxy's syntax check."""
        return await self.backend.validate_config()

    async def apply_config(self) -> ProxyActionResult:
        """
        Render templates with the current environment, then validate.

        Does not reload. A failed render or validation leaves the running
        configuration untouched and is reported in the result.
        """
        logger.info("Loading env and generating configs...")
        try:
            self.renderer.render_all(template_variables(self.env_file))
        except TemplateRenderError as e:
            logger.error(f"Template rendering failed: {e.message}")
            return ProxyActionResult(success=False, stage="render", message=e.message)

        logger.info("Testing nginx config...")
        ok, output = await self.validate()
        if not ok:
            logger.warning("Config test failed, reload skipped")
            return ProxyActionResult(success=False, stage="validate", message="nginx -t failed", output=output)

        return ProxyActionResult(success=True, stage="validate", output=output)

    async def reload(self) -> ProxyActionResult:
        """
        Validate, then signal nginx to reload.

        Raises:
            ConfigValidationError: If validation fails (nothing is reloaded)
            ProxyControlError: If the reload signal itself fails
        """
        ok, output = await self.validate()
        if not ok:
            raise ConfigValidationError(
                "nginx configuration test failed, reload skipped",
                output=output,
                suggestion="Fix the configuration and run 'nginx -t'",
            )

        logger.info("Reloading nginx...")
        ok, reload_output = await self.backend.reload()
        if not ok:
            raise ProxyControlError(
                f"nginx reload failed: {reload_output.strip()}",
                error_type="reload_failed",
            )
        return ProxyActionResult(success=True, stage="reload", output=reload_output)

    async def send_reload(self) -> ProxyActionResult:
        """Signal a reload of an already validated configuration."""
        logger.info("Reloading nginx...")
        ok, output = await self.backend.reload()
        if not ok:
            return ProxyActionResult(success=False, stage="reload", message="nginx -s reload failed", output=output)
        return ProxyActionResult(success=True, stage="reload", output=output)

    async def preflight(self) -> None:
        """Raise ProxyControlError if nginx cannot be controlled."""
        await self.backend.preflight()

    async def start(self) -> None:
        """Ensure the proxy process is running."""
        logger.info("Starting nginx...")
        await self.backend.start()

    async def wait_until_ready(self) -> int:
        """
        Block until nginx serves HTTP.

        Raises:
            StartupTimeout: If the readiness deadline passes
        """
        return await self.health_checker.wait_until_ready()
