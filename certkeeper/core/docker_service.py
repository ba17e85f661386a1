"""
Process control backends for the nginx proxy.

DockerProxyBackend wraps the Docker SDK to operate on the nginx container
from the host. LocalProxyBackend drives an nginx binary on the same
machine, which is how the watcher runs inside the nginx container.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod

import docker
from docker.errors import APIError, NotFound

from certkeeper.config import Settings

logger = logging.getLogger(__name__)


class ProxyControlError(Exception):
    """Base exception for proxy process control errors."""

    def __init__(self, message: str, error_type: str, suggestion: str | None = None):
        self.message = message
        self.error_type = error_type
        self.suggestion = suggestion
        super().__init__(message)


class ContainerNotFoundError(ProxyControlError):
    """Container not found."""

    pass


class DockerUnavailableError(ProxyControlError):
    """Docker daemon not available."""

    pass


class ProxyBackend(ABC):
    """Minimal control surface the proxy controller needs."""

    @abstractmethod
    async def validate_config(self) -> tuple[bool, str]:
        """Run `nginx -t`; returns (ok, output)."""

    @abstractmethod
    async def reload(self) -> tuple[bool, str]:
        """Send the reload signal; returns (ok, output)."""

    @abstractmethod
    async def start(self) -> None:
        """Make sure nginx is running."""

    async def preflight(self) -> None:
        """Fail early if the proxy cannot be controlled at all."""


class DockerProxyBackend(ProxyBackend):
    """Controls nginx running in a Docker container."""

    def __init__(self, settings: Settings):
        self.container_name = settings.nginx_container_name
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker.errors.DockerException as e:
                raise DockerUnavailableError(
                    f"Cannot connect to Docker daemon: {e}",
                    error_type="docker_unavailable",
                    suggestion="Ensure Docker daemon is running and socket is accessible",
                )
        return self._client

    def _get_container(self):
        """Get the NGINX container by name."""
        try:
            return self.client.containers.get(self.container_name)
        except NotFound:
            raise ContainerNotFoundError(
                f"Container '{self.container_name}' not found",
                error_type="container_not_found",
                suggestion="Create the stack first with 'docker compose up --no-start'",
            )
        except APIError as e:
            raise ProxyControlError(
                f"Docker API error: {e}",
                error_type="docker_api_error",
                suggestion="Check Docker daemon status and permissions",
            )

    def _exec_sync(self, command: list[str]) -> tuple[int, str]:
        container = self._get_container()
        try:
            exec_result = container.exec_run(cmd=command, demux=True)
        except APIError as e:
            raise ProxyControlError(
                f"Failed to run '{' '.join(command)}' in container '{self.container_name}': {e}",
                error_type="exec_failed",
                suggestion="Check that the nginx container is running",
            )

        stdout, stderr = exec_result.output or (None, None)
        output = (stdout or b"").decode() + (stderr or b"").decode()
        return exec_result.exit_code, output

    async def exec_in_container(self, command: list[str]) -> tuple[int, str]:
        """Execute a command in the NGINX container; returns (exit_code, combined output)."""
        return await asyncio.to_thread(self._exec_sync, command)

    async def validate_config(self) -> tuple[bool, str]:
        logger.info("Testing NGINX configuration")
        exit_code, output = await self.exec_in_container(["nginx", "-t"])
        if exit_code != 0:
            logger.warning(f"NGINX configuration test failed: {output.strip()}")
        return exit_code == 0, output

    async def reload(self) -> tuple[bool, str]:
        logger.info("Sending reload signal to NGINX")
        exit_code, output = await self.exec_in_container(["nginx", "-s", "reload"])
        if exit_code != 0:
            logger.error(f"NGINX reload failed: {output.strip()}")
        return exit_code == 0, output

    def _start_sync(self) -> None:
        container = self._get_container()
        container.reload()  # Refresh container state

        # Restart a running container so nginx re-reads the certificates
        if container.status == "running":
            logger.info(f"Restarting container {self.container_name}")
            container.restart()
        else:
            logger.info(f"Starting container {self.container_name}")
            container.start()

    async def preflight(self) -> None:
        await asyncio.to_thread(self._get_container)

    async def start(self) -> None:
        try:
            await asyncio.to_thread(self._start_sync)
        except APIError as e:
            raise ProxyControlError(
                f"Failed to start container '{self.container_name}': {e}",
                error_type="container_start_failed",
                suggestion="Inspect 'docker logs' for the nginx container",
            )


class LocalProxyBackend(ProxyBackend):
    """Controls an nginx binary on this machine."""

    def __init__(self, settings: Settings):
        self.binary = settings.nginx_binary
        self.timeout = settings.nginx_operation_timeout

    async def _run(self, *args: str) -> tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            raise ProxyControlError(
                f"nginx binary not found: {self.binary}",
                error_type="binary_not_found",
                suggestion="Set NGINX_BINARY to the nginx executable",
            )

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ProxyControlError(
                f"'{self.binary} {' '.join(args)}' timed out after {self.timeout}s",
                error_type="operation_timeout",
            )
        return process.returncode, stdout.decode() if stdout else ""

    async def validate_config(self) -> tuple[bool, str]:
        logger.info("Testing NGINX configuration")
        exit_code, output = await self._run("-t")
        if exit_code != 0:
            logger.warning(f"NGINX configuration test failed: {output.strip()}")
        return exit_code == 0, output

    async def reload(self) -> tuple[bool, str]:
        logger.info("Sending reload signal to NGINX")
        exit_code, output = await self._run("-s", "reload")
        if exit_code != 0:
            logger.error(f"NGINX reload failed: {output.strip()}")
        return exit_code == 0, output

    async def preflight(self) -> None:
        if shutil.which(self.binary) is None:
            raise ProxyControlError(
                f"nginx binary not found: {self.binary}",
                error_type="binary_not_found",
                suggestion="Set NGINX_BINARY to the nginx executable",
            )

    async def start(self) -> None:
        # A successful reload means a master process is already running
        exit_code, _ = await self._run("-s", "reload")
        if exit_code == 0:
            return

        logger.info("Starting NGINX")
        exit_code, output = await self._run()
        if exit_code != 0:
            raise ProxyControlError(
                f"Failed to start nginx: {output.strip()}",
                error_type="start_failed",
                suggestion="Run 'nginx -t' to inspect the configuration",
            )


def get_proxy_backend(settings: Settings) -> ProxyBackend:
    """Pick the process control backend configured by PROXY_BACKEND."""
    if settings.proxy_backend == "local":
        return LocalProxyBackend(settings)
    return DockerProxyBackend(settings)
