"""
Configuration utilities and settings management.

Settings are read from the process environment and the stack's `.env`
file, validated by pydantic, and passed explicitly into each component.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

from certkeeper.core.env_loader import load_env_file


class ConfigError(Exception):
    """Invalid or incomplete configuration."""

    def __init__(self, message: str, suggestion: str | None = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Domains & ACME account
    certbot_domains: str = Field(
        default="", alias="CERTBOT_DOMAINS", description="Comma-separated list of domains to manage"
    )
    ssl_email: str = Field(default="", alias="SSL_EMAIL", description="Contact email for the ACME account")
    staging: bool = Field(
        default=False, alias="STAGING", description="Use the ACME staging environment to avoid rate limits"
    )

    # Certificate store
    host_ssl_dir: str = Field(
        default="./ssl/live", alias="HOST_SSL_DIR", description="Directory holding one subdirectory per domain"
    )
    certbot_webroot: str = Field(
        default="./www/certbot", alias="CERTBOT_WEBROOT", description="Webroot served by nginx for HTTP-01 challenges"
    )
    certbot_lock_file: str = Field(
        default="./ssl/renewal.lock",
        alias="CERTBOT_LOCK_FILE",
        description="Marker file held while certificates are being mutated",
    )
    lock_stale_after: int = Field(
        default=3600, alias="LOCK_STALE_AFTER", description="Seconds after which a lock marker is considered stale"
    )

    # Placeholder & key material
    dummy_days: int = Field(default=1, alias="DUMMY_DAYS", description="Validity of placeholder certificates in days")
    rsa_key_size: int = Field(default=4096, alias="RSA_KEY_SIZE", description="RSA key size in bits")
    dh_param_size: int = Field(default=2048, alias="DH_PARAM_SIZE", description="dhparam.pem size in bits")
    dhparam_path: str = Field(default="./dhparam.pem", alias="DHPARAM_PATH")
    cert_renewal_margin_days: int = Field(
        default=7,
        alias="CERT_RENEWAL_MARGIN_DAYS",
        description="Certificates with fewer days left are re-issued",
    )

    # ACME/Let's Encrypt Configuration
    acme_directory_url: str = Field(
        default="https://acme-v02.api.letsencrypt.org/directory",
        alias="ACME_DIRECTORY_URL",
        description="ACME directory URL (production Let's Encrypt)",
    )
    acme_staging_url: str = Field(
        default="https://acme-staging-v02.api.letsencrypt.org/directory",
        alias="ACME_STAGING_URL",
        description="ACME staging directory URL for testing",
    )
    acme_account_key_path: str = Field(
        default="./ssl/accounts/account_key.pem",
        alias="ACME_ACCOUNT_KEY_PATH",
        description="PEM file holding the ACME account key",
    )
    acme_timeout: int = Field(
        default=300, alias="ACME_TIMEOUT", description="Seconds to wait for authorization and finalization"
    )

    # Proxy control
    proxy_backend: str = Field(
        default="docker", alias="PROXY_BACKEND", description="How to control nginx: 'docker' or 'local'"
    )
    nginx_container_name: str = Field(
        default="nginx", alias="NGINX_CONTAINER_NAME", description="Docker container name for NGINX"
    )
    nginx_binary: str = Field(default="nginx", alias="NGINX_BINARY")
    nginx_operation_timeout: int = Field(
        default=30, alias="NGINX_OPERATION_TIMEOUT", description="Timeout in seconds for NGINX operations"
    )
    nginx_template_dir: str = Field(default="/etc/nginx/templates", alias="NGINX_TEMPLATE_DIR")
    nginx_output_dir: str = Field(default="/etc/nginx/conf.d", alias="NGINX_OUTPUT_DIR")
    nginx_template_suffix: str = Field(default=".template", alias="NGINX_TEMPLATE_SUFFIX")

    # Readiness check
    proxy_ready_url: str = Field(
        default="http://localhost", alias="PROXY_READY_URL", description="URL polled until nginx serves HTTP"
    )
    proxy_ready_interval: float = Field(
        default=1.0, alias="PROXY_READY_INTERVAL", description="Seconds between readiness checks"
    )
    proxy_ready_timeout: float = Field(
        default=120.0, alias="PROXY_READY_TIMEOUT", description="Give up waiting for nginx after this many seconds"
    )

    # Watcher
    watcher_env_file: str = Field(
        default="/etc/nginx/.env", alias="WATCHER_ENV_FILE", description="Env file re-read before each render"
    )
    watcher_watch_paths: str = Field(
        default="/etc/nginx/templates /etc/nginx/nginx.conf /etc/letsencrypt/",
        alias="WATCHER_WATCH_PATHS",
        description="Whitespace-separated paths watched recursively",
    )
    watcher_debounce_time: float = Field(
        default=2.0, alias="WATCHER_DEBOUNCE_TIME", description="Seconds to wait after the last change"
    )

    # Stack layout & scheduling
    stack_dir: str = Field(default=".", alias="STACK_DIR", description="Root of the compose stack")
    renewal_cron_hour: int = Field(default=3, alias="RENEWAL_CRON_HOUR")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore unrelated keys in the .env file
        frozen = True
        populate_by_name = True

    @property
    def domains(self) -> list[str]:
        """Domains in configuration order, blanks dropped."""
        return [d.strip() for d in self.certbot_domains.split(",") if d.strip()]

    @property
    def watch_paths(self) -> list[Path]:
        return [Path(p) for p in self.watcher_watch_paths.split()]

    @property
    def directory_url(self) -> str:
        """ACME directory URL, honoring the staging switch."""
        if self.staging:
            return self.acme_staging_url
        return self.acme_directory_url

    def cert_dir(self, domain: str) -> Path:
        return Path(self.host_ssl_dir) / domain

    def validate_paths(self) -> None:
        """
        Reject path settings the provisioning run cannot work with.

        Raises:
            ConfigError: If a required path is blank or contains whitespace
        """
        for name, value in (
            ("HOST_SSL_DIR", self.host_ssl_dir),
            ("CERTBOT_WEBROOT", self.certbot_webroot),
            ("CERTBOT_LOCK_FILE", self.certbot_lock_file),
        ):
            if not value or any(ch.isspace() for ch in value):
                raise ConfigError(f"Invalid {name}: {value!r}", suggestion="Check .env")

        if self.proxy_backend not in ("docker", "local"):
            raise ConfigError(
                f"Unknown PROXY_BACKEND: {self.proxy_backend!r}", suggestion="Use 'docker' or 'local'"
            )


def load_settings(env_file: str | Path | None = ".env", **overrides) -> Settings:
    """
    Build immutable settings from an env file plus the process environment.

    Values from the env file win over the process environment, and
    explicit overrides win over both.
    """
    values: dict = {}
    if env_file is not None:
        values.update(load_env_file(env_file))
    for name, value in overrides.items():
        field = Settings.model_fields.get(name)
        values[field.alias if field is not None and field.alias else name] = value
    return Settings(_env_file=None, **values)


def stack_directories(settings: Settings) -> list[Path]:
    """Directories the stack needs for configs, templates, web content and SSL."""
    stack = Path(settings.stack_dir)
    return [
        stack / "conf.d",  # Nginx HTTP configs
        stack / "locations",  # Extra location blocks
        stack / "stream-conf.d",  # Nginx stream (TCP/UDP) configs
        stack / "templates",  # Config templates (envsubst)
        Path(settings.certbot_webroot),  # Certbot challenge files
        stack / "www" / "html",  # Web root
        Path(settings.host_ssl_dir),  # SSL certs and keys
    ]


def ensure_directories(settings: Settings) -> list[Path]:
    """Ensure required stack directories exist."""
    created = []
    for dir_path in stack_directories(settings):
        dir_path.mkdir(parents=True, exist_ok=True)
        created.append(dir_path)
    return created
