"""
Global test fixtures.

Provides settings rooted in a temporary stack directory, a certificate
factory, and pre-configured proxy backend mocks so unit tests never touch
Docker, nginx or the network.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from certkeeper.config import Settings
from certkeeper.core.docker_service import ProxyBackend


@pytest.fixture(scope="session")
def rsa_key():
    """One RSA key shared by every generated test certificate."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def make_cert(rsa_key):
    """
    Write a certbot-style certificate directory.

    Usage: make_cert(cert_dir, common_name="example.com", days=30)
    """

    def _make(cert_dir: Path, common_name: str = "example.com", days: float = 30, now: datetime | None = None) -> Path:
        now = now or datetime.now(timezone.utc)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        not_after = now + timedelta(days=days)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test CA")]))
            .public_key(rsa_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(min(now, not_after) - timedelta(days=1))
            .not_valid_after(not_after)
            .sign(rsa_key, hashes.SHA256())
        )
        pem = cert.public_bytes(serialization.Encoding.PEM)

        cert_dir = Path(cert_dir)
        cert_dir.mkdir(parents=True, exist_ok=True)
        for name in ("fullchain.pem", "chain.pem", "cert.pem"):
            (cert_dir / name).write_bytes(pem)
        (cert_dir / "privkey.pem").write_bytes(
            rsa_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        return cert_dir

    return _make


@pytest.fixture
def stack_dir(tmp_path):
    """Temporary compose stack directory."""
    stack = tmp_path / "stack"
    (stack / "templates").mkdir(parents=True)
    (stack / "conf.d").mkdir()
    (stack / "ssl" / "live").mkdir(parents=True)
    (stack / "www" / "certbot").mkdir(parents=True)
    return stack


@pytest.fixture
def settings(stack_dir):
    """Settings pointing every path into the temporary stack."""
    return Settings(
        _env_file=None,
        certbot_domains="example.com,www.example.com",
        ssl_email="admin@example.com",
        host_ssl_dir=str(stack_dir / "ssl" / "live"),
        certbot_webroot=str(stack_dir / "www" / "certbot"),
        certbot_lock_file=str(stack_dir / "ssl" / "renewal.lock"),
        acme_account_key_path=str(stack_dir / "ssl" / "accounts" / "account_key.pem"),
        dhparam_path=str(stack_dir / "dhparam.pem"),
        rsa_key_size=2048,
        nginx_template_dir=str(stack_dir / "templates"),
        nginx_output_dir=str(stack_dir / "conf.d"),
        watcher_env_file=str(stack_dir / ".env"),
        watcher_watch_paths=f"{stack_dir / 'templates'} {stack_dir / 'ssl'}",
        watcher_debounce_time=0.05,
        proxy_ready_interval=0.01,
        proxy_ready_timeout=0.2,
        stack_dir=str(stack_dir),
    )


@pytest.fixture
def mock_backend():
    """Pre-configured proxy backend mock with a passing config test."""
    backend = MagicMock(spec=ProxyBackend)
    backend.validate_config = AsyncMock(return_value=(True, "nginx: configuration file test is successful"))
    backend.reload = AsyncMock(return_value=(True, ""))
    backend.start = AsyncMock(return_value=None)
    backend.preflight = AsyncMock(return_value=None)
    return backend
