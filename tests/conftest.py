"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

PRODUCTION_ISSUER = "Let's Encrypt"
STAGING_ISSUER = "(STAGING) Let's Encrypt"

CertFactory = Callable[..., x509.Certificate]
LineageFactory = Callable[..., x509.Certificate]


def build_certificate(
    names: Iterable[str],
    *,
    issuer_org: str = PRODUCTION_ISSUER,
    days_valid: float = 60,
    now: datetime | None = None,
) -> x509.Certificate:
    """Create a certificate for *names* signed by a throwaway issuer key."""
    names = list(names)
    now = now or datetime.now(UTC)
    subject_key = ec.generate_private_key(ec.SECP256R1())
    issuer_key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])])
    issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, issuer_org),
            x509.NameAttribute(NameOID.COMMON_NAME, "R3"),
        ]
    )
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(subject_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
            critical=False,
        )
        .sign(issuer_key, hashes.SHA256())
    )


def write_lineage(live_dir: Path, primary: str, cert: x509.Certificate) -> Path:
    """Lay out ``live/{primary}`` the way certbot does and return the directory."""
    directory = live_dir / primary
    directory.mkdir(parents=True, exist_ok=True)
    pem = cert.public_bytes(serialization.Encoding.PEM)
    (directory / "cert.pem").write_bytes(pem)
    (directory / "fullchain.pem").write_bytes(pem)
    key = ec.generate_private_key(ec.SECP256R1())
    (directory / "privkey.pem").write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return directory


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    """Undo console logging set up by CLI tests so caplog keeps working."""
    package_logger = logging.getLogger("vhostcert")
    handlers = list(package_logger.handlers)
    level = package_logger.level
    propagate = package_logger.propagate
    yield
    package_logger.handlers[:] = handlers
    package_logger.setLevel(level)
    package_logger.propagate = propagate


@pytest.fixture
def cert_factory() -> CertFactory:
    """Return :func:`build_certificate`."""
    return build_certificate


@pytest.fixture
def live_dir(tmp_path: Path) -> Path:
    """Return an empty certbot live directory."""
    path = tmp_path / "letsencrypt" / "live"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def lineage_factory(live_dir: Path) -> LineageFactory:
    """Return a helper writing a certificate lineage under ``live_dir``."""

    def _factory(
        primary: str, names: Iterable[str] | None = None, **kwargs: object
    ) -> x509.Certificate:
        cert = build_certificate(names or [primary], **kwargs)  # type: ignore[arg-type]
        write_lineage(live_dir, primary, cert)
        return cert

    return _factory
