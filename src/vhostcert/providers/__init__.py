"""Provider interfaces for vhostcert."""
from __future__ import annotations

from .apache import ApacheError, ApacheProvider
from .certbot import CertbotError, CertbotProvider, IssuanceResult
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ApacheError",
    "ApacheProvider",
    "CertbotError",
    "CertbotProvider",
    "IssuanceResult",
    "SystemdError",
    "SystemdProvider",
]
