"""Certificate state inspection for domain groups."""
from __future__ import annotations

import hashlib
import logging
import socket
import ssl
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .config import TrustConfig
from .vhosts import DomainGroup

LOGGER = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class TLSMaterial:
    """Certificate files a secure listener should reference."""

    certificate: Path
    key: Path


@dataclass(frozen=True)
class CertificateRecord:
    """The facts about one certificate that drive reconciliation."""

    not_valid_after: datetime
    sans: frozenset[str]
    issuer: str
    fingerprint: str

    @classmethod
    def from_certificate(cls, cert: x509.Certificate) -> CertificateRecord:
        """Build a record from a parsed certificate."""
        not_after = getattr(cert, "not_valid_after_utc", None)
        if not isinstance(not_after, datetime):  # pragma: no cover - old cryptography
            not_after = _as_utc(cert.not_valid_after)
        try:
            san_ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            sans = frozenset(
                name.lower() for name in san_ext.value.get_values_for_type(x509.DNSName)
            )
        except x509.ExtensionNotFound:
            sans = frozenset()
        der = cert.public_bytes(serialization.Encoding.DER)
        return cls(
            not_valid_after=not_after,
            sans=sans,
            issuer=cert.issuer.rfc4514_string(),
            fingerprint=hashlib.sha256(der).hexdigest().upper(),
        )

    @classmethod
    def from_der(cls, data: bytes) -> CertificateRecord:
        """Build a record from DER bytes."""
        return cls.from_certificate(x509.load_der_x509_certificate(data))

    def days_remaining(self, now: datetime | None = None) -> int:
        """Return whole days until expiry (negative once expired)."""
        now = now or datetime.now(UTC)
        seconds = (self.not_valid_after - _as_utc(now)).total_seconds()
        return int(seconds // SECONDS_PER_DAY)


def lineage_dir(live_dir: Path, primary: str) -> Path:
    """Return the certificate authority's live directory for *primary*."""
    return live_dir / primary


def lineage_material(live_dir: Path, primary: str) -> TLSMaterial:
    """Return the full chain and private key paths for *primary*."""
    directory = lineage_dir(live_dir, primary)
    return TLSMaterial(certificate=directory / "fullchain.pem", key=directory / "privkey.pem")


def load_local_record(live_dir: Path, primary: str) -> CertificateRecord | None:
    """Read the locally stored certificate for *primary*.

    Returns ``None`` when no full chain exists or the leaf cannot be parsed.
    """
    directory = lineage_dir(live_dir, primary)
    fullchain = directory / "fullchain.pem"
    if not fullchain.is_file():
        return None
    leaf = directory / "cert.pem"
    source = leaf if leaf.is_file() else fullchain
    try:
        return CertificateRecord.from_certificate(_load_certificate(source))
    except (OSError, ValueError) as exc:
        LOGGER.warning("[%s] Cannot parse local certificate %s: %s", primary, source, exc)
        return None


class ServedCertificateProbe:
    """Fetch the certificate a host presents during a live TLS handshake."""

    def __init__(self, timeout: float | None = None) -> None:
        """Use *timeout* seconds for connect and handshake (``None`` = OS default)."""
        self.timeout = timeout

    def fetch(self, host: str, port: int = 443) -> CertificateRecord | None:
        """Return the served certificate for *host*, or ``None`` when unavailable."""
        context = ssl.create_default_context()
        # Untrusted certificates must still be observable.
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        try:
            with socket.create_connection((host, port), timeout=self.timeout) as raw:
                with context.wrap_socket(raw, server_hostname=host) as tls:
                    der = tls.getpeercert(binary_form=True)
        except (OSError, ssl.SSLError) as exc:
            LOGGER.debug("[%s] TLS probe on port %s failed: %s", host, port, exc)
            return None
        if not der:
            return None
        try:
            return CertificateRecord.from_der(der)
        except ValueError as exc:
            LOGGER.debug("[%s] Served certificate could not be parsed: %s", host, exc)
            return None


class ReasonCode(Enum):
    """Why a domain group needs a new certificate."""

    MISSING = "missing"
    EXPIRING = "expiring"
    SAN_MISMATCH = "san-mismatch"
    LOCAL_UNTRUSTED = "local-untrusted"
    SERVED_ABSENT = "served-absent"
    SERVED_UNTRUSTED = "served-untrusted"


@dataclass(frozen=True)
class InspectionReason:
    """A single failed check."""

    code: ReasonCode
    message: str


@dataclass(frozen=True)
class Inspection:
    """Outcome of inspecting one domain group."""

    primary: str
    reasons: tuple[InspectionReason, ...]
    local: CertificateRecord | None
    served: CertificateRecord | None

    @property
    def needs_action(self) -> bool:
        """Return True when any check failed."""
        return bool(self.reasons)

    @property
    def codes(self) -> frozenset[ReasonCode]:
        """Return the set of failed check codes."""
        return frozenset(reason.code for reason in self.reasons)

    @property
    def served_matches_local(self) -> bool:
        """Return True when the served and local fingerprints agree."""
        return (
            self.local is not None
            and self.served is not None
            and self.local.fingerprint == self.served.fingerprint
        )


class IssuerPolicy:
    """Decide whether an issuer string denotes a production certificate."""

    def __init__(self, production_issuer: str, deny_patterns: Iterable[str]) -> None:
        """Store the expected issuer substring and the deny list."""
        self.production_issuer = production_issuer.lower()
        self.deny_patterns = tuple(pattern.lower() for pattern in deny_patterns)

    @classmethod
    def from_config(cls, trust: TrustConfig) -> IssuerPolicy:
        """Build the policy from configuration."""
        return cls(trust.production_issuer, trust.deny_patterns)

    def is_trusted(self, issuer: str | None) -> bool:
        """Return True for non-empty production issuers outside the deny list."""
        if not issuer:
            return False
        lowered = issuer.lower()
        if any(pattern in lowered for pattern in self.deny_patterns):
            return False
        return self.production_issuer in lowered


class CertificateInspector:
    """Run the local and served certificate checks for a domain group."""

    def __init__(self, policy: IssuerPolicy, renew_days: int = 30) -> None:
        """Capture the issuer policy and renewal threshold in days."""
        self.policy = policy
        self.renew_days = renew_days

    def inspect(
        self,
        group: DomainGroup,
        local: CertificateRecord | None,
        served: CertificateRecord | None,
        *,
        now: datetime | None = None,
    ) -> Inspection:
        """Return every reason *group* needs a new certificate."""
        now = now or datetime.now(UTC)
        reasons: list[InspectionReason] = []

        if local is None:
            reasons.append(
                InspectionReason(ReasonCode.MISSING, "No existing certificate; will issue.")
            )
        else:
            left = local.days_remaining(now)
            if left < self.renew_days:
                reasons.append(
                    InspectionReason(
                        ReasonCode.EXPIRING,
                        f"Expiring in {left} day(s); threshold is {self.renew_days}.",
                    )
                )
            wanted = group.domain_set
            if local.sans != wanted:
                have = " ".join(sorted(local.sans)) or "-"
                want = " ".join(sorted(wanted))
                reasons.append(
                    InspectionReason(
                        ReasonCode.SAN_MISMATCH,
                        f"SAN set changed (have: {have} | want: {want}).",
                    )
                )
            if not self.policy.is_trusted(local.issuer):
                reasons.append(
                    InspectionReason(
                        ReasonCode.LOCAL_UNTRUSTED,
                        f"Local issuer is staging/untrusted ({local.issuer or 'unknown'}).",
                    )
                )

        if served is None:
            reasons.append(
                InspectionReason(
                    ReasonCode.SERVED_ABSENT,
                    "No certificate observed on port 443 (unreachable or still propagating).",
                )
            )
        elif not self.policy.is_trusted(served.issuer):
            reasons.append(
                InspectionReason(
                    ReasonCode.SERVED_UNTRUSTED,
                    f"Served issuer is not a production issuer ({served.issuer or 'unknown'}).",
                )
            )

        return Inspection(
            primary=group.primary,
            reasons=tuple(reasons),
            local=local,
            served=served,
        )


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CertificateInspector",
    "CertificateRecord",
    "Inspection",
    "InspectionReason",
    "IssuerPolicy",
    "ReasonCode",
    "ServedCertificateProbe",
    "TLSMaterial",
    "lineage_dir",
    "lineage_material",
    "load_local_record",
]
