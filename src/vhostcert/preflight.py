"""Webroot preflight: prove a domain serves its document root over HTTP.

Before spending a rate-limited issuance request, a random token is written
under ``{webroot}/.well-known/acme-challenge/`` and fetched back through the
domain. Any mismatch (wrong docroot, a redirect elsewhere, a proxy swallowing
the path) fails locally instead of at the certificate authority.
"""
from __future__ import annotations

import logging
import secrets
import warnings
from dataclasses import dataclass
from pathlib import Path

import requests
import urllib3

from .vhosts import DomainGroup

LOGGER = logging.getLogger(__name__)

CHALLENGE_PATH = Path(".well-known") / "acme-challenge"
HTTPS_OK_STATUSES = frozenset({401, 403})


@dataclass(frozen=True)
class PreflightResult:
    """Outcome of probing one domain."""

    domain: str
    webroot: Path
    ok: bool
    detail: str


@dataclass(frozen=True)
class GroupPreflight:
    """Outcome of probing every domain of a group."""

    primary: str
    results: tuple[PreflightResult, ...]

    @property
    def ok(self) -> bool:
        """Return True only when every domain passed."""
        return bool(self.results) and all(result.ok for result in self.results)

    @property
    def failures(self) -> tuple[PreflightResult, ...]:
        """Return the failing results."""
        return tuple(result for result in self.results if not result.ok)


class WebrootProber:
    """Write-then-fetch probe of a domain's HTTP document root."""

    def __init__(
        self,
        *,
        timeout: float = 8.0,
        session: requests.Session | None = None,
    ) -> None:
        """Use *session* (or a fresh one) with a per-request *timeout*."""
        self.timeout = timeout
        self.session = session or requests.Session()

    def probe(self, domain: str, webroot: Path) -> PreflightResult:
        """Return whether ``http://{domain}`` serves files placed in *webroot*."""
        if not webroot.is_dir():
            return PreflightResult(domain, webroot, False, f"Webroot {webroot} does not exist.")

        token = secrets.token_urlsafe(24)
        payload = secrets.token_hex(32).encode("ascii")
        challenge_dir = webroot / CHALLENGE_PATH
        created = _missing_parents(challenge_dir, stop=webroot)
        probe_file = challenge_dir / f"{token}.txt"
        try:
            try:
                challenge_dir.mkdir(parents=True, exist_ok=True)
                probe_file.write_bytes(payload)
                probe_file.chmod(0o644)
            except OSError as exc:
                return PreflightResult(domain, webroot, False, f"Cannot write probe file: {exc}")
            url = f"http://{domain}/{CHALLENGE_PATH.as_posix()}/{token}.txt"
            try:
                response = self._fetch_token(url)
            except requests.RequestException as exc:
                return PreflightResult(domain, webroot, False, f"GET {url} failed: {exc}")
            if response.status_code != 200:
                return PreflightResult(
                    domain, webroot, False, f"GET {url} returned HTTP {response.status_code}."
                )
            if response.content != payload:
                return PreflightResult(
                    domain, webroot, False, f"GET {url} returned content from another docroot."
                )
            return PreflightResult(domain, webroot, True, f"Served from {webroot}.")
        finally:
            probe_file.unlink(missing_ok=True)
            for directory in created:
                try:
                    directory.rmdir()
                except OSError:
                    break

    def _fetch_token(self, url: str) -> requests.Response:
        # HTTP-01 validators ignore certificate errors after a redirect to HTTPS.
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", urllib3.exceptions.InsecureRequestWarning)
            return self.session.get(url, timeout=self.timeout, verify=False)  # noqa: S501

    def probe_group(self, group: DomainGroup) -> GroupPreflight:
        """Probe every domain of *group* against its resolved webroot."""
        results: list[PreflightResult] = []
        for domain in group.domains:
            result = self.probe(domain, group.webroot_for(domain))
            level = logging.INFO if result.ok else logging.WARNING
            LOGGER.log(level, "[%s] Preflight %s: %s", group.primary, domain, result.detail)
            results.append(result)
        return GroupPreflight(primary=group.primary, results=tuple(results))

    def detect_proxy(self, domain: str) -> bool:
        """Return True when ``http://{domain}/`` answers through Cloudflare."""
        try:
            response = self.session.head(f"http://{domain}/", timeout=self.timeout)
        except requests.RequestException:
            return False
        server = response.headers.get("Server", "")
        return "cloudflare" in server.lower() or "CF-Ray" in response.headers

    def https_ok(self, domain: str) -> bool:
        """Return True when ``https://{domain}/`` answers with a usable status."""
        try:
            response = self.session.get(f"https://{domain}/", timeout=self.timeout)
        except requests.RequestException:
            return False
        status = response.status_code
        return 200 <= status < 400 or status in HTTPS_OK_STATUSES


def _missing_parents(directory: Path, *, stop: Path) -> list[Path]:
    """Return directories between *stop* and *directory* that do not exist yet.

    The list is ordered deepest first so it can be removed in order.
    """
    missing: list[Path] = []
    current = directory
    while current != stop and not current.exists():
        missing.append(current)
        current = current.parent
    return missing


__all__ = ["GroupPreflight", "PreflightResult", "WebrootProber"]
