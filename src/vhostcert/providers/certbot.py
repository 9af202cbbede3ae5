"""Certbot provider: the certificate authority collaborator."""
from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..certs import TLSMaterial, lineage_material
from ..config import LE_PRODUCTION_DIRECTORY, LE_STAGING_DIRECTORY

LOGGER = logging.getLogger(__name__)

_SERVER_LINE_RE = re.compile(r"^server\s*=.*$", re.MULTILINE)


class CertbotError(RuntimeError):
    """Raised when certbot cannot be invoked at all."""


@dataclass(frozen=True)
class IssuanceResult:
    """Outcome of one certificate request."""

    success: bool
    returncode: int
    message: str
    material: TLSMaterial | None = None


@dataclass(slots=True)
class CertbotProvider:
    """Request certificates through ``certbot certonly --webroot``."""

    certbot_bin: str = "certbot"
    email: str = ""
    live_dir: Path = Path("/etc/letsencrypt/live")
    renewal_dir: Path = Path("/etc/letsencrypt/renewal")
    production_server: str = LE_PRODUCTION_DIRECTORY
    staging_server: str = LE_STAGING_DIRECTORY
    timeout: float | None = 900.0

    def available(self) -> bool:
        """Return True when the certbot binary can be located."""
        return Path(self.certbot_bin).exists() or shutil.which(self.certbot_bin) is not None

    def build_args(
        self,
        primary: str,
        domains: Sequence[str],
        webroots: Mapping[str, Path],
        *,
        staging: bool = False,
    ) -> list[str]:
        """Return the certbot command line for *domains* of lineage *primary*."""
        args = [
            self.certbot_bin,
            "certonly",
            "--non-interactive",
            "--agree-tos",
            "--cert-name",
            primary,
            "-a",
            "webroot",
        ]
        if self.email:
            args.extend(["--email", self.email])
        else:
            args.append("--register-unsafely-without-email")
        if staging:
            args.append("--staging")
        else:
            args.extend(["--server", self.production_server])
        for domain in domains:
            args.extend(["-w", str(webroots[domain]), "-d", domain])
        args.extend(["--expand", "--force-renewal"])
        return args

    def request(
        self,
        primary: str,
        domains: Sequence[str],
        webroots: Mapping[str, Path],
        *,
        staging: bool = False,
    ) -> IssuanceResult:
        """Request one certificate covering *domains*.

        A non-zero exit is reported as an unsuccessful result rather than an
        exception; the next scheduled run retries. A request that outlives
        :attr:`timeout` is killed and reported the same way.
        """
        args = self.build_args(primary, domains, webroots, staging=staging)
        try:
            result = self._run(args)
        except subprocess.TimeoutExpired as exc:
            LOGGER.error("[%s] certbot killed after %ss.", primary, exc.timeout)
            return IssuanceResult(
                success=False,
                returncode=-1,
                message=f"certbot timed out after {exc.timeout}s",
            )
        output = (result.stderr or result.stdout or "").strip()
        if result.returncode != 0:
            return IssuanceResult(
                success=False,
                returncode=result.returncode,
                message=output or f"certbot exited with {result.returncode}",
            )
        material = lineage_material(self.live_dir, primary)
        if not (material.certificate.is_file() and material.key.is_file()):
            return IssuanceResult(
                success=False,
                returncode=result.returncode,
                message=f"certbot succeeded but {material.certificate.parent} is incomplete.",
            )
        return IssuanceResult(
            success=True,
            returncode=result.returncode,
            message=output,
            material=material,
        )

    def ensure_production_renewal(self, primary: str) -> bool:
        """Point the lineage's renewal config at the production directory.

        Returns True when the renewal file was rewritten.
        """
        path = self.renewal_dir / f"{primary}.conf"
        if not path.is_file():
            return False
        original = path.read_text(encoding="utf-8")
        updated = original.replace(self.staging_server, self.production_server)
        updated = _SERVER_LINE_RE.sub(f"server = {self.production_server}", updated)
        if updated == original:
            return False
        _atomic_write(path, updated)
        LOGGER.info("[%s] Renewal config now targets %s.", primary, self.production_server)
        return True

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise CertbotError(f"{args[0]} not found: {exc}") from exc


def _atomic_write(path: Path, content: str) -> None:
    mode = path.stat().st_mode
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = ["CertbotError", "CertbotProvider", "IssuanceResult"]
