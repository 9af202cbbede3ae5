"""Apache provider: config discovery, self-test and reload."""
from __future__ import annotations

import logging
import re
import shlex
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

CTL_CANDIDATES = ("apache2ctl", "apachectl", "httpd")
_CONF_REFERENCE_RE = re.compile(r"\((/[^()]+?):\d+\)\s*$")


class ApacheError(RuntimeError):
    """Raised when apache control operations fail."""


@dataclass(slots=True)
class ApacheProvider:
    """Wrap ``apachectl``-style binaries and the configured reload command."""

    ctl_bin: str = "apache2ctl"
    reload_command: str = "systemctl reload apache2"
    conf_dirs: Sequence[Path] = field(
        default_factory=lambda: (
            Path("/etc/apache2/sites-enabled"),
            Path("/etc/apache2/sites-available"),
            Path("/etc/httpd/conf.d"),
        )
    )
    default_ssl_site: Path = Path("/etc/apache2/sites-enabled/default-ssl.conf")
    snakeoil_marker: str = "/etc/ssl/certs/ssl-cert-snakeoil.pem"
    dissite_bin: str = "a2dissite"
    timeout: float | None = 60.0

    @staticmethod
    def detect_ctl(preferred: str | None = None) -> str | None:
        """Return the first available control binary, honouring *preferred*."""
        candidates = (preferred,) if preferred else CTL_CANDIDATES
        for candidate in candidates:
            if candidate and (Path(candidate).exists() or shutil.which(candidate)):
                return candidate
        return None

    def list_config_files(self) -> list[Path]:
        """Return the active virtual host configuration files.

        ``apachectl -S`` is authoritative; when it fails or lists nothing the
        configured directories are scanned for ``*.conf`` files instead.
        """
        try:
            result = self._run([self.ctl_bin, "-S"])
        except ApacheError as exc:
            LOGGER.warning("Falling back to directory scan: %s", exc)
        else:
            files = parse_vhost_dump(f"{result.stdout or ''}\n{result.stderr or ''}")
            if files:
                return files
            LOGGER.debug("%s -S listed no vhost files; scanning directories.", self.ctl_bin)
        return self._scan_conf_dirs()

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run the server's syntax self-test."""
        return self._run([self.ctl_bin, "-t"])

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload the server with the configured command."""
        return self._run(shlex.split(self.reload_command))

    def test_and_reload(self) -> subprocess.CompletedProcess[str]:
        """Reload only after a passing self-test; raises :class:`ApacheError` otherwise."""
        self.test_config()
        return self.reload()

    def disable_default_site(self) -> bool:
        """Disable the default SSL site when it still serves the snakeoil certificate.

        Returns True when the site was disabled.
        """
        site = self.default_ssl_site
        if not site.is_file():
            return False
        try:
            content = site.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            LOGGER.warning("Cannot read %s: %s", site, exc)
            return False
        if self.snakeoil_marker not in content:
            return False
        LOGGER.info("Disabling %s (snakeoil certificate).", site.name)
        try:
            self._run([self.dissite_bin, site.name])
        except ApacheError as exc:
            if not site.is_symlink():
                raise
            LOGGER.debug("%s unavailable (%s); unlinking %s.", self.dissite_bin, exc, site)
            site.unlink()
        return True

    # ------------------------------------------------------------------
    def _scan_conf_dirs(self) -> list[Path]:
        found: set[Path] = set()
        for directory in self.conf_dirs:
            if not directory.is_dir():
                continue
            for path in directory.glob("*.conf"):
                if path.is_file():
                    found.add(path)
        return sorted(found)

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = list(args)
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise ApacheError(f"{command[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ApacheError(f"{' '.join(command)} timed out after {exc.timeout}s") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ApacheError(
                f"{' '.join(command)} failed (exit {result.returncode}): {message}"
            )
        return result


def parse_vhost_dump(output: str) -> list[Path]:
    """Extract configuration file paths from ``apachectl -S`` output."""
    files: set[Path] = set()
    for line in output.splitlines():
        match = _CONF_REFERENCE_RE.search(line.strip())
        if match:
            files.add(Path(match.group(1)))
    return sorted(files)


__all__ = ["ApacheError", "ApacheProvider", "parse_vhost_dump"]
