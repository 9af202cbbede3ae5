"""Systemd provider used for last-resort web server restarts."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


class SystemdError(RuntimeError):
    """Raised when systemctl operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Restart web server units through ``systemctl``."""

    systemctl_bin: str = "systemctl"
    timeout: float | None = 120.0

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        args = [self.systemctl_bin, "restart", unit]
        try:
            result = subprocess.run(  # noqa: S603, S607
                args,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SystemdError(
                f"{self.systemctl_bin} restart timed out after {exc.timeout}s"
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise SystemdError(
                f"{self.systemctl_bin} restart failed (exit {result.returncode}): {message}"
            )
        return result

    def restart_first(self, units: Sequence[str]) -> str | None:
        """Restart the first unit in *units* that restarts cleanly.

        Returns the restarted unit, or ``None`` when every attempt failed.
        """
        for unit in units:
            try:
                self.restart(unit)
            except SystemdError as exc:
                LOGGER.debug("Restart of %s failed: %s", unit, exc)
                continue
            return unit
        return None


__all__ = ["SystemdError", "SystemdProvider"]
