"""Reconciliation driver: decide and carry out issue/renew/skip per domain group.

Each group walks ``Inspecting -> {Skip | Preflighting -> {Issuing -> Patching
-> VerifyingServed -> Done} | Abort}``. Groups run one after another; an error
in one group is logged with its primary domain and never stops its siblings.
There is no in-process retry: a group that aborts or fails is picked up again
by the next scheduled run, so the driver must be safe to re-invoke at any time.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .certs import (
    CertificateInspector,
    CertificateRecord,
    Inspection,
    ServedCertificateProbe,
    lineage_material,
    load_local_record,
)
from .logging import StructuredLogger
from .patcher import ConfigPatcher, PatchResult
from .preflight import GroupPreflight, WebrootProber
from .providers.apache import ApacheError, ApacheProvider
from .providers.certbot import CertbotProvider, IssuanceResult
from .providers.systemd import SystemdProvider
from .vhosts import DomainGroup, discover_groups

LOGGER = logging.getLogger(__name__)


class Verdict(Enum):
    """Per-group decision."""

    SKIP = "skip"
    RENEW = "renew"
    ISSUE = "issue"
    ABORT = "abort"

    @classmethod
    def for_inspection(cls, inspection: Inspection) -> Verdict:
        """Return the pre-preflight verdict implied by *inspection*."""
        if not inspection.needs_action:
            return cls.SKIP
        return cls.ISSUE if inspection.local is None else cls.RENEW


class GroupState(Enum):
    """States of the per-group state machine."""

    INSPECTING = "inspecting"
    PREFLIGHTING = "preflighting"
    ISSUING = "issuing"
    PATCHING = "patching"
    VERIFYING_SERVED = "verifying-served"
    DONE = "done"
    SKIPPED = "skipped"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileSettings:
    """Knobs the driver needs from configuration."""

    live_dir: Path = Path("/etc/letsencrypt/live")
    default_webroot: Path = Path("/var/www/html")
    staging: bool = False
    restart_units: tuple[str, ...] = ("apache2", "httpd")
    force_disable_default_ssl: bool = True
    proxy_settle_seconds: float = 0.0


@dataclass
class GroupOutcome:
    """What happened to one domain group during a run."""

    primary: str
    domains: tuple[str, ...]
    verdict: Verdict | None = None
    state: GroupState = GroupState.INSPECTING
    reasons: tuple[str, ...] = ()
    issued: bool = False
    authority_calls: int = 0
    changed_files: tuple[Path, ...] = ()
    reloaded: bool = False
    restarted: str | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "primary": self.primary,
            "domains": list(self.domains),
            "verdict": self.verdict.value if self.verdict else None,
            "state": self.state.value,
            "reasons": list(self.reasons),
            "issued": self.issued,
            "authority_calls": self.authority_calls,
            "changed_files": [str(path) for path in self.changed_files],
            "reloaded": self.reloaded,
            "restarted": self.restarted,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


@dataclass
class RunReport:
    """Aggregate of every group outcome in one pass."""

    outcomes: list[GroupOutcome] = field(default_factory=list)
    default_site_disabled: bool = False

    @property
    def verdicts(self) -> dict[str, Verdict | None]:
        """Return ``{primary: verdict}``."""
        return {outcome.primary: outcome.verdict for outcome in self.outcomes}

    @property
    def authority_calls(self) -> int:
        """Return the number of certificate requests made."""
        return sum(outcome.authority_calls for outcome in self.outcomes)

    @property
    def changed_files(self) -> tuple[Path, ...]:
        """Return every configuration file written during the pass."""
        return tuple(path for outcome in self.outcomes for path in outcome.changed_files)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "groups": [outcome.to_dict() for outcome in self.outcomes],
            "authority_calls": self.authority_calls,
            "default_site_disabled": self.default_site_disabled,
        }


class ReconciliationDriver:
    """Run one reconciliation pass over every discovered domain group."""

    def __init__(
        self,
        *,
        apache: ApacheProvider,
        certbot: CertbotProvider,
        systemd: SystemdProvider,
        inspector: CertificateInspector,
        served_probe: ServedCertificateProbe,
        prober: WebrootProber,
        patcher: ConfigPatcher,
        settings: ReconcileSettings,
        logger: StructuredLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Wire the driver to its collaborators."""
        self.apache = apache
        self.certbot = certbot
        self.systemd = systemd
        self.inspector = inspector
        self.served_probe = served_probe
        self.prober = prober
        self.patcher = patcher
        self.settings = settings
        self.logger = logger
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    def discover(self) -> tuple[list[Path], dict[str, DomainGroup]]:
        """Return the active config files and the groups derived from them.

        Raises :class:`~vhostcert.vhosts.DiscoveryError` when nothing is found.
        """
        files = self.apache.list_config_files()
        groups = discover_groups(files, default_webroot=self.settings.default_webroot)
        return files, groups

    def inspect(self, group: DomainGroup) -> Inspection:
        """Inspect local and served certificates for *group*."""
        local = load_local_record(self.settings.live_dir, group.primary)
        served = self.served_probe.fetch(group.primary)
        now = self._clock() if self._clock else None
        return self.inspector.inspect(group, local, served, now=now)

    def run(self) -> RunReport:
        """Reconcile every group once."""
        if self.logger is None:
            return self._run_pass()
        with self.logger.operation(
            "run",
            args={"staging": self.settings.staging},
            target={"kind": "host", "scope": "reconcile"},
        ) as op:
            report = self._run_pass()
            summary = (
                f"{len(report.outcomes)} group(s), "
                f"{report.authority_calls} certificate request(s)."
            )
            problems = [
                f"{outcome.primary}: {outcome.state.value}"
                for outcome in report.outcomes
                if outcome.state in (GroupState.ABORTED, GroupState.FAILED)
            ]
            if problems:
                op.warning(
                    summary,
                    warnings=problems,
                    changed=len(report.changed_files),
                    context=report.to_dict(),
                )
            else:
                op.success(summary, changed=len(report.changed_files), context=report.to_dict())
        return report

    # ------------------------------------------------------------------
    def _run_pass(self) -> RunReport:
        files, groups = self.discover()
        LOGGER.info("Discovered %d domain group(s) in %d config file(s).", len(groups), len(files))
        report = RunReport()
        for primary in sorted(groups):
            report.outcomes.append(self._run_group(groups[primary], files))

        if self.settings.force_disable_default_ssl:
            report.default_site_disabled = self._disable_default_site()

        issued = sum(1 for outcome in report.outcomes if outcome.issued)
        if issued == 0:
            LOGGER.info("All certificates valid; no issuance performed.")
        else:
            LOGGER.info("Issued %d certificate(s).", issued)
        return report

    def _run_group(self, group: DomainGroup, files: Sequence[Path]) -> GroupOutcome:
        outcome = GroupOutcome(primary=group.primary, domains=group.domains)
        target = {"kind": "domain-group", "primary": group.primary}
        args = {"domains": list(group.domains)}
        if self.logger is None:
            self._guarded(group, files, outcome)
            return outcome
        with self.logger.operation("reconcile group", args=args, target=target) as op:
            self._guarded(group, files, outcome)
            context = {"outcome": outcome.to_dict()}
            changed = len(outcome.changed_files)
            if outcome.errors:
                op.error(
                    f"{group.primary}: {outcome.state.value}",
                    errors=outcome.errors,
                    warnings=outcome.warnings,
                    changed=changed,
                    context=context,
                )
            elif outcome.warnings:
                op.warning(
                    f"{group.primary}: {outcome.state.value}",
                    warnings=outcome.warnings,
                    changed=changed,
                    context=context,
                )
            else:
                op.success(
                    f"{group.primary}: {outcome.state.value}", changed=changed, context=context
                )
        return outcome

    def _guarded(self, group: DomainGroup, files: Sequence[Path], outcome: GroupOutcome) -> None:
        try:
            self._reconcile(group, files, outcome)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error(
                "[%s] Unexpected failure in state %s: %s",
                group.primary,
                outcome.state.value,
                exc,
            )
            outcome.state = GroupState.FAILED
            outcome.errors.append(f"{type(exc).__name__}: {exc}")

    def _reconcile(self, group: DomainGroup, files: Sequence[Path], outcome: GroupOutcome) -> None:
        primary = group.primary
        outcome.state = GroupState.INSPECTING
        inspection = self.inspect(group)
        outcome.reasons = tuple(reason.message for reason in inspection.reasons)
        served_issuer = inspection.served.issuer if inspection.served else "unknown"
        LOGGER.info("[%s] Served issuer: %s", primary, served_issuer)

        outcome.verdict = Verdict.for_inspection(inspection)
        if outcome.verdict is Verdict.SKIP:
            LOGGER.info("[%s] Certificate valid and served; skipping issuance.", primary)
            self._verify_skip(group, files, inspection, outcome)
            outcome.state = GroupState.SKIPPED
            return

        for reason in inspection.reasons:
            LOGGER.info("[%s] %s (%s)", primary, reason.message, reason.code.value)

        outcome.state = GroupState.PREFLIGHTING
        preflight = self.prober.probe_group(group)
        if not preflight.ok:
            self._abort(preflight, outcome)
            return

        outcome.state = GroupState.ISSUING
        issuance = self._issue(group, outcome)
        if not issuance.success or issuance.material is None:
            outcome.state = GroupState.FAILED
            outcome.errors.append(f"certbot failed: {issuance.message}")
            LOGGER.error(
                "[%s] certbot failed (exit %s); will retry on next run: %s",
                primary,
                issuance.returncode,
                issuance.message,
            )
            return
        outcome.issued = True
        if not self.settings.staging:
            self._fix_renewal(primary, outcome)

        outcome.state = GroupState.PATCHING
        patch = self.patcher.apply(primary, issuance.material, files, names=group.domains)
        self._record_patch(patch, outcome)
        if _selftest_failed(patch):
            outcome.state = GroupState.FAILED
            LOGGER.error(
                "[%s] Patched config failed the self-test; not reloading or restarting.",
                primary,
            )
            return

        outcome.state = GroupState.VERIFYING_SERVED
        self._verify_served(group, outcome)
        self._settle_proxy(primary, outcome)
        outcome.state = GroupState.DONE

    def _issue(self, group: DomainGroup, outcome: GroupOutcome) -> IssuanceResult:
        webroots = {domain: group.webroot_for(domain) for domain in group.domains}
        endpoint = "staging" if self.settings.staging else "production"
        LOGGER.info(
            "[%s] Requesting %s certificate for %s.",
            group.primary,
            endpoint,
            ", ".join(group.domains),
        )
        outcome.authority_calls += 1
        return self.certbot.request(
            group.primary,
            group.domains,
            webroots,
            staging=self.settings.staging,
        )

    def _abort(self, preflight: GroupPreflight, outcome: GroupOutcome) -> None:
        outcome.verdict = Verdict.ABORT
        outcome.state = GroupState.ABORTED
        for failure in preflight.failures:
            message = f"preflight failed for {failure.domain}: {failure.detail}"
            outcome.warnings.append(message)
        LOGGER.warning(
            "[%s] Preflight failed for %s; no certificate requested for this group.",
            preflight.primary,
            ", ".join(failure.domain for failure in preflight.failures),
        )

    def _verify_skip(
        self,
        group: DomainGroup,
        files: Sequence[Path],
        inspection: Inspection,
        outcome: GroupOutcome,
    ) -> None:
        primary = group.primary
        material = lineage_material(self.settings.live_dir, primary)
        patch = self.patcher.apply(primary, material, files, names=group.domains)
        self._record_patch(patch, outcome)
        if inspection.served_matches_local or patch.reloaded or _selftest_failed(patch):
            return
        local_fp = inspection.local.fingerprint if inspection.local else "?"
        served_fp = inspection.served.fingerprint if inspection.served else "?"
        message = f"Served fingerprint {served_fp} differs from local {local_fp}; reloading."
        LOGGER.warning("[%s] %s", primary, message)
        outcome.warnings.append(message)
        try:
            self.apache.test_and_reload()
        except ApacheError as exc:
            outcome.errors.append(f"reload after drift failed: {exc}")
            LOGGER.error("[%s] Reload after fingerprint drift failed: %s", primary, exc)
            return
        outcome.reloaded = True

    def _fix_renewal(self, primary: str, outcome: GroupOutcome) -> None:
        try:
            self.certbot.ensure_production_renewal(primary)
        except OSError as exc:
            message = f"could not point renewal config at production: {exc}"
            LOGGER.warning("[%s] %s", primary, message)
            outcome.warnings.append(message)

    def _verify_served(self, group: DomainGroup, outcome: GroupOutcome) -> None:
        primary = group.primary
        local = load_local_record(self.settings.live_dir, primary)
        served = self.served_probe.fetch(primary)
        local_fp = local.fingerprint if local else None
        served_fp = served.fingerprint if served else None
        LOGGER.info(
            "[%s] Served fp (post-issue): %s | Local fp: %s",
            primary,
            served_fp or "?",
            local_fp or "?",
        )
        if _fingerprints_match(local, served):
            return
        message = "Served certificate still differs from the issued one; forcing full restart."
        LOGGER.warning("[%s] %s", primary, message)
        outcome.warnings.append(message)
        restarted = self.systemd.restart_first(self.settings.restart_units)
        outcome.restarted = restarted
        if restarted is None:
            outcome.warnings.append("restart failed for every configured unit")
            LOGGER.warning(
                "[%s] Could not restart any of: %s",
                primary,
                ", ".join(self.settings.restart_units),
            )

    def _settle_proxy(self, primary: str, outcome: GroupOutcome) -> None:
        delay = self.settings.proxy_settle_seconds
        if delay <= 0 or not self.prober.detect_proxy(primary):
            return
        LOGGER.warning(
            "[%s] Cloudflare proxy detected; waiting %.0fs, then probing.", primary, delay
        )
        self._sleep(delay)
        if self.prober.https_ok(primary):
            LOGGER.info("[%s] HTTPS OK after proxy settle.", primary)
            return
        message = "HTTPS check failed after proxy settle; may need more time."
        LOGGER.warning("[%s] %s", primary, message)
        outcome.warnings.append(message)

    def _record_patch(self, patch: PatchResult, outcome: GroupOutcome) -> None:
        outcome.changed_files = outcome.changed_files + patch.changed_files
        outcome.reloaded = outcome.reloaded or patch.reloaded
        if patch.error:
            outcome.errors.append(f"config patch: {patch.error}")

    def _disable_default_site(self) -> bool:
        try:
            disabled = self.apache.disable_default_site()
            if disabled:
                self.apache.test_and_reload()
        except ApacheError as exc:
            LOGGER.error("Disabling the default SSL site failed: %s", exc)
            return False
        return disabled


def _selftest_failed(patch: PatchResult) -> bool:
    return patch.changed and not patch.validated and patch.error is not None


def _fingerprints_match(
    local: CertificateRecord | None,
    served: CertificateRecord | None,
) -> bool:
    return local is not None and served is not None and local.fingerprint == served.fingerprint


__all__ = [
    "GroupOutcome",
    "GroupState",
    "ReconcileSettings",
    "ReconciliationDriver",
    "RunReport",
    "Verdict",
]
