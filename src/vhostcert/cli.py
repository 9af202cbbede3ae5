"""Typer-powered command line for ``vhostcert``.

Running ``vhostcert`` without a subcommand performs one reconciliation pass,
exactly like ``vhostcert run``. ``discover`` and ``status`` are read-only: they
neither take the run lock nor touch configuration or certificates.
"""
from __future__ import annotations

import os
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .certs import CertificateInspector, IssuerPolicy, ServedCertificateProbe
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockBusyError, LockError, LockManager
from .logging import StructuredLogger, configure_console_logging
from .patcher import ConfigPatcher
from .preflight import WebrootProber
from .providers import ApacheProvider, CertbotProvider, SystemdProvider
from .reconcile import GroupState, ReconcileSettings, ReconciliationDriver, RunReport, Verdict
from .vhosts import DiscoveryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to vhostcert's YAML config file.",
)

_STATE_STYLE = {
    GroupState.DONE: "[green]done[/green]",
    GroupState.SKIPPED: "[green]skipped[/green]",
    GroupState.ABORTED: "[yellow]aborted[/yellow]",
    GroupState.FAILED: "[red]failed[/red]",
}
_VERDICT_STYLE = {
    Verdict.SKIP: "[green]skip[/green]",
    Verdict.RENEW: "[yellow]renew[/yellow]",
    Verdict.ISSUE: "[yellow]issue[/yellow]",
    Verdict.ABORT: "[red]abort[/red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Certificate lifecycle reconciliation for Apache virtual hosts.

        Discovers every domain served by Apache, issues or renews certificates
        through certbot when needed, and wires them into the configuration.
        Safe to run repeatedly from cron or a systemd timer.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    apache: ApacheProvider
    certbot: CertbotProvider
    systemd: SystemdProvider
    driver: ReconciliationDriver


def _fail(message: str, code: ExitCode) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=int(code))


def _build_runtime(config: AppConfig) -> RuntimeContext:
    logger = StructuredLogger(config.logs_dir)
    apache = ApacheProvider(
        ctl_bin=ApacheProvider.detect_ctl(config.apache.ctl_bin)
        or config.apache.ctl_bin
        or "apache2ctl",
        reload_command=config.reload_command,
        conf_dirs=config.apache.conf_dirs,
        default_ssl_site=config.apache.default_ssl_site,
        snakeoil_marker=config.apache.snakeoil_marker,
        dissite_bin=config.apache.dissite_bin,
        timeout=config.apache.timeout,
    )
    certbot = CertbotProvider(
        certbot_bin=config.certbot.bin,
        email=config.contact_email,
        live_dir=config.certbot.live_dir,
        renewal_dir=config.certbot.renewal_dir,
        production_server=config.certbot.production_server,
        staging_server=config.certbot.staging_server,
        timeout=config.certbot.timeout,
    )
    systemd = SystemdProvider(timeout=config.apache.timeout)
    driver = ReconciliationDriver(
        apache=apache,
        certbot=certbot,
        systemd=systemd,
        inspector=CertificateInspector(
            IssuerPolicy.from_config(config.trust),
            renew_days=config.renew_days,
        ),
        served_probe=ServedCertificateProbe(timeout=config.probes.tls_timeout),
        prober=WebrootProber(timeout=config.probes.http_timeout),
        patcher=ConfigPatcher(apache, default_docroot=config.default_webroot),
        settings=ReconcileSettings(
            live_dir=config.certbot.live_dir,
            default_webroot=config.default_webroot,
            staging=config.staging,
            restart_units=config.restart_units,
            force_disable_default_ssl=config.force_disable_default_ssl,
            proxy_settle_seconds=config.probes.proxy_settle_seconds,
        ),
        logger=logger,
    )
    return RuntimeContext(
        config=config,
        logger=logger,
        locks=LockManager(config.runtime_dir, config.lock_ttl),
        apache=apache,
        certbot=certbot,
        systemd=systemd,
        driver=driver,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        _fail(f"Configuration error: {exc}", ExitCode.VALIDATION)
    runtime = _build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _is_root() -> bool:
    return os.geteuid() == 0


def _check_environment(runtime: RuntimeContext) -> list[str]:
    """Return the problems that prevent a reconciliation pass."""
    problems: list[str] = []
    config = runtime.config
    if config.require_root and not _is_root():
        problems.append("Run as root (or set require_root: false).")
    if ApacheProvider.detect_ctl(config.apache.ctl_bin) is None:
        wanted = config.apache.ctl_bin or "apache2ctl/apachectl/httpd"
        problems.append(f"Apache control binary not found ({wanted}).")
    if not runtime.certbot.available():
        problems.append(f"certbot not found ({runtime.certbot.certbot_bin}).")
    return problems


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the vhostcert version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Emit debug-level log lines.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"vhostcert {__version__}")
        raise typer.Exit(code=0)

    configure_console_logging(verbose)
    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        _run_pass(_get_runtime(ctx))


@app.command()
def run(ctx: typer.Context) -> None:
    """Reconcile certificates for every discovered virtual host."""
    _run_pass(_get_runtime(ctx))


@app.command()
def discover(ctx: typer.Context) -> None:
    """List the domain groups derived from the active Apache configuration."""
    runtime = _get_runtime(ctx)
    try:
        _files, groups = runtime.driver.discover()
    except DiscoveryError as exc:
        _fail(str(exc), ExitCode.ENVIRONMENT)

    table = Table(title="Domain groups")
    table.add_column("Primary", style="bold")
    table.add_column("Aliases")
    table.add_column("Webroot")
    table.add_column("Sources")
    for primary in sorted(groups):
        group = groups[primary]
        overrides = [
            f"{domain} -> {path}" for domain, path in sorted(group.webroot_by_domain.items())
        ]
        table.add_row(
            primary,
            ", ".join(sorted(group.aliases)) or "-",
            "\n".join([str(group.docroot), *overrides]),
            "\n".join(str(path) for path in sorted(group.sources)) or "-",
        )
    console.print(table)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show what a reconciliation pass would decide, without acting."""
    runtime = _get_runtime(ctx)
    try:
        _files, groups = runtime.driver.discover()
    except DiscoveryError as exc:
        _fail(str(exc), ExitCode.ENVIRONMENT)

    table = Table(title="Certificate status")
    table.add_column("Primary", style="bold")
    table.add_column("Verdict")
    table.add_column("Days left", justify="right")
    table.add_column("Issuer")
    table.add_column("Reasons")
    for primary in sorted(groups):
        group = groups[primary]
        inspection = runtime.driver.inspect(group)
        local = inspection.local
        verdict = Verdict.for_inspection(inspection)
        table.add_row(
            primary,
            _VERDICT_STYLE[verdict],
            str(local.days_remaining()) if local else "-",
            local.issuer if local else "-",
            "\n".join(reason.message for reason in inspection.reasons) or "-",
        )
    console.print(table)


def _run_pass(runtime: RuntimeContext) -> None:
    problems = _check_environment(runtime)
    if problems:
        for problem in problems:
            console.print(f"[red]{problem}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT))

    try:
        with runtime.locks.run_lock():
            report = runtime.driver.run()
    except LockBusyError as exc:
        console.print(f"[yellow]Another run is in progress; exiting. ({exc})[/yellow]")
        raise typer.Exit(code=int(ExitCode.OK)) from exc
    except LockError as exc:
        _fail(f"Cannot acquire run lock: {exc}", ExitCode.ENVIRONMENT)
    except DiscoveryError as exc:
        _fail(str(exc), ExitCode.ENVIRONMENT)

    _render_report(report)


def _render_report(report: RunReport) -> None:
    table = Table(title="Reconciliation summary")
    table.add_column("Primary", style="bold")
    table.add_column("Verdict")
    table.add_column("State")
    table.add_column("Changed files")
    table.add_column("Notes")
    for outcome in report.outcomes:
        verdict = _VERDICT_STYLE.get(outcome.verdict, "-") if outcome.verdict else "-"
        notes = [*outcome.errors, *outcome.warnings]
        table.add_row(
            outcome.primary,
            verdict,
            _STATE_STYLE.get(outcome.state, outcome.state.value),
            "\n".join(str(path) for path in outcome.changed_files) or "-",
            "\n".join(notes) or "-",
        )
    console.print(table)
    if report.default_site_disabled:
        console.print("Default SSL site disabled (snakeoil certificate).")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
