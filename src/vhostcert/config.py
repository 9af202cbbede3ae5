"""Configuration loader for vhostcert.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``/etc/vhostcert/config.yml`` (or an override path).
3. Environment variables prefixed with ``VHOSTCERT_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export VHOSTCERT_RENEW_DAYS=21
    export VHOSTCERT_STAGING=true
    export VHOSTCERT_CERTBOT__LIVE_DIR=/srv/le/live

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure
    raise RuntimeError(
        "PyYAML is required to load vhostcert configuration. Install with "
        "`pip install vhostcert` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "VHOSTCERT_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

LE_PRODUCTION_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
LE_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ApacheConfig:
    """Web server discovery and control settings."""

    ctl_bin: str | None = None
    conf_dirs: tuple[Path, ...] = (
        Path("/etc/apache2/sites-enabled"),
        Path("/etc/apache2/sites-available"),
        Path("/etc/httpd/conf.d"),
    )
    default_ssl_site: Path = Path("/etc/apache2/sites-enabled/default-ssl.conf")
    snakeoil_marker: str = "/etc/ssl/certs/ssl-cert-snakeoil.pem"
    dissite_bin: str = "a2dissite"
    timeout: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ctl_bin": self.ctl_bin,
            "conf_dirs": [str(path) for path in self.conf_dirs],
            "default_ssl_site": str(self.default_ssl_site),
            "snakeoil_marker": self.snakeoil_marker,
            "dissite_bin": self.dissite_bin,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class CertbotConfig:
    """Certificate authority client settings."""

    bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    renewal_dir: Path = Path("/etc/letsencrypt/renewal")
    production_server: str = LE_PRODUCTION_DIRECTORY
    staging_server: str = LE_STAGING_DIRECTORY
    timeout: float = 900.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "live_dir": str(self.live_dir),
            "renewal_dir": str(self.renewal_dir),
            "production_server": self.production_server,
            "staging_server": self.staging_server,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class TrustConfig:
    """Issuer strings accepted as production certificates."""

    production_issuer: str = "Let's Encrypt"
    deny_patterns: tuple[str, ...] = ("staging", "fake", "happy hacker")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "production_issuer": self.production_issuer,
            "deny_patterns": list(self.deny_patterns),
        }


@dataclass(frozen=True)
class ProbeConfig:
    """Timeouts for network probes."""

    http_timeout: float = 8.0
    tls_timeout: float | None = None
    proxy_settle_seconds: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "http_timeout": self.http_timeout,
            "tls_timeout": self.tls_timeout,
            "proxy_settle_seconds": self.proxy_settle_seconds,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vhostcert."""

    config_file: Path
    runtime_dir: Path
    logs_dir: Path
    lock_ttl: float
    contact_email: str
    renew_days: int
    staging: bool
    reload_command: str
    restart_units: tuple[str, ...]
    force_disable_default_ssl: bool
    default_webroot: Path
    require_root: bool
    apache: ApacheConfig
    certbot: CertbotConfig
    trust: TrustConfig
    probes: ProbeConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "runtime_dir": str(self.runtime_dir),
            "logs_dir": str(self.logs_dir),
            "lock_ttl": self.lock_ttl,
            "contact_email": self.contact_email,
            "renew_days": self.renew_days,
            "staging": self.staging,
            "reload_command": self.reload_command,
            "restart_units": list(self.restart_units),
            "force_disable_default_ssl": self.force_disable_default_ssl,
            "default_webroot": str(self.default_webroot),
            "require_root": self.require_root,
            "apache": self.apache.to_dict(),
            "certbot": self.certbot.to_dict(),
            "trust": self.trust.to_dict(),
            "probes": self.probes.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vhostcert/config.yml",
    "runtime_dir": "/run/vhostcert",
    "logs_dir": "/var/log/vhostcert",
    "lock_ttl": 3600.0,
    "contact_email": "",
    "renew_days": 30,
    "staging": False,
    "reload_command": "systemctl reload apache2",
    "restart_units": ["apache2", "httpd"],
    "force_disable_default_ssl": True,
    "default_webroot": "/var/www/html",
    "require_root": True,
    "apache": {
        "ctl_bin": None,
        "conf_dirs": [
            "/etc/apache2/sites-enabled",
            "/etc/apache2/sites-available",
            "/etc/httpd/conf.d",
        ],
        "default_ssl_site": "/etc/apache2/sites-enabled/default-ssl.conf",
        "snakeoil_marker": "/etc/ssl/certs/ssl-cert-snakeoil.pem",
        "dissite_bin": "a2dissite",
        "timeout": 60.0,
    },
    "certbot": {
        "bin": "certbot",
        "live_dir": "/etc/letsencrypt/live",
        "renewal_dir": "/etc/letsencrypt/renewal",
        "production_server": LE_PRODUCTION_DIRECTORY,
        "staging_server": LE_STAGING_DIRECTORY,
        "timeout": 900.0,
    },
    "trust": {
        "production_issuer": "Let's Encrypt",
        "deny_patterns": ["staging", "fake", "happy hacker"],
    },
    "probes": {
        "http_timeout": 8.0,
        "tls_timeout": None,
        "proxy_settle_seconds": 60.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_KEYS: dict[str, set[str]] = {
    "apache": {
        "ctl_bin",
        "conf_dirs",
        "default_ssl_site",
        "snakeoil_marker",
        "dissite_bin",
        "timeout",
    },
    "certbot": {
        "bin",
        "live_dir",
        "renewal_dir",
        "production_server",
        "staging_server",
        "timeout",
    },
    "trust": {"production_issuer", "deny_patterns"},
    "probes": {"http_timeout", "tls_timeout", "proxy_settle_seconds"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _NESTED_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    renew_days = _expect_int(raw.get("renew_days"), "renew_days", default=30)
    if renew_days < 0:
        raise ConfigError("renew_days must be non-negative.")

    email = raw.get("contact_email")
    if email not in (None, "") and (not isinstance(email, str) or "@" not in email):
        raise ConfigError(f"contact_email must be an email address. Got {email!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    apache_mapping = _as_dict(raw.get("apache"), "apache")
    ctl_bin_value = apache_mapping.get("ctl_bin")
    conf_dirs_raw = apache_mapping.get("conf_dirs")
    conf_dirs = (
        tuple(_to_path(entry) for entry in _as_sequence(conf_dirs_raw, "apache.conf_dirs"))
        if conf_dirs_raw is not None
        else ApacheConfig().conf_dirs
    )
    apache = ApacheConfig(
        ctl_bin=str(ctl_bin_value) if ctl_bin_value else None,
        conf_dirs=conf_dirs,
        default_ssl_site=_to_path(
            apache_mapping.get("default_ssl_site", ApacheConfig().default_ssl_site)
        ),
        snakeoil_marker=str(
            apache_mapping.get("snakeoil_marker", ApacheConfig().snakeoil_marker)
        ),
        dissite_bin=str(apache_mapping.get("dissite_bin", "a2dissite")),
        timeout=_expect_positive_float(
            apache_mapping.get("timeout"), "apache.timeout", default=60.0
        ),
    )

    certbot_mapping = _as_dict(raw.get("certbot"), "certbot")
    certbot = CertbotConfig(
        bin=str(certbot_mapping.get("bin", "certbot")),
        live_dir=_to_path(certbot_mapping.get("live_dir", "/etc/letsencrypt/live")),
        renewal_dir=_to_path(certbot_mapping.get("renewal_dir", "/etc/letsencrypt/renewal")),
        production_server=str(
            certbot_mapping.get("production_server", LE_PRODUCTION_DIRECTORY)
        ),
        staging_server=str(certbot_mapping.get("staging_server", LE_STAGING_DIRECTORY)),
        timeout=_expect_positive_float(
            certbot_mapping.get("timeout"), "certbot.timeout", default=900.0
        ),
    )

    trust_mapping = _as_dict(raw.get("trust"), "trust")
    production_issuer = str(trust_mapping.get("production_issuer", "Let's Encrypt")).strip()
    if not production_issuer:
        raise ConfigError("trust.production_issuer must be a non-empty string.")
    deny_raw = trust_mapping.get("deny_patterns")
    deny_patterns = (
        tuple(
            str(entry).strip().lower()
            for entry in _as_sequence(deny_raw, "trust.deny_patterns")
            if str(entry).strip()
        )
        if deny_raw is not None
        else TrustConfig().deny_patterns
    )
    trust = TrustConfig(production_issuer=production_issuer, deny_patterns=deny_patterns)

    probes_mapping = _as_dict(raw.get("probes"), "probes")
    tls_timeout_raw = probes_mapping.get("tls_timeout")
    probes = ProbeConfig(
        http_timeout=_expect_positive_float(
            probes_mapping.get("http_timeout"), "probes.http_timeout", default=8.0
        ),
        tls_timeout=(
            _expect_positive_float(tls_timeout_raw, "probes.tls_timeout", default=10.0)
            if tls_timeout_raw is not None
            else None
        ),
        proxy_settle_seconds=_expect_non_negative_float(
            probes_mapping.get("proxy_settle_seconds"),
            "probes.proxy_settle_seconds",
            default=60.0,
        ),
    )

    restart_raw = raw.get("restart_units")
    restart_units = (
        tuple(str(unit) for unit in _as_sequence(restart_raw, "restart_units") if str(unit))
        if restart_raw is not None
        else ("apache2", "httpd")
    )

    reload_command = str(raw.get("reload_command") or "").strip()
    if not reload_command:
        raise ConfigError("reload_command must be a non-empty command line.")

    lock_ttl = _expect_positive_float(raw.get("lock_ttl"), "lock_ttl", default=3600.0)
    if certbot.timeout >= lock_ttl:
        raise ConfigError(
            f"certbot.timeout ({certbot.timeout}) must be shorter than lock_ttl ({lock_ttl})."
        )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        lock_ttl=lock_ttl,
        contact_email=str(raw.get("contact_email") or ""),
        renew_days=_expect_int(raw.get("renew_days"), "renew_days", default=30),
        staging=_expect_bool(raw.get("staging"), "staging", default=False),
        reload_command=reload_command,
        restart_units=restart_units,
        force_disable_default_ssl=_expect_bool(
            raw.get("force_disable_default_ssl"), "force_disable_default_ssl", default=True
        ),
        default_webroot=_to_path(raw.get("default_webroot")),
        require_root=_expect_bool(raw.get("require_root"), "require_root", default=True),
        apache=apache,
        certbot=certbot,
        trust=trust,
        probes=probes,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, str):
        # Environment overrides arrive as plain strings; accept comma separated lists.
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, bytes) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off", ""}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ApacheConfig",
    "CertbotConfig",
    "ConfigError",
    "LE_PRODUCTION_DIRECTORY",
    "LE_STAGING_DIRECTORY",
    "ProbeConfig",
    "TrustConfig",
    "load_config",
]
