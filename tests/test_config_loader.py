"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostcert.config import (
    LE_PRODUCTION_DIRECTORY,
    AppConfig,
    ConfigError,
    load_config,
)


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.renew_days == 30
    assert config.staging is False
    assert config.reload_command == "systemctl reload apache2"
    assert config.restart_units == ("apache2", "httpd")
    assert config.default_webroot == Path("/var/www/html")
    assert config.runtime_dir == Path("/run/vhostcert")
    assert config.lock_ttl == 3600.0
    assert config.apache.timeout == 60.0
    assert config.certbot.timeout == 900.0
    assert config.certbot.live_dir == Path("/etc/letsencrypt/live")
    assert config.certbot.production_server == LE_PRODUCTION_DIRECTORY
    assert config.trust.production_issuer == "Let's Encrypt"
    assert "staging" in config.trust.deny_patterns
    assert config.probes.tls_timeout is None


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "contact_email: ops@example.org\n"
        "renew_days: 21\n"
        "staging: true\n"
        "restart_units: [httpd]\n"
        "apache:\n"
        "  ctl_bin: /usr/sbin/apachectl\n"
        "  conf_dirs: [/etc/httpd/conf.d]\n"
        "certbot:\n"
        "  live_dir: /srv/le/live\n"
        "probes:\n"
        "  proxy_settle_seconds: 0\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.contact_email == "ops@example.org"
    assert config.renew_days == 21
    assert config.staging is True
    assert config.restart_units == ("httpd",)
    assert config.apache.ctl_bin == "/usr/sbin/apachectl"
    assert config.apache.conf_dirs == (Path("/etc/httpd/conf.d"),)
    assert config.certbot.live_dir == Path("/srv/le/live")
    assert config.probes.proxy_settle_seconds == 0.0


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("renew_days: 14\n")
    env = {
        "VHOSTCERT_CONFIG_FILE": str(cfg),
        "VHOSTCERT_RENEW_DAYS": "7",
        "VHOSTCERT_STAGING": "true",
        "VHOSTCERT_RUNTIME_DIR": str(tmp_path / "run"),
        "VHOSTCERT_CERTBOT__RENEWAL_DIR": str(tmp_path / "renewal"),
        "VHOSTCERT_RESTART_UNITS": "httpd, apache2",
        "VHOSTCERT_TRUST__DENY_PATTERNS": "Staging,Fake",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.renew_days == 7
    assert config.staging is True
    assert config.runtime_dir == tmp_path / "run"
    assert config.certbot.renewal_dir == tmp_path / "renewal"
    assert config.restart_units == ("httpd", "apache2")
    assert config.trust.deny_patterns == ("staging", "fake")


def test_programmatic_overrides_win(tmp_path: Path) -> None:
    """Explicit overrides beat environment values."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"VHOSTCERT_RENEW_DAYS": "7"},
        overrides={"renew_days": 3},
    )

    assert config.renew_days == 3


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("bogus: 1\n", "Unknown configuration keys"),
        ("apache:\n  nope: 1\n", "Unknown apache configuration keys"),
        ("renew_days: -1\n", "renew_days must be non-negative"),
        ("contact_email: not-an-email\n", "contact_email"),
        ("reload_command: ''\n", "reload_command"),
        ("probes:\n  http_timeout: 0\n", "probes.http_timeout"),
        ("apache:\n  timeout: 0\n", "apache.timeout must be greater than zero"),
        ("certbot:\n  timeout: 3600\n", "certbot.timeout (3600.0) must be shorter than lock_ttl"),
        ("lock_ttl: 600\n", "must be shorter than lock_ttl (600.0)"),
        ("staging: maybe\n", "staging"),
        ("- just\n- a list\n", "mapping at the top level"),
    ],
)
def test_invalid_values_raise_config_error(tmp_path: Path, content: str, message: str) -> None:
    """Invalid configuration is rejected with a descriptive error."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError) as excinfo:
        load_config(config_file=cfg, env={})

    assert message in str(excinfo.value)


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """``to_dict`` renders paths as strings."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    payload = config.to_dict()

    assert payload["default_webroot"] == "/var/www/html"
    assert payload["certbot"]["live_dir"] == "/etc/letsencrypt/live"  # type: ignore[index]
    assert payload["restart_units"] == ["apache2", "httpd"]
