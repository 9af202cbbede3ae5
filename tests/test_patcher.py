"""Tests for the configuration patcher."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostcert.certs import TLSMaterial
from vhostcert.patcher import ConfigPatcher, has_ssl_block, patch_config_text
from vhostcert.providers.apache import ApacheError

MATERIAL = TLSMaterial(
    certificate=Path("/etc/letsencrypt/live/example.org/fullchain.pem"),
    key=Path("/etc/letsencrypt/live/example.org/privkey.pem"),
)

SECURE_SITE = """\
<VirtualHost *:80>
    ServerName example.org
    DocumentRoot /var/www/example
</VirtualHost>

<VirtualHost *:443>
\tServerName example.org
\tServerAlias www.example.org
\tSSLEngine on
\tSSLCertificateFile /etc/ssl/certs/ssl-cert-snakeoil.pem
\tSSLCertificateKeyFile /etc/ssl/private/ssl-cert-snakeoil.key
\tSSLCertificateChainFile /etc/ssl/certs/chain.pem
\t# SSLCertificateChainFile stays as a comment
</VirtualHost>

<VirtualHost *:443>
    ServerName other.example
    SSLCertificateFile /etc/ssl/certs/other.pem
</VirtualHost>
"""

PLAIN_SITE = """\
<VirtualHost *:80>
    ServerName example.org
    ServerAlias www.example.org
    DocumentRoot /var/www/example
</VirtualHost>
"""


class FakeApache:
    """Records self-test and reload calls."""

    def __init__(self, *, selftest_error: str | None = None) -> None:
        """Optionally make the self-test fail."""
        self.selftest_error = selftest_error
        self.calls: list[str] = []

    def test_config(self) -> None:
        self.calls.append("test")
        if self.selftest_error:
            raise ApacheError(self.selftest_error)

    def reload(self) -> None:
        self.calls.append("reload")


def test_patch_rewrites_only_matching_secure_block() -> None:
    """Certificate directives change in place; everything else is untouched."""
    patched = patch_config_text(SECURE_SITE, "example.org", MATERIAL)

    assert "\tSSLCertificateFile /etc/letsencrypt/live/example.org/fullchain.pem\n" in patched
    assert "\tSSLCertificateKeyFile /etc/letsencrypt/live/example.org/privkey.pem\n" in patched
    assert "SSLCertificateChainFile /etc/ssl/certs/chain.pem" not in patched
    assert "\t# SSLCertificateChainFile stays as a comment\n" in patched
    assert "SSLCertificateFile /etc/ssl/certs/other.pem" in patched
    assert patched.count("<VirtualHost") == 3


def test_patch_is_idempotent() -> None:
    """Patching already-patched text is a byte-for-byte no-op."""
    once = patch_config_text(SECURE_SITE, "example.org", MATERIAL)

    assert patch_config_text(once, "example.org", MATERIAL) == once


def test_patch_matches_alias_in_secure_block() -> None:
    """A secure block naming the domain only as an alias is patched too."""
    text = (
        "<VirtualHost *:443>\n"
        "    ServerName www.example.org\n"
        "    ServerAlias example.org\n"
        "</VirtualHost>\n"
    )

    patched = patch_config_text(text, "example.org", MATERIAL)

    assert patched.endswith(
        "    SSLCertificateFile /etc/letsencrypt/live/example.org/fullchain.pem\n"
        "    SSLCertificateKeyFile /etc/letsencrypt/live/example.org/privkey.pem\n"
        "</VirtualHost>\n"
    )


def test_patch_matches_every_name_the_certificate_covers() -> None:
    """A secure block owned by another name of the group is rewritten, not duplicated."""
    text = (
        "<VirtualHost *:80>\n"
        "    ServerName example.org\n"
        "    ServerAlias www.example.org\n"
        "</VirtualHost>\n"
        "\n"
        "<VirtualHost *:443>\n"
        "    ServerName www.example.org\n"
        "    SSLCertificateFile /etc/ssl/certs/ssl-cert-snakeoil.pem\n"
        "</VirtualHost>\n"
    )

    patched = patch_config_text(
        text, "example.org", MATERIAL, names=("example.org", "www.example.org")
    )

    assert patched.count("<VirtualHost *:443>") == 1
    assert "snakeoil" not in patched
    assert "SSLCertificateFile /etc/letsencrypt/live/example.org/fullchain.pem\n" in patched
    assert has_ssl_block(patched, "example.org", names=("www.example.org",))
    assert not has_ssl_block(patched, "example.org")


def test_patch_synthesizes_secure_block() -> None:
    """A domain with only a plain listener gains a minimal secure block."""
    patched = patch_config_text(PLAIN_SITE, "example.org", MATERIAL)

    assert patched.startswith(PLAIN_SITE)
    added = patched[len(PLAIN_SITE) :]
    assert added == (
        "\n"
        "<VirtualHost *:443>\n"
        "    ServerName example.org\n"
        "    ServerAlias www.example.org\n"
        "    DocumentRoot /var/www/example\n"
        "    SSLEngine on\n"
        "    SSLCertificateFile /etc/letsencrypt/live/example.org/fullchain.pem\n"
        "    SSLCertificateKeyFile /etc/letsencrypt/live/example.org/privkey.pem\n"
        "</VirtualHost>\n"
    )
    assert has_ssl_block(patched, "example.org")
    assert patch_config_text(patched, "example.org", MATERIAL) == patched


def test_patch_without_synthesis_leaves_plain_file() -> None:
    """``synthesize=False`` never appends a block."""
    assert patch_config_text(PLAIN_SITE, "example.org", MATERIAL, synthesize=False) == PLAIN_SITE


def test_patch_preserves_crlf_line_endings() -> None:
    """Windows line endings survive the rewrite."""
    text = SECURE_SITE.replace("\n", "\r\n")

    patched = patch_config_text(text, "example.org", MATERIAL)

    assert "fullchain.pem\r\n" in patched
    assert "\n" not in patched.replace("\r\n", "")


def test_patch_quotes_paths_with_spaces() -> None:
    """Paths containing whitespace are quoted."""
    material = TLSMaterial(Path("/srv/my certs/full.pem"), Path("/srv/my certs/key.pem"))

    patched = patch_config_text(SECURE_SITE, "example.org", material)

    assert 'SSLCertificateFile "/srv/my certs/full.pem"' in patched


def test_patch_ignores_unrelated_text() -> None:
    """Files that never name the domain come back unchanged."""
    assert patch_config_text(SECURE_SITE, "unrelated.example", MATERIAL) == SECURE_SITE


def test_apply_writes_changed_files_and_reloads_once(tmp_path: Path) -> None:
    """Only changed files are written; one self-test and one reload follow."""
    site = tmp_path / "example.conf"
    other = tmp_path / "other.conf"
    site.write_text(SECURE_SITE)
    other.write_text("<VirtualHost *:80>\n    ServerName unrelated.example\n</VirtualHost>\n")
    site.chmod(0o640)
    before_other = other.stat().st_mtime_ns
    apache = FakeApache()

    patcher = ConfigPatcher(apache)  # type: ignore[arg-type]
    result = patcher.apply("example.org", MATERIAL, [site, other])

    assert result.changed_files == (site,)
    assert result.validated is True
    assert result.reloaded is True
    assert apache.calls == ["test", "reload"]
    assert site.stat().st_mode & 0o777 == 0o640
    assert other.stat().st_mtime_ns == before_other


def test_apply_without_changes_does_not_reload(tmp_path: Path) -> None:
    """A second apply is a no-op with no reload."""
    site = tmp_path / "example.conf"
    site.write_text(SECURE_SITE)
    apache = FakeApache()
    patcher = ConfigPatcher(apache)  # type: ignore[arg-type]
    patcher.apply("example.org", MATERIAL, [site])
    apache.calls.clear()

    result = patcher.apply("example.org", MATERIAL, [site])

    assert result.changed is False
    assert apache.calls == []


def test_apply_synthesizes_in_one_file_only(tmp_path: Path) -> None:
    """With plain listeners in two files the secure block is added once."""
    first = tmp_path / "a.conf"
    second = tmp_path / "b.conf"
    first.write_text(PLAIN_SITE)
    second.write_text(PLAIN_SITE.replace("ServerAlias www.example.org\n", ""))

    patcher = ConfigPatcher(FakeApache())  # type: ignore[arg-type]
    result = patcher.apply("example.org", MATERIAL, [second, first])

    assert result.changed_files == (first,)
    assert "<VirtualHost *:443>" not in second.read_text()


def test_apply_skips_synthesis_when_secure_block_exists_elsewhere(tmp_path: Path) -> None:
    """A secure block in another file is patched instead of adding a new one."""
    plain = tmp_path / "example.conf"
    secure = tmp_path / "example-ssl.conf"
    plain.write_text(PLAIN_SITE)
    secure.write_text(
        "<VirtualHost *:443>\n"
        "    ServerName example.org\n"
        "    SSLCertificateFile /etc/ssl/certs/ssl-cert-snakeoil.pem\n"
        "</VirtualHost>\n"
    )

    patcher = ConfigPatcher(FakeApache())  # type: ignore[arg-type]
    result = patcher.apply("example.org", MATERIAL, [plain, secure])

    assert result.changed_files == (secure,)
    assert plain.read_text() == PLAIN_SITE


def test_failed_selftest_keeps_change_and_withholds_reload(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A failing self-test is logged, not reverted, and blocks the reload."""
    site = tmp_path / "example.conf"
    site.write_text(SECURE_SITE)
    apache = FakeApache(selftest_error="apache2ctl -t failed (exit 1): Syntax error")

    with caplog.at_level("ERROR", logger="vhostcert.patcher"):
        patcher = ConfigPatcher(apache)  # type: ignore[arg-type]
        result = patcher.apply("example.org", MATERIAL, [site])

    assert result.validated is False
    assert result.reloaded is False
    assert result.error is not None and "Syntax error" in result.error
    assert apache.calls == ["test"]
    assert "fullchain.pem" in site.read_text()
    assert "manual intervention required" in caplog.text
