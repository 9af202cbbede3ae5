"""Tests for virtual host parsing and grouping."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostcert.vhosts import (
    DiscoveryError,
    VHostBlock,
    discover_groups,
    group_vhosts,
    iter_block_spans,
    parse_vhost_file,
    parse_vhost_text,
    port_from_address,
)

SITE = """\
# Managed by hand
<VirtualHost *:80>
    ServerName Example.ORG
    ServerAlias www.example.org  static.example.org
    DocumentRoot /var/www/example
</VirtualHost>

<VirtualHost *:443>
    ServerName example.org
    DocumentRoot "/var/www/example"
    SSLEngine on
</VirtualHost>
"""


@pytest.mark.parametrize(
    ("address", "port"),
    [
        ("*:80", 80),
        ("*:443", 443),
        ("192.0.2.1:443 [2001:db8::1]:443", 443),
        ("*:8080", None),
        ("*:4433", None),
        ("", None),
    ],
)
def test_port_from_address(address: str, port: int | None) -> None:
    """Only exact 80/443 listeners are recognised."""
    assert port_from_address(address) == port


def test_parse_vhost_text_reads_names_and_docroots() -> None:
    """Names are lowercased and quoted document roots unwrapped."""
    blocks = parse_vhost_text(SITE, source=Path("/etc/apache2/sites-enabled/example.conf"))

    assert [block.port for block in blocks] == [80, 443]
    plain, secure = blocks
    assert plain.server_name == "example.org"
    assert plain.aliases == frozenset({"www.example.org", "static.example.org"})
    assert plain.document_root == Path("/var/www/example")
    assert secure.document_root == Path("/var/www/example")
    assert plain.line == 2


def test_parse_vhost_text_ignores_comments_and_unnamed_blocks() -> None:
    """Commented-out blocks and blocks without ServerName are discarded."""
    text = (
        "#<VirtualHost *:80>\n"
        "#    ServerName ghost.example\n"
        "#</VirtualHost>\n"
        "<VirtualHost *:80>\n"
        "    DocumentRoot /var/www/html\n"
        "</VirtualHost>\n"
    )

    assert parse_vhost_text(text) == []


def test_unterminated_block_is_truncated_at_next_opening_marker() -> None:
    """Malformed input never raises; a new block cuts the previous one short."""
    text = (
        "<VirtualHost *:80>\n"
        "    ServerName one.example\n"
        "<VirtualHost *:80>\n"
        "    ServerName two.example\n"
    )

    spans = list(iter_block_spans(text.splitlines()))
    blocks = parse_vhost_text(text)

    assert [(span.start, span.end, span.stop) for span in spans] == [(0, None, 2), (2, None, 4)]
    assert [block.server_name for block in blocks] == ["one.example", "two.example"]


def test_server_name_with_port_and_scheme_is_cleaned() -> None:
    """``ServerName https://host:443`` yields the bare host."""
    text = "<VirtualHost *:443>\n    ServerName https://Secure.Example:443\n</VirtualHost>\n"

    (block,) = parse_vhost_text(text)

    assert block.server_name == "secure.example"


def test_parse_vhost_file_tolerates_unreadable_file(tmp_path: Path) -> None:
    """A missing file produces no blocks instead of an exception."""
    assert parse_vhost_file(tmp_path / "gone.conf") == []


def test_group_vhosts_prefers_port_80_docroot() -> None:
    """The HTTP listener's document root wins over the HTTPS one."""
    blocks = [
        VHostBlock(443, "example.org", frozenset(), Path("/srv/tls")),
        VHostBlock(80, "example.org", frozenset({"www.example.org"}), Path("/srv/plain")),
    ]

    groups = group_vhosts(blocks)

    group = groups["example.org"]
    assert group.docroot == Path("/srv/plain")
    assert group.domains == ("example.org", "www.example.org")
    assert group.webroot_for("www.example.org") == Path("/srv/plain")


def test_group_vhosts_falls_back_to_default_webroot() -> None:
    """Groups without any DocumentRoot use the configured default."""
    blocks = [VHostBlock(80, "bare.example", frozenset(), None)]

    groups = group_vhosts(blocks, default_webroot=Path("/var/www/default"))

    assert groups["bare.example"].docroot == Path("/var/www/default")


def test_group_vhosts_records_per_domain_webroot_overrides() -> None:
    """An alias served by its own vhost keeps that vhost's document root."""
    blocks = [
        VHostBlock(80, "example.org", frozenset({"blog.example.org"}), Path("/srv/main")),
        VHostBlock(80, "blog.example.org", frozenset(), Path("/srv/blog")),
    ]

    groups = group_vhosts(blocks)

    main = groups["example.org"]
    assert main.webroot_by_domain == {"blog.example.org": Path("/srv/blog")}
    assert main.webroot_for("blog.example.org") == Path("/srv/blog")
    assert main.webroot_for("example.org") == Path("/srv/main")


def test_group_vhosts_skips_wildcards_and_other_ports() -> None:
    """Wildcard aliases and non-web listeners never enter a group."""
    blocks = [
        VHostBlock(80, "example.org", frozenset({"*.example.org", "www.example.org"}), None),
        VHostBlock(8080, "admin.example.org", frozenset(), None),
    ]

    groups = group_vhosts(blocks)

    assert set(groups) == {"example.org"}
    assert groups["example.org"].aliases == frozenset({"www.example.org"})


def test_group_vhosts_folds_redirect_vhost_into_main_site() -> None:
    """A ServerName the main site lists as an alias does not get its own group."""
    redirect = Path("/etc/apache2/sites-enabled/www.conf")
    main = Path("/etc/apache2/sites-enabled/example.conf")
    blocks = [
        VHostBlock(80, "www.example.com", frozenset(), None, source=redirect),
        VHostBlock(80, "example.com", frozenset({"www.example.com"}), Path("/srv/main"), main),
        VHostBlock(443, "example.com", frozenset({"www.example.com"}), Path("/srv/main"), main),
    ]

    groups = group_vhosts(blocks)

    assert set(groups) == {"example.com"}
    group = groups["example.com"]
    assert group.domains == ("example.com", "www.example.com")
    assert group.webroot_for("www.example.com") == Path("/srv/main")
    assert group.sources == frozenset({redirect, main})


def test_group_vhosts_merges_server_names_sharing_an_alias() -> None:
    """Two sites claiming the same alias end up on one certificate."""
    blocks = [
        VHostBlock(80, "shop.example", frozenset({"cdn.example"}), Path("/srv/shop")),
        VHostBlock(80, "blog.example", frozenset({"cdn.example"}), Path("/srv/blog")),
        VHostBlock(80, "other.example", frozenset(), Path("/srv/other")),
    ]

    groups = group_vhosts(blocks)

    assert set(groups) == {"blog.example", "other.example"}
    merged = groups["blog.example"]
    assert merged.domain_set == {"blog.example", "shop.example", "cdn.example"}
    assert merged.webroot_for("shop.example") == Path("/srv/shop")
    assert merged.webroot_for("cdn.example") == Path("/srv/blog")


def test_group_vhosts_raises_when_nothing_found() -> None:
    """An empty discovery is fatal."""
    with pytest.raises(DiscoveryError):
        group_vhosts([VHostBlock(8443, "x.example", frozenset(), None)])


def test_discover_groups_merges_files(tmp_path: Path) -> None:
    """Blocks for one ServerName spread over files merge into one group."""
    first = tmp_path / "a.conf"
    second = tmp_path / "b.conf"
    first.write_text(SITE)
    second.write_text(
        "<VirtualHost *:443>\n"
        "    ServerName example.org\n"
        "    ServerAlias api.example.org\n"
        "</VirtualHost>\n"
    )

    groups = discover_groups([first, second])

    group = groups["example.org"]
    assert group.domain_set == {
        "example.org",
        "www.example.org",
        "static.example.org",
        "api.example.org",
    }
    assert group.sources == frozenset({first, second})
