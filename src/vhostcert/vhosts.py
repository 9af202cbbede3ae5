"""Virtual host discovery: parse Apache ``<VirtualHost>`` blocks and group them.

Configuration text is treated as an ordered sequence of lines. The same flat
block scan (:func:`iter_block_spans`) backs both the parser and the config
patcher so they agree on where a block starts and ends.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_OPEN_RE = re.compile(r"^\s*<VirtualHost(?:\s+([^>]*))?>", re.IGNORECASE)
_CLOSE_RE = re.compile(r"^\s*</VirtualHost\s*>", re.IGNORECASE)
_PORT_443_RE = re.compile(r":443(?!\d)")
_PORT_80_RE = re.compile(r":80(?!\d)")


class DiscoveryError(RuntimeError):
    """Raised when no virtual hosts could be discovered."""


@dataclass(frozen=True)
class BlockSpan:
    """Line range of one ``<VirtualHost>`` block.

    ``end`` is the index of the closing marker, or ``None`` when the block ran
    to the end of the file (or was cut short by another opening marker).
    ``stop`` is the exclusive index of the last line belonging to the block.
    """

    start: int
    end: int | None
    stop: int
    port: int | None
    address: str


@dataclass(frozen=True)
class VHostBlock:
    """One parsed listener stanza."""

    port: int | None
    server_name: str
    aliases: frozenset[str]
    document_root: Path | None
    source: Path | None = None
    line: int = 0

    @property
    def is_certifiable(self) -> bool:
        """Return True when the block can contribute to a domain group."""
        return self.port in (80, 443) and bool(self.server_name)

    @property
    def names(self) -> frozenset[str]:
        """Return the server name together with its aliases."""
        return self.aliases | {self.server_name}


@dataclass(frozen=True)
class DomainGroup:
    """All virtual host data known for one primary domain."""

    primary: str
    aliases: frozenset[str]
    docroot: Path
    webroot_by_domain: Mapping[str, Path] = field(default_factory=dict)
    sources: frozenset[Path] = frozenset()

    @property
    def domains(self) -> tuple[str, ...]:
        """Return the full domain set, primary first, aliases sorted."""
        return (self.primary, *sorted(self.aliases - {self.primary}))

    @property
    def domain_set(self) -> frozenset[str]:
        """Return the desired SAN set."""
        return frozenset(self.domains)

    def webroot_for(self, domain: str) -> Path:
        """Return the document root used to validate *domain*."""
        return self.webroot_by_domain.get(domain, self.docroot)


def port_from_address(address: str) -> int | None:
    """Infer the listener port from a ``<VirtualHost>`` address list."""
    if _PORT_443_RE.search(address):
        return 443
    if _PORT_80_RE.search(address):
        return 80
    return None


def is_comment(line: str) -> bool:
    """Return True when *line* is an Apache comment."""
    return line.lstrip().startswith("#")


def directive(line: str) -> tuple[str, list[str]] | None:
    """Split a directive line into ``(lowercased name, arguments)``."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or stripped.startswith("<"):
        return None
    parts = stripped.split()
    return parts[0].lower(), parts[1:]


def iter_block_spans(lines: Sequence[str]) -> Iterator[BlockSpan]:
    """Yield the span of every ``<VirtualHost>`` block in *lines*."""
    start: int | None = None
    address = ""
    for index, line in enumerate(lines):
        if is_comment(line):
            continue
        opened = _OPEN_RE.match(line)
        if opened:
            if start is not None:
                yield BlockSpan(start, None, index, port_from_address(address), address)
            start = index
            address = (opened.group(1) or "").strip()
            continue
        if start is not None and _CLOSE_RE.match(line):
            yield BlockSpan(start, index, index + 1, port_from_address(address), address)
            start = None
    if start is not None:
        yield BlockSpan(start, None, len(lines), port_from_address(address), address)


def _clean_name(value: str) -> str:
    name = value.strip().strip("\"'").rstrip(";").strip().lower()
    if "://" in name:
        name = name.split("://", 1)[1]
    # ``ServerName host:port`` is legal Apache syntax.
    if ":" in name and not name.startswith("["):
        name = name.rsplit(":", 1)[0]
    return name.rstrip(".")


def block_from_lines(
    lines: Sequence[str],
    span: BlockSpan,
    *,
    source: Path | None = None,
) -> VHostBlock:
    """Build a :class:`VHostBlock` from the lines covered by *span*."""
    server_name = ""
    aliases: set[str] = set()
    document_root: Path | None = None
    for line in lines[span.start + 1 : span.end if span.end is not None else span.stop]:
        parsed = directive(line)
        if parsed is None:
            continue
        name, args = parsed
        if name == "servername" and args:
            server_name = _clean_name(args[0])
        elif name == "serveralias":
            for raw in args:
                alias = _clean_name(raw)
                if alias:
                    aliases.add(alias)
        elif name == "documentroot" and args:
            value = line.strip()[len("DocumentRoot") :].strip().strip("\"'")
            if value:
                document_root = Path(value)
    aliases.discard(server_name)
    return VHostBlock(
        port=span.port,
        server_name=server_name,
        aliases=frozenset(aliases),
        document_root=document_root,
        source=source,
        line=span.start + 1,
    )


def parse_vhost_text(text: str, source: Path | None = None) -> list[VHostBlock]:
    """Parse every named ``<VirtualHost>`` block in *text*.

    Blocks without a ``ServerName`` are discarded. The parser never raises on
    malformed input: an unterminated block is truncated at end of file.
    """
    lines = text.splitlines()
    blocks: list[VHostBlock] = []
    for span in iter_block_spans(lines):
        block = block_from_lines(lines, span, source=source)
        if not block.server_name:
            LOGGER.debug("Ignoring unnamed vhost at %s:%s", source or "<text>", block.line)
            continue
        blocks.append(block)
    return blocks


def parse_vhost_file(path: Path) -> list[VHostBlock]:
    """Parse *path*, returning no blocks when the file cannot be read."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        LOGGER.warning("Cannot read vhost config %s: %s", path, exc)
        return []
    return parse_vhost_text(text, source=path)


def group_vhosts(
    blocks: Iterable[VHostBlock],
    *,
    default_webroot: Path = Path("/var/www/html"),
) -> dict[str, DomainGroup]:
    """Fold parsed blocks into one :class:`DomainGroup` per primary domain.

    A ServerName that another block lists as a ServerAlias (a ``www`` redirect
    vhost next to the main site, say) joins that block's group, as do server
    names sharing an alias, so every name belongs to exactly one lineage.

    Raises :class:`DiscoveryError` when no group can be formed.
    """
    aliases: dict[str, set[str]] = {}
    roots: dict[str, dict[int, Path]] = {}
    sources: dict[str, set[Path]] = {}

    for block in blocks:
        if not block.is_certifiable:
            continue
        primary = block.server_name
        group_aliases = aliases.setdefault(primary, set())
        for alias in block.aliases:
            if alias.startswith("*"):
                LOGGER.warning(
                    "[%s] Skipping wildcard alias %s; HTTP validation cannot cover it.",
                    primary,
                    alias,
                )
                continue
            group_aliases.add(alias)
        if block.source is not None:
            sources.setdefault(primary, set()).add(block.source)
        if block.document_root is None:
            continue
        roots.setdefault(primary, {}).setdefault(block.port, block.document_root)

    groups: dict[str, DomainGroup] = {}
    for primary, members in _fold_server_names(aliases).items():
        names: set[str] = set()
        group_sources: set[Path] = set()
        for member in members:
            names.add(member)
            names.update(aliases[member])
            group_sources.update(sources.get(member, set()))
        group_aliases = names - {primary}
        by_port = roots.get(primary, {})
        docroot = by_port.get(80) or by_port.get(443) or default_webroot
        overrides: dict[str, Path] = {}
        for domain in group_aliases:
            candidates = roots.get(domain, {})
            resolved = candidates.get(80) or candidates.get(443)
            if resolved is not None and resolved != docroot:
                overrides[domain] = resolved
        groups[primary] = DomainGroup(
            primary=primary,
            aliases=frozenset(group_aliases),
            docroot=docroot,
            webroot_by_domain=overrides,
            sources=frozenset(group_sources),
        )

    if not groups:
        raise DiscoveryError("Found no ServerName entries in the discovered vhost configs.")
    return groups


def _fold_server_names(aliases: Mapping[str, set[str]]) -> dict[str, list[str]]:
    """Return ``{primary: [server names]}`` with name-sharing groups merged.

    Two server names land in one group when one lists the other as an alias
    or both list the same alias. The group's primary is the sorted-first
    member that no other member lists as an alias; when every member is
    someone's alias, the sorted-first member wins.
    """
    parent: dict[str, str] = {}

    def find(name: str) -> str:
        parent.setdefault(name, name)
        while parent[name] != name:
            parent[name] = parent[parent[name]]
            name = parent[name]
        return name

    for name in sorted(aliases):
        for alias in sorted(aliases[name]):
            left, right = find(name), find(alias)
            if left != right:
                parent[max(left, right)] = min(left, right)

    components: dict[str, list[str]] = {}
    for name in sorted(aliases):
        components.setdefault(find(name), []).append(name)

    folded: dict[str, list[str]] = {}
    for members in components.values():
        aliased = {alias for member in members for alias in aliases[member]}
        owners = [member for member in members if member not in aliased]
        primary = owners[0] if owners else members[0]
        if len(members) > 1:
            LOGGER.info(
                "[%s] Merged with %s; their vhosts share names.",
                primary,
                ", ".join(member for member in members if member != primary),
            )
        folded[primary] = members
    return dict(sorted(folded.items()))


def discover_groups(
    config_files: Iterable[Path],
    *,
    default_webroot: Path = Path("/var/www/html"),
) -> dict[str, DomainGroup]:
    """Parse every file in *config_files* and group the result."""
    blocks: list[VHostBlock] = []
    for path in config_files:
        blocks.extend(parse_vhost_file(path))
    return group_vhosts(blocks, default_webroot=default_webroot)


__all__ = [
    "BlockSpan",
    "DiscoveryError",
    "DomainGroup",
    "VHostBlock",
    "block_from_lines",
    "directive",
    "discover_groups",
    "group_vhosts",
    "iter_block_spans",
    "parse_vhost_file",
    "parse_vhost_text",
    "port_from_address",
]
