"""Wire issued certificates into Apache virtual host configuration.

:func:`patch_config_text` is a pure line-rewrite pass: given the text of one
file it returns the text the file should contain. :class:`ConfigPatcher`
applies that pass to every discovered file, writes only files whose bytes
changed, then self-tests and reloads the server.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .certs import TLSMaterial
from .providers.apache import ApacheError, ApacheProvider
from .vhosts import BlockSpan, VHostBlock, block_from_lines, directive, iter_block_spans

LOGGER = logging.getLogger(__name__)

CERT_FILE = "SSLCertificateFile"
KEY_FILE = "SSLCertificateKeyFile"
CHAIN_FILE = "SSLCertificateChainFile"
DEFAULT_INDENT = "    "


@dataclass(frozen=True)
class PatchResult:
    """Outcome of patching every configuration file for one domain."""

    primary: str
    changed_files: tuple[Path, ...] = ()
    validated: bool = False
    reloaded: bool = False
    error: str | None = None

    @property
    def changed(self) -> bool:
        """Return True when at least one file was rewritten."""
        return bool(self.changed_files)


def _blocks(lines: Sequence[str]) -> list[tuple[BlockSpan, VHostBlock]]:
    return [(span, block_from_lines(lines, span)) for span in iter_block_spans(lines)]


def _wanted(primary: str, names: Iterable[str] | None) -> frozenset[str]:
    return frozenset(names or ()) | {primary}


def _references(block: VHostBlock, wanted: frozenset[str]) -> bool:
    return block.server_name in wanted or not block.aliases.isdisjoint(wanted)


def has_ssl_block(text: str, primary: str, names: Iterable[str] | None = None) -> bool:
    """Return True when *text* holds a port-443 block naming *primary* or *names*."""
    wanted = _wanted(primary, names)
    lines = text.splitlines(keepends=True)
    return any(
        span.port == 443 and _references(block, wanted) for span, block in _blocks(lines)
    )


def references_domain(text: str, primary: str, names: Iterable[str] | None = None) -> bool:
    """Return True when any block in *text* names *primary* or one of *names*."""
    wanted = _wanted(primary, names)
    lines = text.splitlines(keepends=True)
    return any(_references(block, wanted) for _span, block in _blocks(lines))


def patch_config_text(
    text: str,
    primary: str,
    material: TLSMaterial,
    *,
    names: Iterable[str] | None = None,
    synthesize: bool = True,
    default_docroot: Path = Path("/var/www/html"),
) -> str:
    """Return *text* with the secure listener for *primary* using *material*.

    *names* widens the match to every domain the certificate covers. Port-443
    blocks naming *primary* or one of *names* get their certificate directives
    rewritten (chain-file directives are dropped). When none exists and
    *synthesize* is set, a minimal port-443 block is appended. Lines outside
    the touched blocks are returned verbatim.
    """
    wanted = _wanted(primary, names)
    lines = text.splitlines(keepends=True)
    matching = [(span, block) for span, block in _blocks(lines) if _references(block, wanted)]
    if not matching:
        return text

    secure = [span for span, _block in matching if span.port == 443]
    if not secure:
        if not synthesize:
            return text
        plain = [block for span, block in matching if span.port == 80]
        plain.sort(key=lambda block: block.server_name != primary)
        source = plain[0] if plain else None
        return text + _synthesized_block(
            primary,
            material,
            docroot=(source.document_root if source else None) or default_docroot,
            aliases=(source.aliases if source else frozenset()) | (wanted - {primary}),
            separator="" if text.endswith(("\n", "\r")) else _newline_of(lines),
            newline=_newline_of(lines),
        )

    output: list[str] = []
    cursor = 0
    for span in secure:
        output.extend(lines[cursor : span.start])
        output.extend(_patch_block(lines[span.start : span.stop], span, material))
        cursor = span.stop
    output.extend(lines[cursor:])
    return "".join(output)


def _patch_block(block_lines: Sequence[str], span: BlockSpan, material: TLSMaterial) -> list[str]:
    closed = span.end is not None
    body = block_lines[1:-1] if closed else block_lines[1:]
    newline = _newline_of(block_lines)
    indent: str | None = None
    has_cert = has_key = False
    patched: list[str] = [block_lines[0]]

    for line in body:
        parsed = directive(line)
        if parsed is None:
            patched.append(line)
            continue
        if indent is None:
            indent = _indent_of(line)
        name = parsed[0]
        if name == CERT_FILE.lower():
            patched.append(_rewrite(line, CERT_FILE, material.certificate))
            has_cert = True
        elif name == KEY_FILE.lower():
            patched.append(_rewrite(line, KEY_FILE, material.key))
            has_key = True
        elif name == CHAIN_FILE.lower():
            continue
        else:
            patched.append(line)

    indent = indent if indent is not None else DEFAULT_INDENT
    missing: list[str] = []
    if not has_cert:
        missing.append(f"{indent}{CERT_FILE} {_quote(material.certificate)}{newline}")
    if not has_key:
        missing.append(f"{indent}{KEY_FILE} {_quote(material.key)}{newline}")
    if missing and patched and not patched[-1].endswith(("\n", "\r")):
        patched[-1] = patched[-1] + newline
    patched.extend(missing)
    if closed:
        patched.append(block_lines[-1])
    return patched


def _synthesized_block(
    primary: str,
    material: TLSMaterial,
    *,
    docroot: Path,
    aliases: Iterable[str],
    separator: str,
    newline: str,
) -> str:
    body = [
        "",
        "<VirtualHost *:443>",
        f"{DEFAULT_INDENT}ServerName {primary}",
    ]
    alias_list = sorted(set(aliases) - {primary})
    if alias_list:
        body.append(f"{DEFAULT_INDENT}ServerAlias {' '.join(alias_list)}")
    body.extend(
        [
            f"{DEFAULT_INDENT}DocumentRoot {_quote(docroot)}",
            f"{DEFAULT_INDENT}SSLEngine on",
            f"{DEFAULT_INDENT}{CERT_FILE} {_quote(material.certificate)}",
            f"{DEFAULT_INDENT}{KEY_FILE} {_quote(material.key)}",
            "</VirtualHost>",
        ]
    )
    return separator + newline.join(body) + newline


def _rewrite(line: str, keyword: str, path: Path) -> str:
    return f"{_indent_of(line)}{keyword} {_quote(path)}{_ending_of(line)}"


def _indent_of(line: str) -> str:
    return line[: len(line) - len(line.lstrip(" \t"))]


def _ending_of(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    if line.endswith("\n"):
        return "\n"
    return ""


def _newline_of(lines: Sequence[str]) -> str:
    for line in lines:
        ending = _ending_of(line)
        if ending:
            return ending
    return "\n"


def _quote(path: Path) -> str:
    value = str(path)
    return f'"{value}"' if any(char.isspace() for char in value) else value


class ConfigPatcher:
    """Apply :func:`patch_config_text` across configuration files."""

    def __init__(
        self,
        apache: ApacheProvider,
        *,
        default_docroot: Path = Path("/var/www/html"),
    ) -> None:
        """Bind the patcher to the server used for self-test and reload."""
        self.apache = apache
        self.default_docroot = default_docroot

    def plan(
        self,
        primary: str,
        material: TLSMaterial,
        files: Iterable[Path],
        *,
        names: Iterable[str] | None = None,
    ) -> dict[Path, tuple[str, str]]:
        """Return ``{path: (current, desired)}`` for files naming *primary* or *names*.

        A port-443 block is synthesized in at most one file, and only when no
        discovered file already declares one for the domain.
        """
        wanted = _wanted(primary, names)
        current = self._read_all(files)
        relevant = {
            path: text
            for path, text in current.items()
            if references_domain(text, primary, wanted)
        }
        needs_block = not any(has_ssl_block(text, primary, wanted) for text in relevant.values())
        host_file = _synthesis_target(relevant, primary, wanted) if needs_block else None

        planned: dict[Path, tuple[str, str]] = {}
        for path, text in relevant.items():
            desired = patch_config_text(
                text,
                primary,
                material,
                names=wanted,
                synthesize=path == host_file,
                default_docroot=self.default_docroot,
            )
            planned[path] = (text, desired)
        return planned

    def apply(
        self,
        primary: str,
        material: TLSMaterial,
        files: Iterable[Path],
        *,
        names: Iterable[str] | None = None,
        reload: bool = True,
    ) -> PatchResult:
        """Patch, self-test and reload.

        A failing self-test leaves the new content on disk and withholds the
        reload; the error is returned in :class:`PatchResult`.
        """
        changed: list[Path] = []
        for path, (before, after) in self.plan(primary, material, files, names=names).items():
            if after == before:
                continue
            _write_preserving_mode(path, after)
            changed.append(path)
            LOGGER.info("[%s] Patched certificate paths in %s", primary, path)

        if not changed:
            return PatchResult(primary=primary)
        if not reload:
            return PatchResult(primary=primary, changed_files=tuple(changed))

        try:
            self.apache.test_config()
        except ApacheError as exc:
            LOGGER.error(
                "[%s] Config self-test failed after patching; reload withheld, "
                "manual intervention required: %s",
                primary,
                exc,
            )
            return PatchResult(
                primary=primary,
                changed_files=tuple(changed),
                validated=False,
                reloaded=False,
                error=str(exc),
            )
        try:
            self.apache.reload()
        except ApacheError as exc:
            LOGGER.error("[%s] Reload failed after patching: %s", primary, exc)
            return PatchResult(
                primary=primary,
                changed_files=tuple(changed),
                validated=True,
                reloaded=False,
                error=str(exc),
            )
        LOGGER.info("[%s] Configuration reloaded.", primary)
        return PatchResult(
            primary=primary,
            changed_files=tuple(changed),
            validated=True,
            reloaded=True,
        )

    # ------------------------------------------------------------------
    def _read_all(self, files: Iterable[Path]) -> dict[Path, str]:
        contents: dict[Path, str] = {}
        for path in files:
            if path in contents:
                continue
            try:
                contents[path] = path.read_bytes().decode("utf-8", errors="surrogateescape")
            except OSError as exc:
                LOGGER.warning("Cannot read %s: %s", path, exc)
        return contents


def _synthesis_target(
    contents: Mapping[Path, str],
    primary: str,
    wanted: frozenset[str],
) -> Path | None:
    """Pick the file holding the domain's port-80 block, preferring its ServerName."""
    ranked: list[tuple[int, str, Path]] = []
    for path, text in contents.items():
        lines = text.splitlines(keepends=True)
        for span, block in _blocks(lines):
            if span.port != 80 or not _references(block, wanted):
                continue
            ranked.append((0 if block.server_name == primary else 1, str(path), path))
    if ranked:
        return min(ranked)[2]
    return min(contents, key=str) if contents else None


def _write_preserving_mode(path: Path, content: str) -> None:
    mode = path.stat().st_mode
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(content.encode("utf-8", errors="surrogateescape"))
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "ConfigPatcher",
    "PatchResult",
    "has_ssl_block",
    "patch_config_text",
    "references_domain",
]
