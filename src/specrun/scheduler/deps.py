"""Spec discovery and dependency declaration parsing."""

from __future__ import annotations

import logging
import re
from pathlib import Path, PurePosixPath

import yaml

from specrun.scheduler.models import SpecNode

logger = logging.getLogger(__name__)

SPEC_SUFFIX = ".md"

_FRONTMATTER = re.compile(r"\A---\r?\n(.*?)\r?\n---", re.DOTALL)
_MARKDOWN_DEPENDS = re.compile(
    r"^\*\*Depend(?:s|encies)?(?:\s+on)?\*\*\s*:\s*(?P<links>.+)$",
    re.IGNORECASE | re.MULTILINE,
)
_MARKDOWN_LINK = re.compile(r"\[[^\]]*\]\(\s*([^)\s]+)\s*\)")


class SpecDiscoveryError(ValueError):
    """Spec directory is missing or holds no spec files."""


def parse_dependencies(content: str) -> list[str]:
    """Extract dependency names declared by one spec.

    Structured frontmatter wins over the markdown cross-reference form:

        ---
        depends: [01-schema.md, 02-models.md]
        ---

        **Depends on**: [Schema](./01-schema.md), [Models](./02-models.md)
    """

    frontmatter = _parse_frontmatter(content)
    if frontmatter is not None and "depends" in frontmatter:
        return _normalize_depends(frontmatter["depends"])
    return _parse_markdown_depends(content)


def parse_source(content: str) -> str | None:
    """Return the frontmatter ``source:`` value, if any."""

    frontmatter = _parse_frontmatter(content)
    if not frontmatter:
        return None
    value = frontmatter.get("source")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def has_dependencies(nodes: list[SpecNode]) -> bool:
    return any(node.depends_on for node in nodes)


def list_spec_files(spec_dir: Path) -> list[Path]:
    """List spec files in alphabetical order."""

    if not spec_dir.is_dir():
        raise SpecDiscoveryError(f"Spec directory not found: {spec_dir}")
    return sorted(
        (path for path in spec_dir.iterdir() if path.is_file() and path.suffix == SPEC_SUFFIX),
        key=lambda path: path.name,
    )


def load_spec_node(path: Path) -> SpecNode:
    content = path.read_text("utf-8")
    return SpecNode(
        name=path.name,
        path=str(path.resolve()),
        depends_on=frozenset(parse_dependencies(content)),
        source=parse_source(content),
    )


def load_spec_nodes(spec_dir: Path) -> list[SpecNode]:
    """Read every spec in a directory and parse its dependency declarations."""

    files = list_spec_files(spec_dir)
    if not files:
        raise SpecDiscoveryError(f"No {SPEC_SUFFIX} files found in {spec_dir}")
    return [load_spec_node(path) for path in files]


def _parse_frontmatter(content: str) -> dict[str, object] | None:
    match = _FRONTMATTER.match(content)
    if match is None:
        return None
    try:
        loaded = yaml.safe_load(match.group(1))
    except yaml.YAMLError as error:
        logger.warning("Ignoring malformed spec frontmatter: %s", error)
        return None
    if not isinstance(loaded, dict):
        return None
    return loaded


def _normalize_depends(value: object) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    names: list[str] = []
    for item in items:
        name = str(item).strip()
        if name and name not in names:
            names.append(name)
    return names


def _parse_markdown_depends(content: str) -> list[str]:
    match = _MARKDOWN_DEPENDS.search(content)
    if match is None:
        return []
    names: list[str] = []
    for target in _MARKDOWN_LINK.findall(match.group("links")):
        name = PurePosixPath(target).name
        if name and name not in names:
            names.append(name)
    return names
