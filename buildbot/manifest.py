# buildbot/manifest.py
"""
Copy manifests: which files of a finished build end up in binaries/.

One rule per line:

    src/lua.exe              copy to the same relative path
    src/lua.h -> lua.h       copy and rename/relocate
    src/jit/ -> jit/         trailing slash: copy the directory recursively
    # comment

Sources that do not exist are skipped; not every release ships the same
optional files.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List

from buildbot.errors import ConfigError
from buildbot.logging import get_logger

logger = get_logger("manifest")

ARROW = "->"


@dataclass(frozen=True)
class CopyRule:
    source: str
    target: str
    recursive: bool = False


def parse_rule(line: str) -> CopyRule:
    if ARROW in line:
        source, target = (part.strip() for part in line.split(ARROW, 1))
        if not source or not target:
            raise ConfigError(f"malformed copy rule: {line!r}")
    else:
        source = target = line.strip()
    recursive = source.endswith("/")
    return CopyRule(source.rstrip("/"), target.rstrip("/") if recursive else target, recursive)


def parse_rules(text: str) -> List[CopyRule]:
    rules: List[CopyRule] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        rules.append(parse_rule(line))
    return rules


def apply_rules(rules: List[CopyRule], src_dir: Path, dst_dir: Path) -> List[Path]:
    """Copy according to rules; returns the destination paths written."""
    src_dir, dst_dir = Path(src_dir), Path(dst_dir)
    copied: List[Path] = []
    for rule in rules:
        src = src_dir / rule.source
        dst = dst_dir / rule.target
        if rule.recursive:
            if not src.is_dir():
                logger.debug("Skipping missing directory %s", src)
                continue
            logger.info("Copying %s/ -> %s/", src, dst)
            shutil.copytree(src, dst, dirs_exist_ok=True)
            copied.extend(p for p in dst.rglob("*") if p.is_file())
        else:
            if not src.is_file():
                logger.debug("Skipping missing file %s", src)
                continue
            dst.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Copying %s -> %s", src, dst)
            shutil.copy2(src, dst)
            copied.append(dst)
    return copied


def copy_manifest(text: str, src_dir: Path, dst_dir: Path) -> List[Path]:
    return apply_rules(parse_rules(text), src_dir, dst_dir)
