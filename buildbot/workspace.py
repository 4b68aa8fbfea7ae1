# buildbot/workspace.py
"""
Workspace layout and release references.

    <root>/archives/   downloaded source archives (kept between runs)
    <root>/builds/     unpacked source trees (wiped every run)
    <root>/binaries/   per-release output trees (wiped when clean_on_start)
    <root>/buildbot.log
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from buildbot.errors import NotFound, WorkspaceError
from buildbot.logging import get_logger
from buildbot.versions import strip_extensions

logger = get_logger("workspace")


@dataclass(frozen=True)
class ReleaseRef:
    url: str
    filename: str
    name: str
    archive_path: Path
    build_path: Path
    output_path: Path


def release_name(filename: str) -> str:
    """Canonical release name: lower-cased basename without archive suffixes."""
    return strip_extensions(filename).lower()


class Workspace:
    def __init__(self, root):
        self.root = Path(root).resolve()
        self.archives = self.root / "archives"
        self.builds = self.root / "builds"
        self.binaries = self.root / "binaries"
        self.log_file = self.root / "buildbot.log"

    def resolve(self, url: str, filename: Optional[str] = None) -> ReleaseRef:
        """Derive the local paths for a release; performs no I/O."""
        if not filename:
            filename = os.path.basename(unquote(urlparse(url).path))
        if not filename:
            raise NotFound(f"cannot derive an archive name from {url!r}")
        name = release_name(filename)
        return ReleaseRef(
            url=url,
            filename=filename,
            name=name,
            archive_path=self.archives / filename,
            build_path=self.builds / name,
            output_path=self.binaries / name,
        )

    def ensure(self) -> None:
        for d in (self.archives, self.builds, self.binaries):
            d.mkdir(parents=True, exist_ok=True)

    def clean(self, binaries: bool = True) -> None:
        """
        Wipe builds/ (and binaries/ unless binaries=False), keep archives/.
        builds/ is always emptied: unpacking is detected by diffing its
        listing, so a tree left by an earlier run would hide the new one.
        """
        wipe = [self.builds, self.binaries] if binaries else [self.builds]
        try:
            for d in wipe:
                if d.exists():
                    logger.info("Removing %s", d)
                    shutil.rmtree(d)
            self.ensure()
        except OSError as e:
            raise WorkspaceError(f"cannot prepare workspace {self.root}: {e}") from e

    def script_path(self, label: str, suffix: str) -> Path:
        return self.root / f"build-{label}{suffix}"
