# buildbot/checklist.py
"""
Post-build verification: every tracked project has a fixed list of files
its output directory must contain. All projects are checked and every gap
is reported before the run is declared failed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Optional

from buildbot.errors import MissingArtifact
from buildbot.logging import get_logger
from buildbot.versions import select_max

logger = get_logger("checklist")


@dataclass
class ProjectReport:
    label: str
    directory: Optional[Path]
    present: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing


@dataclass
class RunResult:
    reports: List[ProjectReport] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.reports)

    @property
    def missing(self) -> List[str]:
        return [path for r in self.reports for path in r.missing]

    def raise_for_missing(self) -> None:
        if not self.ok:
            raise MissingArtifact(self.missing)


def find_output_dir(binaries: Path, prefix: str) -> Optional[Path]:
    """Newest directory in binaries/ whose name starts with prefix."""
    binaries = Path(binaries)
    if not binaries.is_dir():
        return None
    names = [p.name for p in binaries.iterdir() if p.is_dir() and p.name.startswith(prefix.lower())]
    if not names:
        return None
    return binaries / select_max(names)


def verify(binaries: Path, projects: Iterable[Any]) -> RunResult:
    result = RunResult()
    binaries = Path(binaries)
    for project in projects:
        directory = find_output_dir(binaries, project.output_prefix)
        report = ProjectReport(label=project.label, directory=directory)
        base = directory if directory is not None else binaries / f"{project.output_prefix}*"
        for rel in project.checklist:
            path = base / rel
            if directory is not None and path.is_file():
                report.present.append(str(path))
            else:
                logger.error("Missing expected file: %s", path)
                report.missing.append(str(path))
        result.reports.append(report)
    if result.ok:
        logger.info("All expected files are present")
    else:
        logger.error("%d expected file(s) missing", len(result.missing))
    return result
