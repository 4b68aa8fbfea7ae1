# buildbot/projects.py
"""
Tracked-project table.

Features:
- Project records loaded from YAML (the bundled projects.yaml unless the
  config names another file)
- Each record carries where to find releases (source), how to build them
  (command, work_subdir), what to copy into binaries/ and which files the
  output must contain afterwards
- Validation: unique names, known roles, exactly one base project
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from buildbot.errors import ConfigError
from buildbot.logging import get_logger
from buildbot.manifest import parse_rules

logger = get_logger("projects")

BASE = "base"
RUNTIME = "runtime"
EXTENSION = "extension"
ROLES = (BASE, RUNTIME, EXTENSION)

BUNDLED_PROJECTS = Path(__file__).with_name("projects.yaml")


@dataclass(frozen=True)
class Project:
    name: str
    label: str
    role: str
    source: Dict[str, Any]
    command: str
    output_prefix: str
    copy: str = ""
    work_subdir: Optional[str] = None
    checklist: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def requires_base(self) -> bool:
        return self.role == EXTENSION

    def work_dir(self, build_path: Path) -> Path:
        build_path = Path(build_path)
        return build_path / self.work_subdir if self.work_subdir else build_path

    def render_command(self, build_path: Path, base_path: Optional[Path] = None) -> str:
        """Fill in {build} and {base}; {base} is only meaningful for extensions."""
        return self.command.format(build=self.work_dir(build_path), base=base_path or "")


def _parse_project(entry: Any, index: int) -> Project:
    if not isinstance(entry, dict):
        raise ConfigError(f"project #{index} must be a mapping")
    missing = [k for k in ("name", "role", "source", "command", "output_prefix") if not entry.get(k)]
    if missing:
        raise ConfigError(f"project #{index} ({entry.get('name', '?')}): missing {', '.join(missing)}")
    name = str(entry["name"])
    role = str(entry["role"])
    if role not in ROLES:
        raise ConfigError(f"project {name}: unknown role {role!r} (expected one of {', '.join(ROLES)})")
    if not isinstance(entry["source"], dict):
        raise ConfigError(f"project {name}: source must be a mapping")
    checklist = entry.get("checklist") or []
    if not isinstance(checklist, list):
        raise ConfigError(f"project {name}: checklist must be a list")
    # copying only happens after the build, so reject bad rules up front
    try:
        parse_rules(str(entry.get("copy") or ""))
    except ConfigError as e:
        raise ConfigError(f"project {name}: {e}") from e
    return Project(
        name=name,
        label=str(entry.get("label") or name),
        role=role,
        source=dict(entry["source"]),
        command=str(entry["command"]),
        output_prefix=str(entry["output_prefix"]),
        copy=str(entry.get("copy") or ""),
        work_subdir=entry.get("work_subdir") or None,
        checklist=tuple(str(c) for c in checklist),
    )


def parse_projects(data: Any) -> List[Project]:
    if isinstance(data, dict):
        data = data.get("projects")
    if not isinstance(data, list) or not data:
        raise ConfigError("project table must contain a non-empty 'projects' list")
    projects = [_parse_project(entry, i) for i, entry in enumerate(data, 1)]
    seen: Dict[str, int] = {}
    for p in projects:
        seen[p.name] = seen.get(p.name, 0) + 1
    dupes = sorted(n for n, c in seen.items() if c > 1)
    if dupes:
        raise ConfigError(f"duplicate project names: {', '.join(dupes)}")
    bases = [p.name for p in projects if p.role == BASE]
    if len(bases) != 1:
        raise ConfigError(f"exactly one base project is required, found {len(bases)}")
    return projects


def load_projects(path: Optional[str] = None) -> List[Project]:
    source = Path(path) if path else BUNDLED_PROJECTS
    try:
        data = yaml.safe_load(source.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read project table {source}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse project table {source}: {e}") from e
    projects = parse_projects(data)
    logger.debug("Loaded %d projects from %s", len(projects), source)
    return projects


def base_project(projects: List[Project]) -> Project:
    for p in projects:
        if p.role == BASE:
            return p
    raise ConfigError("no base project defined")
