# buildbot/orchestrator.py
"""
Run orchestration.

Producer (on the Windows build machine), one pass, no retries:

    clean -> locate/fetch base -> start base
          -> locate/fetch every other project while the base builds
          -> await base -> copy base -> start every other build
          -> await each remaining build, copy its files
          -> verify checklist -> package (only when verified)

Host (on the POSIX machine owning the VM): clean, truncate the run log and
echo it while the VM runs the producer, then verify and package/upload
whatever the VM left in binaries/.

Any error before verification aborts the run. Verification collects every
missing file first.
"""

from __future__ import annotations

import platform
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from buildbot.checklist import RunResult, verify
from buildbot.config import Config
from buildbot.errors import UnsupportedPlatform, VMFailed
from buildbot.fetcher import FetchContext, make_fetch
from buildbot.locators import build_locators
from buildbot.logging import LogFollower, get_logger
from buildbot.manifest import copy_manifest
from buildbot.projects import BASE, Project, base_project
from buildbot.publish import publish
from buildbot.tasks import BuildGraph, BuildTask
from buildbot.toolchain import Toolchain, make_toolchain
from buildbot.workspace import ReleaseRef, Workspace

logger = get_logger("orchestrator")

PRODUCER = "producer"
HOST = "host"
MODES = (PRODUCER, HOST)

_HOST_SYSTEMS = ("Linux", "Darwin", "FreeBSD", "OpenBSD", "NetBSD", "SunOS")


def detect_mode(system: Optional[str] = None) -> str:
    system = system if system is not None else platform.system()
    if system == "Windows":
        return PRODUCER
    if system in _HOST_SYSTEMS:
        return HOST
    raise UnsupportedPlatform(f"platform unsupported: {system or 'unknown'}")


def run_command(cmd: Sequence[str]) -> int:
    """Run an outer-lifecycle command (VM boot, shutdown) in the foreground."""
    logger.info("Running %s", " ".join(cmd))
    try:
        return subprocess.call(list(cmd))
    except OSError as e:
        raise VMFailed(f"cannot execute {cmd[0]}: {e}") from e


class Orchestrator:
    def __init__(self, config: Config, projects: List[Project], workspace: Optional[Workspace] = None,
                 fetch_context: Optional[FetchContext] = None, toolchain: Optional[Toolchain] = None,
                 locators: Optional[Dict[str, Any]] = None):
        self.config = config
        self.projects = list(projects)
        self.workspace = workspace or Workspace(config.root)
        self.fetch_context = fetch_context or FetchContext(make_fetch(config), self.workspace,
                                                           tools=config.get("tools", {}))
        self._toolchain = toolchain
        self.locators = locators if locators is not None else build_locators(
            self.projects, self.fetch_context.fetch, self.workspace)
        self.refs: Dict[str, ReleaseRef] = {}

    @property
    def toolchain(self) -> Toolchain:
        if self._toolchain is None:
            self._toolchain = make_toolchain(self.config)
        return self._toolchain

    # -----------------------
    # steps
    # -----------------------
    def prepare(self) -> None:
        # builds/ is always emptied; clean_on_start decides about binaries/
        self.workspace.clean(binaries=self.config.clean_on_start)

    def locate(self, project: Project) -> ReleaseRef:
        ref = self.locators[project.name].locate()
        logger.info("%s: latest release is %s", project.label, ref.name)
        return ref

    def locate_all(self) -> Dict[str, ReleaseRef]:
        """Discovery only; nothing is downloaded."""
        return {p.name: self.locate(p) for p in self.projects}

    def fetch(self, project: Project) -> ReleaseRef:
        ref = self.locate(project)
        self.fetch_context.materialize(ref)
        self.refs[project.name] = ref
        return ref

    def task_for(self, project: Project) -> BuildTask:
        ref = self.refs[project.name]
        base_ref = self.refs.get(base_project(self.projects).name)
        command = project.render_command(ref.build_path, base_ref.build_path if base_ref else None)
        return BuildTask(project.name, project.work_dir(ref.build_path), command)

    def copy(self, project: Project) -> List[Path]:
        ref = self.refs[project.name]
        ref.output_path.mkdir(parents=True, exist_ok=True)
        return copy_manifest(project.copy, ref.build_path, ref.output_path)

    def verify(self) -> RunResult:
        return verify(self.workspace.binaries, self.projects)

    def package(self, upload: bool = True) -> List[Path]:
        target = self.config.upload_target if upload else None
        return publish(self.workspace.binaries, target=target,
                       command=self.config.get("upload.command", ["scp"]))

    def shutdown(self) -> None:
        cmd = self.config.get("vm.shutdown_command")
        logger.info("Shutting down the build machine")
        rc = run_command(cmd)
        if rc != 0:
            raise VMFailed(f"{' '.join(cmd)} exited with status {rc}")

    # -----------------------
    # modes
    # -----------------------
    def run_producer(self, auto: bool = False) -> RunResult:
        try:
            result = self._produce()
        except BaseException:
            if auto:
                # the original failure is what the run reports
                try:
                    self.shutdown()
                except VMFailed as e:
                    logger.error("Shutdown after failed run did not succeed: %s", e)
            raise
        if auto:
            self.shutdown()
        return result

    def _produce(self) -> RunResult:
        self.prepare()
        graph = BuildGraph(self.toolchain, self.workspace.root)

        base = base_project(self.projects)
        self.fetch(base)
        graph.start_base(self.task_for(base))

        others = [p for p in self.projects if p.role != BASE]
        for project in others:
            self.fetch(project)

        graph.await_base()
        self.copy(base)

        for project in others:
            graph.start(self.task_for(project), requires_base=True)

        for project in others:
            graph.wait(project.name)
            self.copy(project)

        result = self.verify()
        if result.ok:
            self.package()
        return result

    def run_host(self) -> RunResult:
        self.workspace.clean()
        log_file = self.workspace.log_file
        log_file.write_text("", encoding="utf-8")
        follower = LogFollower(log_file)
        follower.start()
        cmd = self.config.get("vm.command")
        try:
            rc = run_command(cmd)
        finally:
            follower.stop()
        if rc != 0:
            raise VMFailed(f"{' '.join(cmd)} exited with status {rc}")
        result = self.verify()
        if result.ok:
            self.package()
        return result

    def run(self, mode: Optional[str] = None, auto: bool = False) -> RunResult:
        mode = mode or detect_mode()
        if mode not in MODES:
            raise UnsupportedPlatform(f"unknown mode {mode!r}")
        logger.info("Starting %s run", mode)
        if mode == PRODUCER:
            return self.run_producer(auto=auto)
        return self.run_host()
