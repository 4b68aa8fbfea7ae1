# buildbot/tasks.py
"""
Native build tasks and the dependency graph between them.

A BuildTask writes its environment script and launches it without waiting;
the returned BuildHandle is the only way to observe completion. wait() is
the single point where the orchestrator blocks, and it is idempotent: every
call after the first returns (or raises) the cached outcome.

BuildGraph enforces the one ordering rule of a run: extension modules link
against lua51.lib, which only exists once the base runtime build finished,
so no dependent task may start before the base handle was awaited.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, IO, List, Optional

from buildbot.errors import BuildFailed, DependencyError
from buildbot.logging import get_logger
from buildbot.toolchain import Toolchain

logger = get_logger("tasks")

PENDING = "pending"
RUNNING = "running"
FINISHED = "finished"


class BuildHandle:
    def __init__(self, label: str, process: subprocess.Popen, script: Path,
                 log: Optional[IO] = None, log_path: Optional[Path] = None):
        self.label = label
        self.process = process
        self.script = script
        self.log_path = log_path
        self._log = log
        self._done = False
        self._error: Optional[BuildFailed] = None
        self.returncode: Optional[int] = None

    @property
    def state(self) -> str:
        if self._done:
            return FINISHED
        return RUNNING if self.process.poll() is None else FINISHED

    def wait(self) -> None:
        if not self._done:
            logger.debug("Waiting for build of %s", self.label)
            try:
                self.returncode = self.process.wait()
            finally:
                self._done = True
                if self._log is not None:
                    self._log.close()
                if self.script.exists():
                    self.script.unlink()
            if self.returncode != 0:
                self._error = BuildFailed(self.label, self.returncode,
                                          str(self.log_path) if self.log_path else None)
            else:
                logger.info("Build of %s finished", self.label)
        if self._error is not None:
            raise self._error


class BuildTask:
    def __init__(self, label: str, work_dir: Path, command: str):
        self.label = label
        self.work_dir = Path(work_dir)
        self.command = command
        self.handle: Optional[BuildHandle] = None

    @property
    def state(self) -> str:
        return self.handle.state if self.handle is not None else PENDING

    def start(self, toolchain: Toolchain, scripts_dir: Path) -> BuildHandle:
        scripts_dir = Path(scripts_dir)
        script = scripts_dir / f"build-{self.label}{toolchain.suffix}"
        log_path = scripts_dir / f"build-{self.label}.log"
        with open(script, "w", encoding="utf-8", newline=toolchain.newline) as fh:
            fh.write(toolchain.render(self.work_dir, self.command))
        logger.info("Starting build of %s in %s", self.label, self.work_dir)
        log = open(log_path, "w", encoding="utf-8")
        try:
            process = subprocess.Popen(toolchain.argv(script), cwd=str(self.work_dir),
                                       stdout=log, stderr=subprocess.STDOUT)
        except OSError as e:
            log.close()
            script.unlink()
            raise BuildFailed(self.label, None, str(log_path)) from e
        self.handle = BuildHandle(self.label, process, script, log=log, log_path=log_path)
        return self.handle


class BuildGraph:
    def __init__(self, toolchain: Toolchain, scripts_dir: Path):
        self.toolchain = toolchain
        self.scripts_dir = Path(scripts_dir)
        self.handles: Dict[str, BuildHandle] = {}
        self.base_label: Optional[str] = None
        self.base_awaited = False

    def _launch(self, task: BuildTask) -> BuildHandle:
        if task.label in self.handles:
            raise DependencyError(f"build of {task.label} was already started")
        handle = task.start(self.toolchain, self.scripts_dir)
        self.handles[task.label] = handle
        return handle

    def start_base(self, task: BuildTask) -> BuildHandle:
        if self.base_label is not None:
            raise DependencyError(f"base runtime already started ({self.base_label})")
        self.base_label = task.label
        return self._launch(task)

    def await_base(self) -> None:
        if self.base_label is None:
            raise DependencyError("no base runtime build was started")
        self.handles[self.base_label].wait()
        self.base_awaited = True

    def start(self, task: BuildTask, requires_base: bool = True) -> BuildHandle:
        if requires_base and not self.base_awaited:
            raise DependencyError(f"{task.label} links against the base runtime, which has not finished")
        return self._launch(task)

    def wait(self, label: str) -> None:
        self.handles[label].wait()

    def labels(self) -> List[str]:
        return list(self.handles)
