#!/usr/bin/env python3
# buildbot/cli.py
"""
buildbot CLI

Subcommands:
- run [--auto]   full run for the detected (or --mode) machine role
- locate         show the newest release of every tracked project
- verify         check binaries/ against the expected-file checklists
- package        zip every output directory and upload it when configured

Exit status is 0 only when the run (or verification) passed.
"""

from __future__ import annotations

import sys
import argparse
from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from buildbot import __version__
from buildbot import config as config_mod
from buildbot import logging as logging_mod
from buildbot.checklist import RunResult
from buildbot.errors import BuildbotError
from buildbot.orchestrator import HOST, MODES, Orchestrator, detect_mode
from buildbot.projects import load_projects
from buildbot.workspace import Workspace

console = Console()
logger = logging_mod.get_logger("cli")


# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {escape(msg)}")


def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {escape(msg)}")


def print_err(msg: str):
    console.print(f"[bold red]✖[/] {escape(msg)}")


def print_report(result: RunResult) -> None:
    table = Table(title="Expected files")
    table.add_column("Project")
    table.add_column("Directory")
    table.add_column("Present", justify="right")
    table.add_column("Missing", justify="right")
    for report in result.reports:
        directory = report.directory.name if report.directory else "-"
        missing = f"[red]{len(report.missing)}[/red]" if report.missing else "0"
        table.add_row(report.label, directory, str(len(report.present)), missing)
    console.print(table)
    for path in result.missing:
        print_err(f"missing {path}")


# -----------------------
# Commands
# -----------------------
def cmd_run(orch: Orchestrator, args) -> int:
    result = orch.run(mode=args.mode, auto=args.auto)
    print_report(result)
    if result.ok:
        print_ok("Build succeeded")
        return 0
    print_err("Build failed")
    return 1


def cmd_locate(orch: Orchestrator, args) -> int:
    table = Table(title="Latest releases")
    table.add_column("Project")
    table.add_column("Release")
    table.add_column("URL", overflow="fold")
    refs = orch.locate_all()
    for project in orch.projects:
        ref = refs[project.name]
        table.add_row(project.label, ref.name, ref.url)
    console.print(table)
    return 0


def cmd_verify(orch: Orchestrator, args) -> int:
    result = orch.verify()
    print_report(result)
    if result.ok:
        print_ok("All expected files are present")
        return 0
    return 1


def cmd_package(orch: Orchestrator, args) -> int:
    result = orch.verify()
    if not result.ok:
        print_report(result)
        print_err("Refusing to package an incomplete build")
        return 1
    if not args.no_upload and not orch.config.upload_target:
        print_warn("No upload target configured, archives stay in binaries/")
    for archive in orch.package(upload=not args.no_upload):
        print_ok(f"packaged {archive.name}")
    return 0


COMMANDS = {
    "run": cmd_run,
    "locate": cmd_locate,
    "verify": cmd_verify,
    "package": cmd_package,
}


def make_parser():
    ap = argparse.ArgumentParser(prog="buildbot", description="Build the latest Lua releases for Windows")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--config", help="config file (YAML or JSON)")
    ap.add_argument("--root", help="workspace root (archives/, builds/, binaries/)")
    ap.add_argument("--mode", choices=MODES, help="machine role; detected from the platform by default")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug output on the console")
    sub = ap.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="locate, fetch, build, verify and package")
    p_run.add_argument("--auto", action="store_true", help="power off the build machine afterwards")
    sub.add_parser("locate", help="show the newest release of every project")
    sub.add_parser("verify", help="check binaries/ against the expected files")
    p_package = sub.add_parser("package", help="zip (and upload) the output directories")
    p_package.add_argument("--no-upload", action="store_true", help="only create the archives")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 1

    try:
        overrides = {"root": args.root} if args.root else None
        cfg = config_mod.load(args.config, overrides=overrides)
        log_cfg = dict(cfg.get("logging", {}))
        if args.verbose:
            log_cfg["level"] = "DEBUG"
        if args.cmd == "run" and not args.mode:
            args.mode = detect_mode()
        # in host mode the run log belongs to the VM
        log_file = None
        if args.cmd == "run" and args.mode != HOST:
            log_file = Workspace(cfg.root).log_file
        logging_mod.configure(log_cfg, log_file=log_file)

        orch = Orchestrator(cfg, load_projects(cfg.projects_file))
        return COMMANDS[args.cmd](orch, args)
    except BuildbotError as e:
        logger.error("%s", e)
        print_err(str(e))
        return 1
    except OSError as e:
        # filesystem trouble outside the fetch/build steps (copying, run log)
        logger.error("%s", e)
        print_err(f"I/O error: {e}")
        return 1
    except KeyboardInterrupt:
        print_err("Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
