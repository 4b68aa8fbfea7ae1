# buildbot/toolchain.py
"""
Native toolchain environment for builds.

- Locates the Windows SDK environment script (SetEnv.Cmd) through an ordered
  list of probe strategies: explicit config, BUILDBOT_SETENV, the registry,
  the well-known install path. First hit wins; none is ToolchainNotFound.
- Renders the per-build script: set up the environment for the fixed target
  (/release /x86 by default), change into the work directory, run the
  build command. Batch syntax on Windows, POSIX sh elsewhere.
"""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from buildbot.errors import ToolchainNotFound
from buildbot.logging import get_logger

logger = get_logger("toolchain")

SETENV = "SetEnv.Cmd"
ENV_SETENV = "BUILDBOT_SETENV"
DEFAULT_SETENV_PATHS = [
    r"C:\Program Files\Microsoft SDKs\Windows\v7.1\Bin\SetEnv.Cmd",
    r"C:\Program Files (x86)\Microsoft SDKs\Windows\v7.1\Bin\SetEnv.Cmd",
]
_SDK_KEYS = [
    "SOFTWARE\\Microsoft\\Microsoft SDKs\\Windows\\{version}",
    "SOFTWARE\\Wow6432Node\\Microsoft\\Microsoft SDKs\\Windows\\{version}",
]


def is_windows() -> bool:
    return platform.system() == "Windows"


# ---------------------
# probe strategies
# ---------------------
def _setenv_in(path) -> Optional[Path]:
    """Accept SetEnv.Cmd itself, its Bin directory or the SDK directory."""
    if not path:
        return None
    p = Path(path)
    for candidate in (p, p / SETENV, p / "Bin" / SETENV):
        if candidate.is_file():
            return candidate
    return None


def probe_configured(config) -> Optional[Path]:
    return _setenv_in(config.toolchain_root)


def probe_environment(config) -> Optional[Path]:
    return _setenv_in(os.environ.get(ENV_SETENV))


def probe_registry(config) -> Optional[Path]:
    if os.name != "nt":
        return None
    import winreg

    for version in config.get("toolchain.sdk_versions", []) or []:
        for key_path in _SDK_KEYS:
            try:
                with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, key_path.format(version=version)) as key:
                    folder, _ = winreg.QueryValueEx(key, "InstallationFolder")
            except OSError:
                continue
            found = _setenv_in(folder)
            if found:
                return found
    return None


def probe_defaults(config) -> Optional[Path]:
    for path in DEFAULT_SETENV_PATHS:
        found = _setenv_in(path)
        if found:
            return found
    return None


Probe = Tuple[str, Callable[..., Optional[Path]]]

PROBES: List[Probe] = [
    ("config", probe_configured),
    ("environment", probe_environment),
    ("registry", probe_registry),
    ("default path", probe_defaults),
]


def probe_toolchain(config, probes: Optional[Sequence[Probe]] = None) -> Path:
    for name, probe in (probes if probes is not None else PROBES):
        found = probe(config)
        if found:
            logger.info("Using toolchain environment %s (found via %s)", found, name)
            return found
        logger.debug("No toolchain environment via %s", name)
    raise ToolchainNotFound(
        f"cannot find {SETENV}; set toolchain.root in the config or {ENV_SETENV} in the environment")


# ---------------------
# script rendering
# ---------------------
class Toolchain:
    def __init__(self, setenv: Optional[Path] = None, arguments: Sequence[str] = ("/release", "/x86"),
                 windows: Optional[bool] = None):
        self.setenv = Path(setenv) if setenv else None
        self.arguments = list(arguments)
        self.windows = is_windows() if windows is None else windows

    @property
    def suffix(self) -> str:
        return ".cmd" if self.windows else ".sh"

    @property
    def newline(self) -> str:
        return "\r\n" if self.windows else "\n"

    def render(self, work_dir: Path, command: str) -> str:
        args = " ".join(self.arguments)
        lines: List[str] = []
        if self.windows:
            lines.append("@ECHO OFF")
            if self.setenv:
                lines.append(f'CALL "{self.setenv}" {args}'.rstrip())
            lines.append(f'CD /D "{work_dir}"')
            lines.append(command)
            lines.append("EXIT /B %ERRORLEVEL%")
        else:
            lines.append("set -e")
            if self.setenv:
                lines.append(f'. "{self.setenv}" {args}'.rstrip())
            lines.append(f'cd "{work_dir}"')
            lines.append(command)
        return "\n".join(lines) + "\n"

    def argv(self, script: Path) -> List[str]:
        if self.windows:
            return ["cmd.exe", "/c", str(script)]
        return ["/bin/sh", str(script)]


def make_toolchain(config, windows: Optional[bool] = None) -> Toolchain:
    """On Windows the SDK must be found; elsewhere it is optional."""
    windows = is_windows() if windows is None else windows
    arguments = config.get("toolchain.arguments", ["/release", "/x86"])
    if windows:
        setenv = probe_toolchain(config)
    else:
        setenv = probe_configured(config) or probe_environment(config)
    return Toolchain(setenv, arguments=arguments, windows=windows)
