# buildbot/errors.py
"""
Error taxonomy for the build bot.

Every error raised while locating, fetching or building is fatal for the
whole run. Checklist verification is the one stage that collects findings
(see checklist.RunResult) before deciding, and only then raises
MissingArtifact.
"""

from __future__ import annotations

from typing import List, Optional


class BuildbotError(Exception):
    """Base class for all build bot failures."""


class ConfigError(BuildbotError):
    pass


class UnsupportedPlatform(BuildbotError):
    pass


class EmptyInput(BuildbotError):
    """select_max() was called without candidates."""


class NotFound(BuildbotError):
    """A release locator found no candidate matching its pattern."""


class ClassificationError(BuildbotError):
    """An anchor matched the file pattern but none of the bucket prefixes."""


class FetchError(BuildbotError):
    pass


class UnsupportedFormat(BuildbotError):
    pass


class ExtractionFailed(BuildbotError):
    pass


class AmbiguousExtraction(BuildbotError):
    def __init__(self, archive: str, added: List[str], removed: Optional[List[str]] = None):
        self.archive = archive
        self.added = list(added)
        self.removed = list(removed or [])
        detail = f"new entries={self.added}"
        if self.removed:
            detail += f", vanished entries={self.removed}"
        super().__init__(f"expected exactly one new directory after unpacking {archive} ({detail})")


class ToolchainNotFound(BuildbotError):
    pass


class DependencyError(BuildbotError):
    """A dependent build was started before the base runtime finished."""


class BuildFailed(BuildbotError):
    def __init__(self, label: str, returncode: Optional[int], log_path: Optional[str] = None):
        self.label = label
        self.returncode = returncode
        self.log_path = log_path
        msg = f"build of {label} failed with exit status {returncode}"
        if log_path:
            msg += f" (see {log_path})"
        super().__init__(msg)


class MissingArtifact(BuildbotError):
    def __init__(self, paths: List[str]):
        self.paths = list(paths)
        super().__init__(f"{len(self.paths)} expected file(s) missing: " + ", ".join(self.paths))


class UploadFailed(BuildbotError):
    pass


class VMFailed(BuildbotError):
    """The isolated build machine exited abnormally."""


class WorkspaceError(BuildbotError):
    """The workspace directories could not be prepared."""
