# buildbot/fetcher.py
"""
fetcher.py - download and unpack releases for the build bot

Features:
- http_fetch: single urllib based transport for http and https (redirects
  are followed by urllib)
- FetchContext.materialize(ref): idempotent download into archives/ and
  extraction into builds/ using the external tar/unzip/gunzip tools
- Discovers the directory an archive unpacked to by diffing the sorted
  listing of builds/ before and after extraction, then renames it to the
  release's canonical name so later path derivations are stable
"""

from __future__ import annotations

import os
import shutil
import subprocess
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.error import URLError
from urllib.request import Request, urlopen

from buildbot.errors import AmbiguousExtraction, ExtractionFailed, FetchError, UnsupportedFormat
from buildbot.logging import get_logger
from buildbot.workspace import ReleaseRef, Workspace

logger = get_logger("fetcher")

Fetch = Callable[[str], bytes]

DEFAULT_TOOLS = {"tar": "tar", "unzip": "unzip", "gunzip": "gunzip"}


# -----------------------------------------------------------------------
# Transport
# -----------------------------------------------------------------------
def http_fetch(url: str, timeout: int = 60, user_agent: str = "lua-buildbot") -> bytes:
    """GET url and return the response body; any failure is fatal."""
    logger.debug("GET %s", url)
    req = Request(url, headers={"User-Agent": user_agent})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except (URLError, OSError, ValueError) as e:
        raise FetchError(f"failed to download {url}: {e}") from e


def make_fetch(config) -> Fetch:
    return partial(http_fetch,
                   timeout=int(config.get("http.timeout", 60)),
                   user_agent=str(config.get("http.user_agent", "lua-buildbot")))


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------
def _run(cmd: List[str], cwd: Optional[Path] = None) -> Tuple[int, str, str]:
    """Run command and capture output. Returns (rc, stdout, stderr)"""
    logger.debug("RUN: %s (cwd=%s)", " ".join(cmd), str(cwd) if cwd else None)
    try:
        p = subprocess.run(cmd, cwd=str(cwd) if cwd else None, stdout=subprocess.PIPE,
                           stderr=subprocess.PIPE, text=True)
    except OSError as e:
        raise ExtractionFailed(f"cannot execute {cmd[0]}: {e}") from e
    return p.returncode, p.stdout or "", p.stderr or ""


def _check_run(cmd: List[str], cwd: Optional[Path] = None) -> None:
    rc, out, err = _run(cmd, cwd=cwd)
    if rc != 0:
        raise ExtractionFailed(f"{' '.join(cmd)} exited with status {rc}: {(err or out).strip()}")


def archive_layers(filename: str) -> Tuple[bool, str]:
    """
    Return (gzip_compressed, container) for an archive file name, where
    container is "zip" or "tar". Raises UnsupportedFormat otherwise.
    """
    name = filename.lower()
    compressed = False
    if name.endswith(".tgz"):
        compressed, name = True, name[:-4] + ".tar"
    elif name.endswith(".gz"):
        compressed, name = True, name[:-3]
    if name.endswith(".zip"):
        return compressed, "zip"
    if name.endswith(".tar"):
        return compressed, "tar"
    raise UnsupportedFormat(f"unsupported archive type: {filename}")


def detect_new_entry(before: Sequence[str], after: Sequence[str], archive: str = "") -> str:
    """
    Walk the sorted before/after listings side by side and return the one
    entry extraction added. Anything other than exactly one addition (or an
    entry that vanished) is an AmbiguousExtraction.
    """
    before = sorted(before)
    after = sorted(after)
    added: List[str] = []
    removed: List[str] = []
    i = j = 0
    while i < len(before) or j < len(after):
        if i < len(before) and j < len(after) and before[i] == after[j]:
            i += 1
            j += 1
        elif j < len(after) and (i >= len(before) or after[j] < before[i]):
            added.append(after[j])
            j += 1
        else:
            removed.append(before[i])
            i += 1
    if len(added) != 1 or removed:
        raise AmbiguousExtraction(archive, added, removed)
    return added[0]


# -----------------------------------------------------------------------
# FetchContext
# -----------------------------------------------------------------------
class FetchContext:
    def __init__(self, fetch: Fetch, workspace: Workspace, tools: Optional[Dict[str, str]] = None):
        self.fetch = fetch
        self.workspace = workspace
        self.tools = dict(DEFAULT_TOOLS)
        self.tools.update(tools or {})

    def resolve(self, url: str, filename: Optional[str] = None) -> ReleaseRef:
        return self.workspace.resolve(url, filename)

    def download(self, ref: ReleaseRef) -> Path:
        path = ref.archive_path
        if path.is_file():
            logger.info("Using cached archive %s", path)
            return path
        logger.info("Downloading %s to %s", ref.url, path)
        data = self.fetch(ref.url)
        path.parent.mkdir(parents=True, exist_ok=True)
        partial_path = path.with_name(path.name + ".part")
        partial_path.write_bytes(data)
        os.replace(partial_path, path)
        return path

    def decompress(self, archive: Path) -> Path:
        """
        gunzip consumes its input, so keep a copy of the downloaded archive
        and put it back afterwards. Returns the path of the .tar produced.
        """
        logger.info("Uncompressing %s", archive)
        backup = archive.with_name(archive.name + ".tmp")
        shutil.copy2(archive, backup)
        try:
            _check_run([self.tools["gunzip"], "-f", str(archive)], cwd=archive.parent)
        finally:
            os.replace(backup, archive)
        name = archive.name
        tar_name = name[:-4] + ".tar" if name.lower().endswith(".tgz") else name[:-3]
        tar_path = archive.with_name(tar_name)
        if not tar_path.is_file():
            raise ExtractionFailed(f"{self.tools['gunzip']} did not produce {tar_path}")
        return tar_path

    def snapshot(self) -> List[str]:
        return sorted(os.listdir(self.workspace.builds))

    def unpack(self, ref: ReleaseRef) -> Path:
        archive = ref.archive_path
        compressed, container = archive_layers(archive.name)
        builds = self.workspace.builds
        builds.mkdir(parents=True, exist_ok=True)
        logger.info("Unpacking %s to %s", archive, ref.build_path)
        source = self.decompress(archive) if compressed else archive
        try:
            before = self.snapshot()
            if container == "zip":
                logger.info("Unpacking ZIP archive %s", source)
                _check_run([self.tools["unzip"], "-qo", str(source)], cwd=builds)
            else:
                logger.info("Unpacking TAR archive %s", source)
                _check_run([self.tools["tar"], "xf", str(source)], cwd=builds)
            after = self.snapshot()
        finally:
            if source != archive and source.exists():
                source.unlink()
        created = detect_new_entry(before, after, archive=archive.name)
        if created != ref.name:
            logger.info("Renaming %s -> %s", builds / created, ref.build_path)
            os.rename(builds / created, ref.build_path)
        return ref.build_path

    def materialize(self, ref: ReleaseRef) -> Path:
        # reject unknown formats before downloading anything
        archive_layers(ref.filename)
        self.download(ref)
        return self.unpack(ref)
