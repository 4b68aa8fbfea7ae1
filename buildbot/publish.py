# buildbot/publish.py
"""
Packaging and upload of finished releases.

Every directory under binaries/ becomes binaries/<directory>.zip holding the
directory's contents. When an upload target ("host:path") is configured the
archive is copied there with scp; without one, upload is skipped silently.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from buildbot.errors import UploadFailed
from buildbot.logging import get_logger

logger = get_logger("publish")


def make_archive(directory: Path) -> Path:
    directory = Path(directory)
    logger.info("Generating %s.zip ..", directory.name)
    return Path(shutil.make_archive(str(directory), "zip", root_dir=str(directory)))


def upload(archive: Path, target: str, command: Sequence[str] = ("scp",)) -> None:
    dest = f"{target.rstrip('/')}/{archive.name}"
    cmd = [*command, str(archive), dest]
    logger.info("Uploading %s to %s ..", archive.name, dest)
    try:
        p = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as e:
        raise UploadFailed(f"cannot execute {cmd[0]}: {e}") from e
    if p.returncode != 0:
        raise UploadFailed(f"{' '.join(cmd)} exited with status {p.returncode}: {(p.stderr or '').strip()}")


def publish(binaries: Path, target: Optional[str] = None, command: Sequence[str] = ("scp",)) -> List[Path]:
    archives: List[Path] = []
    for directory in sorted(p for p in Path(binaries).iterdir() if p.is_dir()):
        archive = make_archive(directory)
        archives.append(archive)
        if target:
            upload(archive, target, command)
    if not target:
        logger.debug("No upload target configured, keeping %d archive(s) locally", len(archives))
    return archives
