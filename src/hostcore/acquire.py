"""Fetch application source from a git remote or an uploaded archive."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Optional

from .errors import AcquisitionFailure
from .platform import validate_remote_reference

logger = logging.getLogger("hostcore.acquire")

TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz")


def _tail(text: str, limit: int = 500) -> str:
    text = (text or "").strip()
    return text[-limit:]


async def clone_repository(ref: str, dest: Path, timeout: float = 300.0) -> None:
    """Shallow-clone ``ref`` into ``dest``.

    The reference is validated before anything is spawned. Any failure
    raises ``AcquisitionFailure``; cleaning up ``dest`` is the caller's job.
    """
    validate_remote_reference(ref)
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)

    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"

    try:
        proc = await asyncio.create_subprocess_exec(
            "git", "clone", "--depth", "1", ref, str(dest),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except FileNotFoundError as e:
        raise AcquisitionFailure("git is not installed on this host") from e

    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise AcquisitionFailure(f"Cloning {ref} timed out after {int(timeout)}s")

    if proc.returncode != 0:
        detail = _tail(stderr.decode(errors="replace"))
        raise AcquisitionFailure(f"Failed to clone repository: {detail or 'git exited with ' + str(proc.returncode)}")

    logger.info(f"Cloned {ref} into {dest}")


def _safe_target(dest: Path, member_name: str) -> Path:
    root = dest.resolve()
    target = (dest / member_name).resolve()
    if not target.is_relative_to(root):
        raise AcquisitionFailure(f"Archive entry escapes target directory: {member_name}")
    return target


def _extract_zip(archive: Path, dest: Path) -> None:
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            _safe_target(dest, info.filename)
        zf.extractall(dest)


def _extract_tar(archive: Path, dest: Path) -> None:
    with tarfile.open(archive) as tf:
        members = tf.getmembers()
        for member in members:
            _safe_target(dest, member.name)
            if member.issym() or member.islnk():
                link_base = dest if member.islnk() else (dest / member.name).parent
                if not (link_base / member.linkname).resolve().is_relative_to(dest.resolve()):
                    raise AcquisitionFailure(f"Archive link escapes target directory: {member.name}")
            elif not (member.isfile() or member.isdir()):
                raise AcquisitionFailure(f"Unsupported archive entry: {member.name}")
        tf.extractall(dest, members=members, filter="data")


def extract_archive(archive: Path, dest: Path) -> None:
    """Extract a zip or tar archive into ``dest``."""
    archive = Path(archive)
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    name = archive.name.lower()

    try:
        if zipfile.is_zipfile(archive):
            _extract_zip(archive, dest)
        elif name.endswith(TAR_SUFFIXES) or tarfile.is_tarfile(archive):
            _extract_tar(archive, dest)
        else:
            raise AcquisitionFailure(f"Unsupported archive format: {archive.name}")
    except (zipfile.BadZipFile, tarfile.TarError, OSError, EOFError) as e:
        raise AcquisitionFailure(f"Failed to extract archive: {e}") from e

    logger.info(f"Extracted {archive.name} into {dest}")


def hoist_single_directory(dest: Path) -> bool:
    """Move the contents of a lone wrapper directory up into ``dest``.

    Returns True when a wrapper was hoisted.
    """
    dest = Path(dest)
    entries = list(dest.iterdir())
    if len(entries) != 1 or not entries[0].is_dir() or entries[0].is_symlink():
        return False

    wrapper = entries[0]
    # The wrapper may contain an entry with its own name
    staging = dest / f".hoist-{os.getpid()}"
    wrapper.rename(staging)
    for child in staging.iterdir():
        shutil.move(str(child), str(dest / child.name))
    staging.rmdir()
    logger.debug(f"Hoisted contents of {wrapper.name}/ into {dest}")
    return True


def remove_tree_quietly(path: Optional[Path]) -> None:
    if path is None:
        return
    path = Path(path)
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.warning(f"Cleanup of {path} failed: {e}")


def remove_file_quietly(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")
