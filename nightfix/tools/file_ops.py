"""File operations for nightfix.

Scratch copies for patch verification, atomic promotion of a verified
scratch tree over the canonical artifact, and source collection for
analysis prompts.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from nightfix.core.exceptions import PromotionError, ToolError
from nightfix.security.policy import SCRATCH_PREFIX

logger = logging.getLogger("nightfix.tools.file_ops")

DEFAULT_LINKED_DIRS = ("node_modules",)


def _top_level_ignore(root: Path, names_to_skip: Sequence[str]):
    root_str = os.fspath(root)

    def _ignore(directory: str, names: list[str]) -> set[str]:
        if os.path.normpath(directory) != os.path.normpath(root_str):
            return set()
        return {n for n in names if n in names_to_skip}

    return _ignore


@contextmanager
def scratch_copy(
    source: Path,
    linked_dirs: Sequence[str] = DEFAULT_LINKED_DIRS,
) -> Iterator[Path]:
    """Copy ``source`` into a temporary directory and yield the copy.

    Heavy dependency folders named in ``linked_dirs`` are symlinked rather
    than copied. The temporary directory is removed on every exit path.

    Yields:
        The scratch root. Its parent is private to the caller and may hold
        side files such as patch files.
    """
    source = Path(source).resolve()
    if not source.is_dir():
        raise ToolError(f"Canonical path is not a directory: {source}")

    with tempfile.TemporaryDirectory(prefix=SCRATCH_PREFIX) as tmp:
        work = Path(tmp) / source.name
        try:
            shutil.copytree(source, work, symlinks=True, ignore=_top_level_ignore(source, linked_dirs))
        except (OSError, shutil.Error) as e:
            raise ToolError(f"Failed to create scratch copy of {source}: {e}") from e
        for name in linked_dirs:
            shared = source / name
            if shared.is_dir() and not shared.is_symlink():
                (work / name).symlink_to(shared, target_is_directory=True)
        logger.debug("Scratch copy of %s at %s", source, work)
        yield work


def promote_tree(
    scratch: Path,
    canonical: Path,
    linked_dirs: Sequence[str] = DEFAULT_LINKED_DIRS,
) -> None:
    """Replace ``canonical`` with the contents of ``scratch``.

    The new tree is staged beside the canonical directory and swapped in by
    rename, so readers see either the old tree or the new one. Linked
    dependency folders are moved across, not copied. Any failure restores
    the original tree.

    Raises:
        PromotionError: If staging or the swap fails.
    """
    scratch = Path(scratch)
    canonical = Path(canonical).resolve()
    token = uuid.uuid4().hex[:8]
    staging = canonical.parent / f".{canonical.name}.nightfix-staging-{token}"
    backup = canonical.parent / f".{canonical.name}.nightfix-backup-{token}"

    try:
        shutil.copytree(scratch, staging, symlinks=True, ignore=_top_level_ignore(scratch, linked_dirs))
    except (OSError, shutil.Error) as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise PromotionError(f"Failed to stage promotion for {canonical}: {e}") from e

    moved: list[str] = []
    try:
        for name in linked_dirs:
            shared = canonical / name
            if shared.is_dir() and not shared.is_symlink():
                os.rename(shared, staging / name)
                moved.append(name)
        os.rename(canonical, backup)
        os.rename(staging, canonical)
    except OSError as e:
        if not canonical.exists() and backup.exists():
            os.rename(backup, canonical)
        for name in moved:
            if (staging / name).exists():
                os.rename(staging / name, canonical / name)
        shutil.rmtree(staging, ignore_errors=True)
        raise PromotionError(f"Failed to promote into {canonical}: {e}") from e

    shutil.rmtree(backup, ignore_errors=True)
    logger.info("Promoted verified tree into %s", canonical)


def collect_sources(
    root: Path,
    globs: Sequence[str],
    max_files: int = 20,
) -> list[tuple[str, str]]:
    """Read files matching ``globs`` under root as (relative path, text).

    Sorted by relative path; unreadable or binary files are skipped.
    """
    root = Path(root)
    seen: dict[str, Path] = {}
    for pattern in globs:
        for path in root.glob(pattern):
            if not path.is_file():
                continue
            rel = path.relative_to(root).as_posix()
            if rel.startswith("node_modules/"):
                continue
            seen.setdefault(rel, path)

    sources: list[tuple[str, str]] = []
    for rel in sorted(seen)[:max_files]:
        try:
            sources.append((rel, seen[rel].read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Skipping unreadable source %s: %s", rel, e)
    return sources


def read_optional(path: Path) -> str | None:
    """Read a text file, or None when it is missing or unreadable."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
