"""Git operations for nightfix.

Proposal diffs are applied to scratch copies with ``git apply``. The
scratch copy does not need to be a repository; repository discovery above
it is disabled so paths always resolve against the scratch root.
"""

from __future__ import annotations

import logging
from pathlib import Path

from nightfix.core.exceptions import PatchApplyError, ToolError
from nightfix.tools.shell import ShellResult, run_command

logger = logging.getLogger("nightfix.tools.git_ops")

GIT_TIMEOUT = 60  # seconds


def _git(args: list[str], cwd: Path) -> ShellResult:
    env = {"GIT_CEILING_DIRECTORIES": str(cwd.parent)}
    try:
        return run_command(["git", *args], cwd=str(cwd), timeout=GIT_TIMEOUT, env=env)
    except ToolError as e:
        raise PatchApplyError(f"git {args[0]} could not run: {e}") from e


def check_patch(work_dir: Path, patch_path: Path) -> None:
    """Dry-run a patch against work_dir.

    Raises:
        PatchApplyError: If the patch would not apply cleanly.
    """
    result = _git(["apply", "--check", "--whitespace=nowarn", str(patch_path)], cwd=work_dir)
    if not result.success:
        raise PatchApplyError(f"git apply --check failed: {result.stderr.strip()[:500]}")


def apply_patch(work_dir: Path, patch_path: Path) -> list[str]:
    """Apply a patch to work_dir and return the files it touched.

    Raises:
        PatchApplyError: If the patch does not apply.
    """
    check_patch(work_dir, patch_path)
    numstat = _git(["apply", "--numstat", str(patch_path)], cwd=work_dir)
    result = _git(["apply", "--whitespace=nowarn", str(patch_path)], cwd=work_dir)
    if not result.success:
        raise PatchApplyError(f"git apply failed: {result.stderr.strip()[:500]}")

    files = []
    for line in numstat.stdout.splitlines():
        parts = line.split("\t")
        if len(parts) == 3:
            files.append(parts[2])
    logger.info("Applied patch to %d file(s) in %s", len(files), work_dir)
    return files
