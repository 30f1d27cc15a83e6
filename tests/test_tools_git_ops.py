"""Tests for nightfix/tools/git_ops.py — real git apply on plain directories."""

import shutil

import pytest

from nightfix.core.exceptions import PatchApplyError
from nightfix.tools.git_ops import apply_patch, check_patch
from tests.conftest import unified_diff

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

BEFORE = "line one\nline two\nline three\n"
AFTER = "line one\nline 2\nline three\n"


@pytest.fixture
def work(tmp_path):
    root = tmp_path / "scratch" / "vault"
    root.mkdir(parents=True)
    (root / "notes.txt").write_text(BEFORE)
    return root


def _write_patch(tmp_path, text: str):
    path = tmp_path / "proposal.patch"
    path.write_text(text)
    return path


class TestApplyPatch:
    def test_applies_and_reports_files(self, work, tmp_path):
        patch = _write_patch(tmp_path, unified_diff("notes.txt", BEFORE, AFTER))
        files = apply_patch(work, patch)
        assert files == ["notes.txt"]
        assert (work / "notes.txt").read_text() == AFTER

    def test_new_file(self, work, tmp_path):
        diff = (
            "--- /dev/null\n"
            "+++ b/contracts/New.sol\n"
            "@@ -0,0 +1 @@\n"
            "+contract New {}\n"
        )
        files = apply_patch(work, _write_patch(tmp_path, diff))
        assert files == ["contracts/New.sol"]
        assert (work / "contracts" / "New.sol").read_text() == "contract New {}\n"

    def test_conflicting_patch_rejected(self, work, tmp_path):
        patch = _write_patch(tmp_path, unified_diff("notes.txt", "something else\n", "other\n"))
        with pytest.raises(PatchApplyError):
            apply_patch(work, patch)
        assert (work / "notes.txt").read_text() == BEFORE

    def test_garbage_rejected(self, work, tmp_path):
        with pytest.raises(PatchApplyError):
            check_patch(work, _write_patch(tmp_path, "this is not a diff\n"))

    def test_check_does_not_modify(self, work, tmp_path):
        check_patch(work, _write_patch(tmp_path, unified_diff("notes.txt", BEFORE, AFTER)))
        assert (work / "notes.txt").read_text() == BEFORE
