"""Tests for transcript path validation."""

import os

from sessiontop.pathsafety import is_safe_to_read


def test_regular_file_inside_root(tmp_path):
    """Test a regular file under the allowed root is accepted."""
    log = tmp_path / "projects" / "p" / "s.jsonl"
    log.parent.mkdir(parents=True)
    log.write_text("{}\n")

    assert is_safe_to_read(log, [tmp_path])


def test_file_outside_root(tmp_path):
    """Test files outside every allowed root are rejected."""
    allowed = tmp_path / "allowed"
    allowed.mkdir()
    outside = tmp_path / "outside.jsonl"
    outside.write_text("{}\n")

    assert not is_safe_to_read(outside, [allowed])


def test_symlinked_file_is_refused(tmp_path):
    """Test a symlink is refused even when its target is inside the root."""
    target = tmp_path / "real.jsonl"
    target.write_text("{}\n")
    link = tmp_path / "link.jsonl"
    os.symlink(target, link)

    assert not is_safe_to_read(link, [tmp_path])


def test_symlinked_parent_escaping_root(tmp_path):
    """Test a symlinked directory pointing out of the root is rejected after resolution."""
    allowed = tmp_path / "allowed"
    allowed.mkdir()
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    (elsewhere / "s.jsonl").write_text("{}\n")
    os.symlink(elsewhere, allowed / "escape")

    assert not is_safe_to_read(allowed / "escape" / "s.jsonl", [allowed])


def test_directory_and_missing_paths(tmp_path):
    """Test non-regular and missing paths are rejected without raising."""
    assert not is_safe_to_read(tmp_path, [tmp_path])
    assert not is_safe_to_read(tmp_path / "missing.jsonl", [tmp_path])


def test_prefix_sibling_is_not_inside(tmp_path):
    """Test a sibling sharing the root's name prefix isn't treated as inside it."""
    root = tmp_path / "claude"
    root.mkdir()
    sibling = tmp_path / "claude-evil"
    sibling.mkdir()
    (sibling / "s.jsonl").write_text("{}\n")

    assert not is_safe_to_read(sibling / "s.jsonl", [root])
