"""Tests for remote path helpers."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from sftptools.errors import PathOutsideWorkspaceError
from sftptools.paths import (
    dated_backup_path,
    is_under_folder,
    join_remote,
    normalize_remote,
    remote_parent,
    remote_path_for,
    strip_remote_root,
)


@pytest.mark.parametrize(
    ("parts", "expected"),
    [
        (("/a/", "b//c"), "/a/b/c"),
        (("/", "x"), "/x"),
        (("/srv//app/", "/logs/"), "/srv/app/logs"),
        (("relative", "file.txt"), "relative/file.txt"),
    ],
)
def test_join_remote_collapses_slashes(parts: tuple[str, ...], expected: str):
    assert join_remote(*parts) == expected


def test_normalize_remote_converts_backslashes():
    assert normalize_remote("\\srv\\app\\") == "/srv/app"
    assert normalize_remote("/") == "/"


def test_remote_parent():
    assert remote_parent("/srv/app/a.txt") == "/srv/app"
    assert remote_parent("/a.txt") == "/"


def test_remote_path_for_mirrors_workspace(tmp_path: Path):
    local = tmp_path / "src" / "main.py"
    local.parent.mkdir()
    local.write_text("x")

    assert remote_path_for(local, tmp_path, "/srv/app/") == "/srv/app/src/main.py"
    assert remote_path_for(tmp_path, tmp_path, "/srv/app") == "/srv/app"


def test_remote_path_for_outside_workspace(tmp_path: Path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    with pytest.raises(PathOutsideWorkspaceError):
        remote_path_for(tmp_path / "elsewhere.txt", workspace, "/srv")


@pytest.mark.parametrize(
    ("remote", "root", "expected"),
    [
        ("/srv/app/src/a.py", "/srv/app", "src/a.py"),
        ("/srv/app/src/a.py", "/srv/app/", "src/a.py"),
        ("/srv/application/a.py", "/srv/app", "a.py"),
        ("/etc/hosts", "/", "etc/hosts"),
        ("/srv/app", "/srv/app", ""),
    ],
)
def test_strip_remote_root(remote: str, root: str, expected: str):
    assert strip_remote_root(remote, root) == expected


def test_dated_backup_path_format():
    when = datetime(2024, 3, 7, 9, 5, 1)
    assert dated_backup_path("/backups/", "bk", "/srv/app/index.html", when) == "/backups/bk/20240307/index.html.090501"


def test_is_under_folder_matches_whole_segments():
    assert is_under_folder("/backups/bk/20240307/a.txt", "bk")
    assert is_under_folder("/backups/bk", "bk")
    assert not is_under_folder("/backups/bkp/a.txt", "bk")
    assert not is_under_folder("/srv/app", "")
