"""Remote path helpers.

Remote paths are always POSIX style: forward slashes, no duplicate
separators. Local paths are :class:`pathlib.Path` objects and are only
converted at the boundary.
"""

from __future__ import annotations

import posixpath
import re
from datetime import datetime
from pathlib import Path, PurePosixPath

from .errors import PathOutsideWorkspaceError

_SLASHES = re.compile(r"/+")


def normalize_remote(path: str) -> str:
    """Convert backslashes and collapse repeated slashes. Keeps a trailing slash off."""
    path = _SLASHES.sub("/", path.replace("\\", "/"))
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path


def join_remote(base: str, *parts: str) -> str:
    """Join remote path segments, e.g. ``join_remote("/a/", "b//c") == "/a/b/c"``."""
    return normalize_remote("/".join([base, *parts]))


def remote_parent(path: str) -> str:
    return posixpath.dirname(normalize_remote(path)) or "/"


def remote_basename(path: str) -> str:
    return posixpath.basename(normalize_remote(path))


def relative_to_workspace(local_path: Path, workspace: Path) -> PurePosixPath:
    """Return ``local_path`` relative to ``workspace`` as a POSIX path."""
    try:
        rel = local_path.resolve().relative_to(workspace.resolve())
    except ValueError:
        raise PathOutsideWorkspaceError(
            f"{local_path} is not inside workspace {workspace}", path=str(local_path)
        ) from None
    return PurePosixPath(*rel.parts)


def remote_path_for(local_path: Path, workspace: Path, remote_root: str) -> str:
    """Mirror a workspace file onto a server's remote root."""
    rel = relative_to_workspace(local_path, workspace)
    if str(rel) == ".":
        return normalize_remote(remote_root)
    return join_remote(remote_root, str(rel))


def strip_remote_root(remote_path: str, remote_root: str) -> str:
    """Path of ``remote_path`` below ``remote_root``; falls back to the basename."""
    remote_path = normalize_remote(remote_path)
    root = normalize_remote(remote_root)
    if root == "/":
        return remote_path.lstrip("/")
    if remote_path == root:
        return ""
    if remote_path.startswith(root + "/"):
        return remote_path[len(root) + 1 :]
    return remote_basename(remote_path)


def dated_backup_path(base_path: str, folder_name: str, remote_path: str, when: datetime) -> str:
    """``<base>/<folder>/<YYYYMMDD>/<name>.<HHMMSS>``"""
    return join_remote(
        base_path,
        folder_name,
        when.strftime("%Y%m%d"),
        f"{remote_basename(remote_path)}.{when.strftime('%H%M%S')}",
    )


def is_under_folder(remote_path: str, folder_name: str) -> bool:
    """True when one of the path's segments is ``folder_name``."""
    if not folder_name:
        return False
    return f"/{folder_name}/" in f"/{normalize_remote(remote_path).strip('/')}/"
