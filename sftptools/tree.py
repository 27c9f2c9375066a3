"""Recursive directory operations.

SFTP only offers single-level operations, so deleting, copying and uploading
whole trees all go through :func:`walk`: one depth-first traversal that calls
a visitor on each node. The first failure aborts the walk; there is no
rollback, so a failed operation can leave a partial tree behind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple, Protocol

from .errors import LocalFileError, RemoteNotADirectoryError, SftpToolsError
from .paths import join_remote, normalize_remote

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


class Node(NamedTuple):
    name: str
    path: str
    is_directory: bool


class TreeSource(Protocol):
    async def children(self, node: Node) -> list[Node]: ...


class TreeVisitor:
    """Hooks called by :func:`walk`. Override what you need."""

    async def enter_directory(self, node: Node) -> None:
        pass

    async def visit_file(self, node: Node) -> None:
        pass

    async def leave_directory(self, node: Node) -> None:
        pass


class RemoteSource:
    def __init__(self, session: Session) -> None:
        self.session = session

    async def children(self, node: Node) -> list[Node]:
        entries = await self.session.list_files(node.path)
        return [Node(e.filename, e.path, e.is_directory) for e in entries]


class LocalSource:
    """Local directory tree, directories first, then by name."""

    async def children(self, node: Node) -> list[Node]:
        try:
            paths = list(Path(node.path).iterdir())
        except OSError as e:
            raise LocalFileError(f"Cannot list {node.path}: {e}", path=node.path) from e
        nodes = [Node(p.name, str(p), p.is_dir()) for p in paths]
        nodes.sort(key=lambda n: (not n.is_directory, n.name))
        return nodes


async def walk(
    source: TreeSource,
    root: Node,
    visitor: TreeVisitor,
    exclude: Callable[[Node], bool] | None = None,
) -> None:
    """Depth-first traversal. Nodes matching ``exclude`` are skipped with their subtrees."""
    await visitor.enter_directory(root)
    for child in await source.children(root):
        if child.name in (".", ".."):
            continue
        if exclude is not None and exclude(child):
            logger.debug("Skipping %s", child.path)
            continue
        if child.is_directory:
            await walk(source, child, visitor, exclude)
        else:
            await visitor.visit_file(child)
    await visitor.leave_directory(root)


def _rebase(path: str, src_root: str, dest_root: str) -> str:
    rel = normalize_remote(path)[len(normalize_remote(src_root)) :]
    return join_remote(dest_root, rel) if rel else normalize_remote(dest_root)


class _DeleteVisitor(TreeVisitor):
    def __init__(self, session: Session) -> None:
        self.session = session
        self.removed = 0

    async def visit_file(self, node: Node) -> None:
        await self.session.delete_file(node.path)
        self.removed += 1

    async def leave_directory(self, node: Node) -> None:
        await self.session.rmdir(node.path)
        self.removed += 1


class _CopyVisitor(TreeVisitor):
    def __init__(self, session: Session, src_root: str, dest_root: str) -> None:
        self.session = session
        self.src_root = src_root
        self.dest_root = dest_root
        self.copied = 0

    async def enter_directory(self, node: Node) -> None:
        await self.session.mkdir(_rebase(node.path, self.src_root, self.dest_root), recursive=True)

    async def visit_file(self, node: Node) -> None:
        data = await self.session.read_file(node.path)
        await self.session.write_file(_rebase(node.path, self.src_root, self.dest_root), data)
        self.copied += 1


class _UploadVisitor(TreeVisitor):
    def __init__(self, session: Session, local_root: Path, remote_root: str) -> None:
        self.session = session
        self.local_root = local_root
        self.remote_root = remote_root
        self.uploaded = 0

    def _target(self, node: Node) -> str:
        rel = Path(node.path).relative_to(self.local_root)
        return join_remote(self.remote_root, rel.as_posix()) if rel.parts else normalize_remote(self.remote_root)

    async def enter_directory(self, node: Node) -> None:
        await self.session.mkdir(self._target(node), recursive=True)

    async def visit_file(self, node: Node) -> None:
        try:
            data = Path(node.path).read_bytes()
        except OSError as e:
            raise LocalFileError(f"Cannot read {node.path}: {e}", path=node.path) from e
        await self.session.write_file(self._target(node), data)
        self.uploaded += 1


async def recursive_delete(session: Session, path: str) -> int:
    """Delete a remote directory and everything below it. Returns entries removed."""
    try:
        info = await session.stat(path)
        if not info.is_directory:
            raise RemoteNotADirectoryError(f"Not a directory: {path}", path=path)
        visitor = _DeleteVisitor(session)
        await walk(RemoteSource(session), Node(path.rsplit("/", 1)[-1], path, True), visitor)
    except SftpToolsError as e:
        raise e.within("recursive delete of", path) from e
    logger.debug("Removed %d entries under %s", visitor.removed, path)
    return visitor.removed


def _is_within(path: str, root: str) -> bool:
    path, root = normalize_remote(path), normalize_remote(root)
    return path == root or path.startswith(root.rstrip("/") + "/")


async def recursive_copy(
    session: Session,
    src_path: str,
    dest_path: str,
    exclude: Callable[[str], bool] | None = None,
) -> int:
    """Mirror a remote directory to another remote location on the same session.

    ``dest_path`` itself is never walked, so copying a directory to a place
    below itself terminates. ``exclude`` skips further remote paths.
    """
    visitor = _CopyVisitor(session, src_path, dest_path)

    def skip(node: Node) -> bool:
        return _is_within(node.path, dest_path) or (exclude is not None and exclude(node.path))

    try:
        await walk(RemoteSource(session), Node(src_path.rsplit("/", 1)[-1], src_path, True), visitor, skip)
    except SftpToolsError as e:
        raise e.within("copy of", src_path) from e
    logger.debug("Copied %d files from %s to %s", visitor.copied, src_path, dest_path)
    return visitor.copied


async def recursive_upload(local_root: Path, remote_root: str, session: Session) -> int:
    """Upload a local directory tree byte-for-byte. Returns the number of files sent."""
    local_root = Path(local_root)
    visitor = _UploadVisitor(session, local_root, remote_root)
    try:
        await walk(LocalSource(), Node(local_root.name, str(local_root), True), visitor)
    except SftpToolsError as e:
        raise e.within("upload of", str(local_root)) from e
    logger.debug("Uploaded %d files from %s to %s", visitor.uploaded, local_root, remote_root)
    return visitor.uploaded
