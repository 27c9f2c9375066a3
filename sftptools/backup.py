from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from .errors import BackupFailedError, SftpToolsError
from .paths import dated_backup_path, is_under_folder, join_remote, normalize_remote, remote_parent
from .reporter import LoggingReporter, Reporter
from .tree import recursive_copy

if TYPE_CHECKING:
    from .models import Settings
    from .session import Session

logger = logging.getLogger(__name__)


class BackupPolicy:
    """Snapshots remote files and directories before they are overwritten or deleted.

    Backups are disabled when ``settings.backup_base_path`` is empty. A failed
    backup never blocks the operation it was protecting: :meth:`snapshot`
    reports it as a warning and returns ``None``.
    """

    def __init__(
        self,
        settings: Settings,
        reporter: Reporter | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.base_path = settings.backup_base_path.strip()
        self.folder_name = settings.backup_folder_name
        self.reporter = reporter or LoggingReporter()
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return bool(self.base_path)

    @property
    def backup_root(self) -> str | None:
        if not self.enabled:
            return None
        return join_remote(self.base_path, self.folder_name)

    def is_backup_path(self, remote_path: str) -> bool:
        """True for paths inside the backup root; deleting those needs explicit confirmation."""
        root = self.backup_root
        path = normalize_remote(remote_path)
        if root and (path == root or path.startswith(root + "/")):
            return True
        return is_under_folder(path, self.folder_name)

    def backup_path_for(self, remote_path: str) -> str:
        return dated_backup_path(self.base_path, self.folder_name, remote_path, self.clock())

    async def backup_file(self, session: Session, remote_path: str) -> str:
        target = self.backup_path_for(remote_path)
        try:
            await session.mkdir(remote_parent(target), recursive=True)
            data = await session.read_file(remote_path)
            await session.write_file(target, data)
        except SftpToolsError as e:
            raise BackupFailedError(f"Backup of {remote_path} failed: {e}", path=remote_path) from e
        return target

    async def backup_directory(self, session: Session, remote_path: str) -> str:
        target = self.backup_path_for(remote_path)
        try:
            await session.mkdir(remote_parent(target), recursive=True)
            # the backup root may live inside the directory being backed up
            await recursive_copy(session, remote_path, target, exclude=self.is_backup_path)
        except SftpToolsError as e:
            raise BackupFailedError(f"Backup of {remote_path} failed: {e}", path=remote_path) from e
        return target

    async def snapshot(
        self, session: Session, remote_path: str, is_directory: bool = False, server: str | None = None
    ) -> str | None:
        if not self.enabled:
            return None
        if self.is_backup_path(remote_path):
            logger.debug("Not backing up %s: already inside the backup root", remote_path)
            return None
        try:
            if is_directory:
                target = await self.backup_directory(session, remote_path)
            else:
                target = await self.backup_file(session, remote_path)
        except BackupFailedError as e:
            self.reporter.warning(f"{e}; continuing without backup", server)
            return None
        self.reporter.info(f"Backed up {remote_path} to {target}", server)
        return target
