"""Public transfer surface used by front ends.

The orchestrator owns one long-lived *interactive* session (tree browsing,
download, delete) and opens a fresh short-lived session for every upload, so
uploads to several servers never share a transport.
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from pathlib import Path

from .backup import BackupPolicy
from .errors import (
    LocalFileError,
    NotConnectedError,
    NoWorkspaceError,
    OperationCancelledError,
    PathNotFoundError,
    SftpToolsError,
)
from .models import FanOutResult, RemoteEntry, RemoteFileHandle, RemoteStat, ServerConfig, Settings
from .paths import normalize_remote, remote_basename, remote_parent, remote_path_for, strip_remote_root
from .reporter import LoggingReporter, Reporter
from .session import Session
from .tree import recursive_delete, recursive_upload

logger = logging.getLogger(__name__)

TEMP_DIR_NAME = "sftp-tools"


class TransferOrchestrator:
    def __init__(
        self,
        servers: Iterable[ServerConfig],
        settings: Settings | None = None,
        reporter: Reporter | None = None,
        workspace_root: Path | None = None,
        ask_destination: Callable[[str], Path | None] | None = None,
        session_factory: Callable[[Settings], Session] = Session,
        temp_dir: Path | None = None,
    ) -> None:
        self.servers = list(servers)
        self.settings = settings or Settings()
        self.reporter = reporter or LoggingReporter()
        self.workspace_root = Path(workspace_root) if workspace_root else None
        self.ask_destination = ask_destination
        self.session_factory = session_factory
        self.temp_dir = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir()) / TEMP_DIR_NAME
        self.backup = BackupPolicy(self.settings, self.reporter)

        self.current_server: ServerConfig | None = None
        self.operation_in_progress = False
        self._session: Session | None = None
        self._short_lived: set[Session] = set()
        self._handles: dict[Path, RemoteFileHandle] = {}
        self._cancel_requested = False
        self._operation_depth = 0

    # -- interactive session -------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._session.is_ready

    def get_server(self, name: str) -> ServerConfig | None:
        return next((s for s in self.servers if s.name == name), None)

    async def connect_to_server(self, server: ServerConfig) -> None:
        """Replace the interactive session with a new one connected to ``server``."""
        session = self.session_factory(self.settings)
        try:
            await session.connect(server)
        except SftpToolsError as e:
            session.disconnect()
            self.reporter.error(f"Failed to connect: {e}", server.name)
            raise
        self.disconnect_server()
        self._session = session
        self.current_server = server
        self._cancel_requested = False
        self.reporter.info(f"Connected to {server.host}:{server.port}", server.name)

    def disconnect_server(self) -> None:
        if self._session is not None:
            self._session.disconnect()
            name = self.current_server.name if self.current_server else None
            self.reporter.info("Disconnected", name)
        self._session = None
        self.current_server = None

    def disconnect_all(self) -> None:
        self.disconnect_server()
        for session in list(self._short_lived):
            session.disconnect()
        self._short_lived.clear()

    def _interactive(self) -> tuple[Session, ServerConfig]:
        if self._session is None or self.current_server is None:
            raise NotConnectedError("No server connected")
        return self._session, self.current_server

    # -- operation status ----------------------------------------------------

    @asynccontextmanager
    async def _operation(self) -> AsyncIterator[None]:
        """Mark a public operation as running. Nested operations (fan-out) share the outer one."""
        outermost = self._operation_depth == 0
        if outermost:
            self.operation_in_progress = True
            self._cancel_requested = False
        self._operation_depth += 1
        try:
            yield
        finally:
            self._operation_depth -= 1
            if outermost:
                self.operation_in_progress = False

    def cancel_operations(self) -> None:
        """Abort the interactive session and every short-lived one that is still open."""
        self._cancel_requested = True
        if self._session is not None:
            self._session.cancel_operations()
        for session in list(self._short_lived):
            session.cancel_operations()
        self.reporter.warning("Operations cancelled")

    @asynccontextmanager
    async def _short_lived_session(self, server: ServerConfig) -> AsyncIterator[Session]:
        session = self.session_factory(self.settings)
        self._short_lived.add(session)
        try:
            if self._cancel_requested:
                raise OperationCancelledError("Operation cancelled")
            await session.connect(server)
            yield session
        finally:
            self._short_lived.discard(session)
            session.disconnect()

    # -- path resolution -----------------------------------------------------

    def workspace_for(self, server: ServerConfig) -> Path:
        if server.workspace_path:
            return Path(server.workspace_path)
        if self.workspace_root is not None:
            return self.workspace_root
        raise NoWorkspaceError(f"No workspace folder for server '{server.name}'")

    def resolve_remote_path(self, local_path: Path, server: ServerConfig) -> str:
        handle = self.get_file_handle(local_path)
        if handle is not None:
            return handle.remote_path
        return remote_path_for(Path(local_path), self.workspace_for(server), server.remote_path)

    def resolve_local_path(self, remote_path: str, server: ServerConfig) -> Path | None:
        try:
            workspace = self.workspace_for(server)
        except NoWorkspaceError:
            if self.ask_destination is None:
                raise
            return self.ask_destination(remote_path)
        rel = strip_remote_root(remote_path, server.remote_path) or remote_basename(remote_path)
        return workspace / rel

    def is_backup_path(self, remote_path: str) -> bool:
        return self.backup.is_backup_path(remote_path)

    # -- open-for-edit bindings ---------------------------------------------

    def get_file_handle(self, local_path: Path) -> RemoteFileHandle | None:
        return self._handles.get(Path(local_path).resolve())

    async def open_remote_file(self, remote_path: str) -> RemoteFileHandle:
        """Download a remote file into a temp file and remember where it came from."""
        session, server = self._interactive()
        async with self._operation():
            data = await session.read_file(remote_path)
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            temp_path = self.temp_dir / f"{server.name}-{remote_basename(remote_path)}"
            temp_path.write_bytes(data)
        handle = RemoteFileHandle(
            local_path=temp_path.resolve(), remote_path=remote_path, server=server, temp_path=temp_path
        )
        self._handles[handle.local_path] = handle
        self.reporter.info(f"Opened {remote_path} as {temp_path}", server.name)
        return handle

    def close_local_artifact(self, local_path: Path) -> None:
        handle = self._handles.pop(Path(local_path).resolve(), None)
        if handle is None or handle.temp_path is None:
            return
        try:
            handle.temp_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to clean up temp file %s: %s", handle.temp_path, e)

    # -- listing -------------------------------------------------------------

    async def list_directory(self, path: str | None = None) -> list[RemoteEntry]:
        session, server = self._interactive()
        return await session.list_files(path or server.remote_path)

    async def _stat_or_none(self, session: Session, path: str) -> RemoteStat | None:
        try:
            return await session.stat(path)
        except PathNotFoundError:
            return None

    # -- uploads -------------------------------------------------------------

    async def upload_local_artifact(self, local_path: Path, server: ServerConfig) -> str:
        """Upload one local file to ``server``, backing up what it replaces. Returns the remote path."""
        local_path = Path(local_path)
        async with self._operation():
            remote_path = self.resolve_remote_path(local_path, server)
            try:
                data = local_path.read_bytes()
            except OSError as e:
                raise LocalFileError(f"Cannot read {local_path}: {e}", path=str(local_path)) from e

            self.reporter.info(f"Uploading {local_path.name} to {remote_path}", server.name)
            try:
                async with self._short_lived_session(server) as session:
                    await session.mkdir(remote_parent(remote_path), recursive=True)
                    existing = await self._stat_or_none(session, remote_path)
                    if existing is not None and not existing.is_directory:
                        await self.backup.snapshot(session, remote_path, server=server.name)
                    await session.write_file(remote_path, data)
            except SftpToolsError as e:
                self.reporter.error(f"Upload of {local_path.name} failed: {e}", server.name)
                raise
        self.reporter.info(f"Uploaded {remote_path}", server.name)
        return remote_path

    async def upload_directory(self, local_dir: Path, server: ServerConfig) -> str:
        """Mirror a local directory onto ``server``. Returns the remote directory path."""
        local_dir = Path(local_dir)
        async with self._operation():
            remote_path = self.resolve_remote_path(local_dir, server)
            self.reporter.info(f"Uploading directory {local_dir.name} to {remote_path}", server.name)
            try:
                async with self._short_lived_session(server) as session:
                    existing = await self._stat_or_none(session, remote_path)
                    if existing is not None and existing.is_directory:
                        await self.backup.snapshot(session, remote_path, is_directory=True, server=server.name)
                    count = await recursive_upload(local_dir, remote_path, session)
            except SftpToolsError as e:
                self.reporter.error(f"Upload of directory {local_dir.name} failed: {e}", server.name)
                raise
        self.reporter.info(f"Uploaded {count} file(s) to {remote_path}", server.name)
        return remote_path

    async def _fan_out(self, label: str, upload) -> FanOutResult:
        result = FanOutResult()
        total = len(self.servers)
        async with self._operation():
            for index, server in enumerate(self.servers, start=1):
                if self._cancel_requested:
                    result.failed[server.name] = OperationCancelledError("Operation cancelled")
                    continue
                self.reporter.info(f"{label} ({index}/{total})", server.name)
                try:
                    await upload(server)
                except Exception as e:
                    # one server failing must not stop the others
                    logger.debug("%s failed on %s", label, server.name, exc_info=True)
                    result.failed[server.name] = e
                else:
                    result.succeeded.append(server.name)

            if result.ok:
                self.reporter.info(f"{label} complete on {result.success_count} server(s)")
            else:
                self.reporter.warning(
                    f"{label}: {result.success_count} succeeded, {result.fail_count} failed "
                    f"({', '.join(result.failed)})"
                )
        return result

    async def upload_to_all_servers(self, local_path: Path) -> FanOutResult:
        """Upload one file to every configured server, one server at a time."""
        return await self._fan_out(
            f"Uploading {Path(local_path).name}",
            lambda server: self.upload_local_artifact(local_path, server),
        )

    async def upload_directory_to_all_servers(self, local_dir: Path) -> FanOutResult:
        return await self._fan_out(
            f"Uploading directory {Path(local_dir).name}",
            lambda server: self.upload_directory(local_dir, server),
        )

    # -- download / delete ---------------------------------------------------

    async def download_remote_file(self, remote_path: str) -> Path | None:
        """Copy a remote file into the workspace. ``None`` means the user declined a destination."""
        session, server = self._interactive()
        async with self._operation():
            local_path = self.resolve_local_path(remote_path, server)
            if local_path is None:
                return None
            data = await session.read_file(remote_path)
            try:
                local_path.parent.mkdir(parents=True, exist_ok=True)
                local_path.write_bytes(data)
            except OSError as e:
                raise LocalFileError(f"Cannot write {local_path}: {e}", path=str(local_path)) from e
        self.reporter.info(f"Downloaded {remote_path} to {local_path}", server.name)
        return local_path

    async def delete_remote_path(self, remote_path: str, is_directory: bool) -> None:
        """Delete a remote file or directory tree on the connected server.

        Confirmation is the caller's job, and paths inside the backup root
        (see :meth:`is_backup_path`) should get a stronger one since they are
        deleted without taking another backup.
        """
        session, server = self._interactive()
        remote_path = normalize_remote(remote_path)
        async with self._operation():
            try:
                await self.backup.snapshot(session, remote_path, is_directory=is_directory, server=server.name)
                if is_directory:
                    await recursive_delete(session, remote_path)
                else:
                    await session.delete_file(remote_path)
            except SftpToolsError as e:
                self.reporter.error(f"Delete failed: {e}", server.name)
                raise
        self.reporter.info(f"Deleted {remote_path}", server.name)
