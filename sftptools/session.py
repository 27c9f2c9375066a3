from __future__ import annotations

import asyncio
import enum
import logging
import stat as stat_mode
from datetime import datetime
from typing import TYPE_CHECKING

import asyncssh

from .errors import (
    AuthError,
    KeyReadError,
    NoCredentialsError,
    NotConnectedError,
    OperationCancelledError,
    PathNotFoundError,
    RemoteOperationError,
    SessionStateError,
    TransportError,
)
from .models import KeyAuth, PasswordAuth, RemoteEntry, RemoteStat, ServerConfig
from .paths import join_remote, normalize_remote
from .tree import recursive_delete

if TYPE_CHECKING:
    from .models import Settings

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


def _is_directory(permissions: int | None) -> bool:
    return permissions is not None and stat_mode.S_ISDIR(permissions)


# SFTPError is an asyncssh.Error; the rest (ConnectionLost, DisconnectError, ...) are transport failures
_REMOTE_ERRORS = (asyncssh.Error, OSError)


def _translate(exc: Exception, path: str) -> Exception:
    if isinstance(exc, asyncssh.SFTPNoSuchFile):
        return PathNotFoundError(f"No such file or directory: {path}", path=path)
    if isinstance(exc, asyncssh.Error) and not isinstance(exc, asyncssh.SFTPError):
        return TransportError(f"Connection lost during operation on {path}: {exc.reason or exc}", path=path)
    reason = getattr(exc, "reason", None) or str(exc) or type(exc).__name__
    return RemoteOperationError(f"{reason}: {path}", path=path)


class Session:
    """One SSH transport plus its SFTP sub-channel.

    A session is connected at most once. Every remote primitive first checks the
    cancellation flag, then that the session is ready.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.connect_timeout = settings.connect_timeout if settings else 30
        self.strict_host_key_checking = settings.strict_host_key_checking if settings else False
        self.server: ServerConfig | None = None
        self.state = SessionState.DISCONNECTED
        self._conn: asyncssh.SSHClientConnection | None = None
        self._sftp: asyncssh.SFTPClient | None = None
        self._cancelled = False
        self._used = False

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.disconnect()

    def __repr__(self) -> str:
        target = self.server.name if self.server else "-"
        return f"<Session {target} {self.state.value}>"

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY and self._sftp is not None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def connect(self, config: ServerConfig) -> None:
        if self._used:
            raise SessionStateError(f"Session already used ({self.state.value}); create a new one")
        self._used = True
        self.server = config
        self.state = SessionState.CONNECTING

        options: dict = {
            "port": config.port,
            "username": config.username,
            "connect_timeout": self.connect_timeout,
            "agent_path": None,
        }
        if not self.strict_host_key_checking:
            options["known_hosts"] = None

        auth = config.auth
        if isinstance(auth, KeyAuth):
            try:
                options["client_keys"] = [asyncssh.read_private_key(auth.key_path, auth.passphrase)]
            except (OSError, asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
                self.state = SessionState.FAILED
                raise KeyReadError(f"Cannot read private key {auth.key_path}: {e}", path=auth.key_path) from e
            options["password"] = None
        elif isinstance(auth, PasswordAuth):
            options["password"] = auth.password
            options["client_keys"] = None
        else:
            self.state = SessionState.FAILED
            raise NoCredentialsError(f"Server '{config.name}' has neither a password nor a private key")

        logger.info("Connecting to %s@%s:%s", config.username, config.host, config.port)
        try:
            self._conn = await asyncssh.connect(config.host, **options)
            self._sftp = await self._conn.start_sftp_client()
        except asyncssh.PermissionDenied as e:
            self._fail()
            raise AuthError(f"Authentication rejected by {config.host}: {e.reason}") from e
        except (OSError, asyncio.TimeoutError, asyncssh.Error) as e:
            self._fail()
            raise TransportError(f"Cannot connect to {config.host}:{config.port}: {e}") from e

        if self._cancelled:
            # cancel_operations() ran while we were waiting on the handshake
            self.disconnect()
            raise OperationCancelledError("Operation cancelled")
        self.state = SessionState.READY
        logger.info("Connected to %s", config.name)

    def _fail(self) -> None:
        self._close_channels()
        self.state = SessionState.FAILED

    def _close_channels(self) -> None:
        sftp, conn = self._sftp, self._conn
        self._sftp = None
        if sftp is not None:
            try:
                sftp.exit()
            except Exception as e:
                logger.warning("Error closing SFTP client: %s", e)
        self._conn = None
        if conn is not None:
            try:
                conn.close()
            except Exception as e:
                logger.warning("Error closing SSH connection: %s", e)

    def disconnect(self) -> None:
        """Tear down the transport. Safe to call repeatedly or before connect."""
        if self._conn is None and self._sftp is None:
            if self.state is SessionState.READY:
                self.state = SessionState.DISCONNECTED
            return
        self._close_channels()
        self.state = SessionState.DISCONNECTED
        logger.info("Disconnected from %s", self.server.name if self.server else "server")

    def cancel_operations(self) -> None:
        self._cancelled = True
        self.disconnect()

    def _client(self) -> asyncssh.SFTPClient:
        if self._cancelled:
            raise OperationCancelledError("Operation cancelled")
        if not self.is_ready:
            raise NotConnectedError("SFTP not connected")
        return self._sftp

    async def list_files(self, path: str) -> list[RemoteEntry]:
        """List one directory level: directories first, then by filename."""
        sftp = self._client()
        try:
            names = await sftp.readdir(path)
        except _REMOTE_ERRORS as e:
            raise _translate(e, path) from e

        entries = []
        for name in names:
            filename = name.filename
            if isinstance(filename, bytes):
                filename = filename.decode("utf-8", "replace")
            if filename in (".", ".."):
                continue
            longname = name.longname or ""
            if isinstance(longname, bytes):
                longname = longname.decode("utf-8", "replace")
            is_dir = longname.startswith("d") or _is_directory(name.attrs.permissions)
            entries.append(RemoteEntry(filename=filename, is_directory=is_dir, path=join_remote(path, filename)))
        entries.sort(key=lambda e: (not e.is_directory, e.filename))
        return entries

    async def read_file(self, path: str) -> bytes:
        sftp = self._client()
        try:
            async with sftp.open(path, "rb") as f:
                return await f.read()
        except _REMOTE_ERRORS as e:
            raise _translate(e, path) from e

    async def write_file(self, path: str, data: bytes) -> None:
        """Overwrite ``path`` with ``data``. No backup is taken here."""
        sftp = self._client()
        try:
            async with sftp.open(path, "wb") as f:
                await f.write(data)
        except _REMOTE_ERRORS as e:
            raise _translate(e, path) from e

    async def delete_file(self, path: str) -> None:
        sftp = self._client()
        try:
            await sftp.remove(path)
        except _REMOTE_ERRORS as e:
            raise _translate(e, path) from e

    async def stat(self, path: str) -> RemoteStat:
        sftp = self._client()
        try:
            attrs = await sftp.stat(path)
        except _REMOTE_ERRORS as e:
            raise _translate(e, path) from e
        mtime = datetime.fromtimestamp(attrs.mtime) if attrs.mtime is not None else None
        return RemoteStat(
            size=attrs.size or 0,
            mtime=mtime,
            permissions=attrs.permissions,
            is_directory=_is_directory(attrs.permissions),
        )

    async def exists(self, path: str) -> bool:
        try:
            await self.stat(path)
        except PathNotFoundError:
            return False
        return True

    async def mkdir(self, path: str, recursive: bool = False) -> None:
        sftp = self._client()
        if not recursive:
            try:
                await sftp.mkdir(path)
            except _REMOTE_ERRORS as e:
                raise _translate(e, path) from e
            return

        path = normalize_remote(path)
        current = "/" if path.startswith("/") else ""
        for part in filter(None, path.split("/")):
            current = join_remote(current, part) if current else part
            try:
                await self._client().mkdir(current)
            except _REMOTE_ERRORS as e:
                # servers report "already exists" inconsistently, so ask directly
                try:
                    existing = await self.stat(current)
                except PathNotFoundError:
                    raise _translate(e, current) from e
                if not existing.is_directory:
                    raise RemoteOperationError(f"Not a directory: {current}", path=current) from e

    async def rmdir(self, path: str, recursive: bool = False) -> None:
        if recursive:
            await recursive_delete(self, path)
            return
        sftp = self._client()
        try:
            await sftp.rmdir(path)
        except _REMOTE_ERRORS as e:
            raise _translate(e, path) from e
