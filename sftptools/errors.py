from __future__ import annotations


class SftpToolsError(Exception):
    """Base error. ``path`` names the remote or local path the failure is about."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def within(self, operation: str, root: str) -> SftpToolsError:
        """Return a copy of this error (same class) that names the enclosing operation."""
        where = f" at {self.path}" if self.path and self.path != root else ""
        wrapped = type(self)(f"{operation} {root} failed{where}: {self.message}", path=self.path or root)
        wrapped.__cause__ = self
        return wrapped


class StorageError(SftpToolsError):
    """Configuration could not be read or saved."""


class NotConnectedError(SftpToolsError):
    pass


class SessionStateError(SftpToolsError):
    """Session used in a state that does not allow the call (e.g. connect twice)."""


class ConnectError(SftpToolsError):
    pass


class NoCredentialsError(ConnectError):
    pass


class KeyReadError(ConnectError):
    pass


class AuthError(ConnectError):
    pass


class TransportError(ConnectError):
    pass


class RemoteNotADirectoryError(SftpToolsError, NotADirectoryError):
    pass


class PathNotFoundError(SftpToolsError, FileNotFoundError):
    pass


class RemoteOperationError(SftpToolsError):
    """Any other SFTP-level failure (permission denied, server failure, lost channel)."""


class LocalFileError(SftpToolsError):
    pass


class OperationCancelledError(SftpToolsError):
    pass


class BackupFailedError(SftpToolsError):
    pass


class NoWorkspaceError(SftpToolsError):
    pass


class PathOutsideWorkspaceError(SftpToolsError):
    pass
