from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator


class PasswordAuth(BaseModel):
    kind: Literal["password"] = "password"
    password: str


class KeyAuth(BaseModel):
    kind: Literal["key"] = "key"
    key_path: str
    passphrase: str | None = None


Auth = Annotated[Union[PasswordAuth, KeyAuth], Field(discriminator="kind")]


class ServerConfig(BaseModel):
    """Connection parameters for one remote SFTP endpoint."""

    name: str
    host: str
    port: int = 22
    username: str
    auth: Auth
    remote_path: str = "/"
    workspace_path: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_credentials(cls, data: Any) -> Any:
        """Accept ``password`` / ``key_path`` at top level and turn them into ``auth``."""
        if not isinstance(data, dict) or "auth" in data:
            return data
        data = dict(data)
        password = data.pop("password", None)
        key_path = data.pop("key_path", None) or data.pop("private_key_path", None)
        passphrase = data.pop("passphrase", None)
        if key_path:
            data["auth"] = {"kind": "key", "key_path": key_path, "passphrase": passphrase}
        elif password:
            data["auth"] = {"kind": "password", "password": password}
        else:
            raise ValueError("server needs either a password or a private key path")
        return data

    @property
    def uses_key(self) -> bool:
        return isinstance(self.auth, KeyAuth)

    def display(self) -> str:
        """Return formatted server display string."""
        auth = "key" if self.uses_key else "pwd"
        return f"{self.name}  [{self.username}@{self.host}:{self.port} | {auth}]"


class Settings(BaseModel):
    """Application-wide settings stored next to the server list."""

    backup_base_path: str = ""
    backup_folder_name: str = "sftp-tools-backup"
    show_confirm_dialog: bool = True
    connect_timeout: float = 30
    strict_host_key_checking: bool = False
    encryption_enabled: bool = False
    encryption_key_source: str | None = None

    @property
    def backup_enabled(self) -> bool:
        return bool(self.backup_base_path.strip())


@dataclass(frozen=True)
class RemoteEntry:
    """One row of a remote directory listing."""

    filename: str
    is_directory: bool
    path: str


@dataclass(frozen=True)
class RemoteStat:
    size: int
    mtime: datetime | None
    permissions: int | None
    is_directory: bool


@dataclass
class RemoteFileHandle:
    """Binds a local temp copy of a remote file to where it came from."""

    local_path: Path
    remote_path: str
    server: ServerConfig
    temp_path: Path | None = None


@dataclass
class FanOutResult:
    """Per-server outcome of applying one transfer to every configured server."""

    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def fail_count(self) -> int:
        return len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed
