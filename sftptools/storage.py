from __future__ import annotations

import json
import logging
from pathlib import Path

from platformdirs import user_config_dir
from pydantic import ValidationError

from .encryption import decrypt_secret, encrypt_secret, is_encrypted
from .errors import StorageError
from .models import KeyAuth, PasswordAuth, ServerConfig, Settings

APP_NAME = "sftp-tools"

logger = logging.getLogger(__name__)


def get_config_paths() -> tuple[Path, Path, Path]:
    cfg_dir = Path(user_config_dir(APP_NAME, appauthor=False))
    cfg_dir.mkdir(parents=True, exist_ok=True)
    cfg_file = cfg_dir / "servers.json"
    settings_file = cfg_dir / "settings.json"
    return cfg_dir, cfg_file, settings_file


def load_settings() -> Settings:
    """Load application settings, falling back to defaults when the file is missing."""
    _, _, settings_file = get_config_paths()
    if not settings_file.exists():
        return Settings()
    try:
        return Settings.model_validate_json(settings_file.read_text(encoding="utf-8") or "{}")
    except ValidationError as e:
        raise StorageError(f"Invalid settings in {settings_file}: {e}", path=str(settings_file)) from e


def save_settings(settings: Settings) -> None:
    cfg_dir, _, settings_file = get_config_paths()
    cfg_dir.mkdir(parents=True, exist_ok=True)
    settings_file.write_text(settings.model_dump_json(indent=2), encoding="utf-8")


def _map_secrets(server: ServerConfig, transform) -> ServerConfig:
    copy = server.model_copy(deep=True)
    auth = copy.auth
    if isinstance(auth, PasswordAuth):
        auth.password = transform(auth.password)
    elif isinstance(auth, KeyAuth) and auth.passphrase:
        auth.passphrase = transform(auth.passphrase)
    return copy


def _key_source(settings: Settings) -> Path | None:
    """The SSH key chosen when encryption was enabled; ``None`` falls back to discovery."""
    return Path(settings.encryption_key_source) if settings.encryption_key_source else None


def _decrypt(value: str, key_path: Path | None = None) -> str:
    if not is_encrypted(value):
        return value
    try:
        return decrypt_secret(value, key_path)
    except RuntimeError as e:
        # leave it encrypted; the connection attempt will then fail with AuthError
        logger.warning("Could not decrypt stored secret: %s", e)
        return value


def _encrypt(value: str, key_path: Path | None = None) -> str:
    return value if is_encrypted(value) else encrypt_secret(value, key_path)


def load_servers() -> list[ServerConfig]:
    """Load servers, decrypting secrets when encryption is enabled."""
    _, cfg_file, _ = get_config_paths()
    if not cfg_file.exists():
        save_servers([])
        return []
    try:
        data = json.loads(cfg_file.read_text(encoding="utf-8") or "{}")
        servers = [ServerConfig.model_validate(item) for item in data.get("servers", [])]
    except (json.JSONDecodeError, ValidationError) as e:
        raise StorageError(f"Invalid server list in {cfg_file}: {e}", path=str(cfg_file)) from e

    settings = load_settings()
    if settings.encryption_enabled:
        key_path = _key_source(settings)
        servers = [_map_secrets(s, lambda v: _decrypt(v, key_path)) for s in servers]
    return servers


def save_servers(servers: list[ServerConfig]) -> None:
    """Save servers, encrypting secrets when encryption is enabled. Names must be unique."""
    names = [s.name for s in servers]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise StorageError(f"Duplicate server name(s): {', '.join(duplicates)}")

    cfg_dir, cfg_file, _ = get_config_paths()
    settings = load_settings()
    if settings.encryption_enabled:
        key_path = _key_source(settings)
        servers = [_map_secrets(s, lambda v: _encrypt(v, key_path)) for s in servers]

    payload = {
        "version": 1,
        "servers": [s.model_dump() for s in servers],
    }
    cfg_dir.mkdir(parents=True, exist_ok=True)
    cfg_file.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def upsert_server(server: ServerConfig, previous_name: str | None = None) -> None:
    """Insert or replace a server, keyed by name (or by ``previous_name`` on rename)."""
    key = previous_name or server.name
    servers = load_servers()
    for i, existing in enumerate(servers):
        if existing.name == key:
            servers[i] = server
            break
    else:
        servers.append(server)
    save_servers(servers)


def remove_server(name: str) -> bool:
    """Remove a server by name. Returns True if removed."""
    servers = load_servers()
    new_servers = [s for s in servers if s.name != name]
    changed = len(new_servers) != len(servers)
    if changed:
        save_servers(new_servers)
    return changed


def find_server(query: str) -> ServerConfig | None:
    """Find server by exact name, case-insensitive name, or unique partial name."""
    servers = load_servers()
    for s in servers:
        if s.name == query:
            return s
    matches = [s for s in servers if s.name.lower() == query.lower()]
    if len(matches) == 1:
        return matches[0]
    contains = [s for s in servers if query.lower() in s.name.lower()]
    if len(contains) == 1:
        return contains[0]
    return None
