from __future__ import annotations

import base64
import logging
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# Changing the salt makes every stored secret unreadable
SALT = b"sftp-tools-v1-secret-salt"

# base64 of a Fernet token always starts with base64("gAAAAA")
_TOKEN_PREFIX = "Z0FBQUFB"


def find_ssh_key_for_encryption() -> Path | None:
    """Find the SSH private key whose content seeds the encryption key."""
    ssh_dir = Path.home() / ".ssh"
    if not ssh_dir.exists():
        return None
    for key_name in ["id_ed25519", "id_rsa"]:
        key_path = ssh_dir / key_name
        if key_path.exists():
            return key_path
    return None


def derive_encryption_key(ssh_key_path: Path) -> bytes:
    key_data = ssh_key_path.read_bytes()
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=SALT,
        iterations=100000,
    )
    return base64.urlsafe_b64encode(kdf.derive(key_data))


def get_fernet_cipher(ssh_key_path: Path | None = None) -> Fernet | None:
    key_path = ssh_key_path or find_ssh_key_for_encryption()
    if key_path is None:
        return None
    try:
        return Fernet(derive_encryption_key(key_path))
    except OSError as e:
        logger.error("Cannot read SSH key %s: %s", key_path, e)
        return None


def encrypt_secret(secret: str, ssh_key_path: Path | None = None) -> str:
    """Encrypt a password or passphrase. Returns a base64 string safe for JSON."""
    cipher = get_fernet_cipher(ssh_key_path)
    if cipher is None:
        raise RuntimeError("Failed to initialize encryption: no SSH key found")
    token = cipher.encrypt(secret.encode("utf-8"))
    return base64.b64encode(token).decode("ascii")


def decrypt_secret(encrypted: str, ssh_key_path: Path | None = None) -> str:
    cipher = get_fernet_cipher(ssh_key_path)
    if cipher is None:
        raise RuntimeError("Failed to initialize encryption: no SSH key found")
    try:
        token = base64.b64decode(encrypted.encode("ascii"))
        return cipher.decrypt(token).decode("utf-8")
    except (InvalidToken, ValueError) as e:
        raise RuntimeError(f"Cannot decrypt secret: {e}") from e


def is_encrypted(value: str | None) -> bool:
    """Heuristic: does this look like the output of :func:`encrypt_secret`?"""
    if not value:
        return False
    try:
        base64.b64decode(value.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError):
        return False
    return len(value) > 40 and value.startswith(_TOKEN_PREFIX)
