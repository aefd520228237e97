import hashlib
import secrets
from pathlib import PurePosixPath

AUTO_DELETE_SEPARATOR = "."
STORAGE_PREFIX = "quickdrop"


def generate_token(nbytes: int = 32) -> str:
    """Url-safe base64 token; 32 bytes of entropy give 43 characters."""
    return secrets.token_urlsafe(nbytes)


def hash_principal(principal: str) -> str:
    normalized = principal.strip().lower() or "unknown"
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def build_storage_path(token: str, file_name: str) -> str:
    # only the basename goes into the key, the token keeps paths unique
    name = PurePosixPath(file_name.replace("\\", "/")).name or "payload"
    return f"{STORAGE_PREFIX}/{token}/{name}"


def format_auto_delete_token(file_id: str, secret: str) -> str:
    return f"{file_id}{AUTO_DELETE_SEPARATOR}{secret}"


def parse_auto_delete_token(raw: str) -> tuple[str, str] | None:
    """'<file_id>.<secret>' -> (file_id, secret); None when malformed."""
    # secrets are base64url and never contain the separator, file ids might
    file_id, sep, secret = raw.rpartition(AUTO_DELETE_SEPARATOR)
    if not sep or not file_id or not secret:
        return None
    return file_id, secret
