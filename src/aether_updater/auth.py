"""Shared-secret authentication for the updater HTTP surface."""

from __future__ import annotations

import secrets
from pathlib import Path

from aether_updater.logging import get_logger

log = get_logger("aether_updater.auth")

SECRET_HEADER = "X-Updater-Secret"


def get_or_create_secret(path: str) -> str:
    """Read the shared secret from *path*, generating one if missing or blank."""
    secret_file = Path(path)
    if secret_file.exists():
        existing = secret_file.read_text().strip()
        if existing:
            return existing

    secret = secrets.token_urlsafe(32)
    secret_file.parent.mkdir(parents=True, exist_ok=True)
    secret_file.write_text(secret)
    try:
        secret_file.chmod(0o600)
    except OSError as exc:
        log.warning("updater_secret_chmod_failed", path=path, error=str(exc))
    log.info("updater_secret_generated", path=path)
    return secret


def validate_secret(request_secret: str | None, expected: str) -> bool:
    """Constant-time comparison; an empty expected secret never validates."""
    if not request_secret or not expected:
        return False
    return secrets.compare_digest(request_secret.encode(), expected.encode())
