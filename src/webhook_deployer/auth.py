"""Shared-secret handling for the webhook endpoint."""

from __future__ import annotations

import hmac
import secrets
from collections.abc import Mapping
from pathlib import Path

from webhook_deployer.config import Settings
from webhook_deployer.errors import AuthenticationError
from webhook_deployer.logging import get_logger

log = get_logger("webhook_deployer.auth")

# Generic header first, then the one GitLab sends for its secret token.
SECRET_HEADERS = ("X-Shared-Secret", "X-Gitlab-Token")


def get_or_create_secret(secret_path: str | Path) -> str:
    """Read the secret stored at ``secret_path``, generating one if needed.

    An empty or whitespace-only file is treated as missing.
    """
    path = Path(secret_path).expanduser()
    if path.exists():
        existing = path.read_text(encoding="utf-8").strip()
        if existing:
            return existing

    secret = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(secret, encoding="utf-8")
    path.chmod(0o600)
    log.warning("webhook_secret_generated", path=str(path))
    return secret


def resolve_secret(settings: Settings) -> str:
    """Configured secret, falling back to the generated one on disk."""
    if settings.webhook_secret_token is not None:
        configured = settings.webhook_secret_token.get_secret_value().strip()
        if configured:
            return configured
    return get_or_create_secret(settings.secret_file)


def validate_secret(provided: str | None, expected: str) -> bool:
    """Constant-time comparison. An empty expected secret never matches.

    aiohttp decodes undecodable header bytes as lone surrogates, so both
    sides are encoded with ``surrogateescape`` to get their raw bytes back.
    """
    if not provided or not expected:
        return False
    return hmac.compare_digest(
        provided.encode("utf-8", "surrogateescape"),
        expected.encode("utf-8", "surrogateescape"),
    )


def authenticate(headers: Mapping[str, str], expected: str) -> None:
    """Raise ``AuthenticationError`` unless one of ``SECRET_HEADERS`` matches."""
    for name in SECRET_HEADERS:
        if validate_secret(headers.get(name), expected):
            return
    raise AuthenticationError("invalid or missing webhook secret")
